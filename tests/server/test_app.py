import json
import os

import pytest

pytest.importorskip("fastapi", reason="fastapi not installed")
torch = pytest.importorskip("torch", reason="torch not installed")

from llmkit.engine.embedding import EmbeddingSession
from llmkit.engine.families import BGE
from llmkit.engine.families.base import ModelFamily
from llmkit.engine.families.masks import causal_attention_mask, causal_position_ids
from llmkit.engine.families.prompts import plain_prompt
from llmkit.engine.families.stops import stop_on_id
from llmkit.engine.module import ExecutionEngine, ModuleHandle
from llmkit.engine.session import GenerationSession
from llmkit.engine.tokenizer import TokenizerAdapter
from llmkit.engine.vector_store import TextVectorStore

TINY = ModelFamily(
    name="tiny",
    layer_nums=1,
    hidden_size=2,
    key_value_shape=(2, 1, 0, 1, 2),
    prompt=plain_prompt,
    attention_mask=causal_attention_mask,
    position_ids=causal_position_ids,
    is_stop=stop_on_id(2),
)


def _collect_sse_events(raw: str) -> list[str]:
    events: list[str] = []
    for block in raw.split("\n\n"):
        block = block.strip()
        if block.startswith("data: "):
            events.append(block[len("data: ") :])
    return events


class _CharTokenizer(TokenizerAdapter):
    def load(self, path: str) -> None:
        pass

    def encode(self, text: str) -> list[int]:
        return [ord(ch) for ch in text]

    def decode(self, token_id: int) -> str:
        return chr(token_id) if token_id >= 32 else ""


class _FakeEngine(ExecutionEngine):
    """Combined graph answering with scripted tokens; the BGE graph embeds as [len, first id]."""

    def __init__(self, tokens=(), *, fail_on_call=None) -> None:
        self.tokens = list(tokens)
        self.fail_on_call = fail_on_call
        self.token_calls = 0

    def load(self, path, input_names=(), output_names=(), *, config=None):
        return ModuleHandle(
            name=os.path.basename(path),
            path=path,
            module=None,
            input_names=tuple(input_names),
            output_names=tuple(output_names),
        )

    def forward(self, handle, inputs):
        if len(inputs) == 3:
            ids = inputs[0]
            return [torch.tensor([[float(ids.numel()), float(ids[1].item())]])]
        self.token_calls += 1
        if self.fail_on_call is not None and self.token_calls == self.fail_on_call:
            raise RuntimeError("device lost")
        return [torch.tensor([self.tokens.pop(0)]), inputs[3].clone()]


def _session(tmp_path, tokens, **kwargs):
    session = GenerationSession(
        TINY,
        single_file=True,
        engine=_FakeEngine(tokens, **kwargs),
        tokenizer=_CharTokenizer(),
    )
    session.load(str(tmp_path / "tiny.pt"))
    return session


def _embedder(tmp_path):
    embedder = EmbeddingSession(BGE, engine=_FakeEngine(), tokenizer=_CharTokenizer())
    embedder.load(str(tmp_path / "bge.pt"))
    return embedder


def _client(**kwargs):
    from fastapi.testclient import TestClient

    from apps.server.app import create_app

    kwargs.setdefault("session", None)
    return TestClient(create_app(model_id="tiny-test", **kwargs))


def test_health_and_models(tmp_path):
    client = _client(session=_session(tmp_path, []), embedder=_embedder(tmp_path))

    assert client.get("/health").json() == {"status": "ok"}
    data = client.get("/v1/models").json()["data"]
    assert [m["kind"] for m in data] == ["chat", "embedding"]
    assert data[0]["id"] == "tiny-test"
    assert data[0]["family"] == "tiny"
    assert data[0]["single_file"] is True
    assert data[0]["layers"] == 1
    assert data[0]["device"] == "cpu"


def test_respond_non_stream(tmp_path):
    session = _session(tmp_path, [104, 105, 2])
    client = _client(session=session)

    resp = client.post("/v1/respond", json={"query": "ab"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["object"] == "response"
    assert data["model"] == "tiny-test"
    assert data["text"] == "hi"
    assert data["finish_reason"] == "stop"
    assert data["usage"] == {"prompt_tokens": 2, "completion_tokens": 3, "total_tokens": 5}
    assert session.history == [97, 98, 104, 105]


def test_respond_stream_sse_ordering_and_done(tmp_path):
    client = _client(session=_session(tmp_path, [104, 105, 2]))

    with client.stream("POST", "/v1/respond", json={"query": "ab", "stream": True}) as resp:
        assert resp.status_code == 200
        raw = "".join(resp.iter_text())

    events = _collect_sse_events(raw)
    assert events[-1] == "[DONE]"
    chunks = [json.loads(e) for e in events[:-1]]
    assert [c["delta"] for c in chunks[:-1]] == ["h", "i"]
    assert chunks[-1]["finish_reason"] == "stop"
    assert chunks[-1]["usage"]["completion_tokens"] == 3


def test_respond_requires_query(tmp_path):
    client = _client(session=_session(tmp_path, []))
    assert client.post("/v1/respond", json={}).status_code == 400
    assert client.post("/v1/respond", json=["ab"]).status_code == 400


def test_respond_failure_reports_partial_text(tmp_path):
    session = _session(tmp_path, [104, 105, 2], fail_on_call=2)
    client = _client(session=session)

    resp = client.post("/v1/respond", json={"query": "ab"})
    assert resp.status_code == 500
    detail = resp.json()["detail"]
    assert detail["partial_text"] == "h"
    assert "device lost" in detail["message"]


def test_stream_failure_emits_error_event(tmp_path):
    client = _client(session=_session(tmp_path, [104, 105, 2], fail_on_call=2))

    with client.stream("POST", "/v1/respond", json={"query": "ab", "stream": True}) as resp:
        raw = "".join(resp.iter_text())

    events = [json.loads(e) for e in _collect_sse_events(raw) if e != "[DONE]"]
    assert events[0]["delta"] == "h"
    assert events[-1]["error"]["type"] == "server_error"


def test_reset(tmp_path):
    session = _session(tmp_path, [104, 2])
    client = _client(session=session)
    client.post("/v1/respond", json={"query": "ab"})

    assert client.post("/v1/reset").json() == {"status": "reset"}
    assert session.history == []


def test_chat_routes_without_session():
    client = _client()
    assert client.post("/v1/respond", json={"query": "ab"}).status_code == 404
    assert client.post("/v1/embeddings", json={"input": "ab"}).status_code == 404
    assert client.post("/v1/store/search", json={"query": "ab"}).status_code == 404


def test_embeddings(tmp_path):
    client = _client(embedder=_embedder(tmp_path))

    resp = client.post("/v1/embeddings", json={"input": ["ab", "xyz"]})
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert [d["index"] for d in data] == [0, 1]
    # [CLS] + text + [SEP]
    assert data[0]["embedding"] == [4.0, 97.0]
    assert data[1]["embedding"] == [5.0, 120.0]

    assert client.post("/v1/embeddings", json={"input": 3}).status_code == 400


def test_store_add_search_save(tmp_path):
    embedder = _embedder(tmp_path)
    store = TextVectorStore(embedder)
    client = _client(embedder=embedder, store=store)

    resp = client.post("/v1/store/add", json={"texts": ["a", "bbbb", "cc"]})
    assert resp.json()["count"] == 3

    resp = client.post("/v1/store/search", json={"query": "a", "k": 2})
    results = resp.json()["results"]
    assert [r["text"] for r in results] == ["a", "cc"]
    assert results[0]["distance"] == 0.0

    assert client.post("/v1/store/search", json={"query": "a", "k": 0}).status_code == 400

    path = tmp_path / "out" / "store.pt"
    resp = client.post("/v1/store/save", json={"path": str(path)})
    assert resp.json() == {"status": "saved", "path": str(path), "count": 3}
    loaded = TextVectorStore.load(str(path))
    assert loaded is not None and loaded.texts == ["a", "bbbb", "cc"]
