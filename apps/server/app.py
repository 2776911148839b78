"""FastAPI app for chat responses, embeddings and the text/vector store.

The HTTP layer lives under `apps/` and can depend on heavier deps (FastAPI, uvicorn).
All model execution is delegated to the core engine (`llmkit/engine`).

Sessions are not thread-safe, so every engine call runs behind one lock
(single-flight); a second request waits for the first to finish.
"""

from __future__ import annotations

import asyncio
import json
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from starlette.responses import JSONResponse, StreamingResponse

from llmkit.engine.embedding import EmbeddingSession
from llmkit.engine.errors import ConfigurationError, ExecutionError, ResourceError
from llmkit.engine.session import GenerationSession
from llmkit.engine.types import GenerateResponse
from llmkit.engine.vector_store import TextVectorStore


@dataclass(frozen=True)
class _Delta:
    text: str


@dataclass(frozen=True)
class _Final:
    response: GenerateResponse | None


@dataclass(frozen=True)
class _Error:
    message: str
    kind: str


def create_app(
    *,
    session: GenerationSession | None,
    model_id: str,
    embedder: EmbeddingSession | None = None,
    store: TextVectorStore | None = None,
) -> FastAPI:
    app = FastAPI(title="llmkit Inference Server", version="0.1.0")

    _engine_lock = threading.Lock()

    def _require_session() -> GenerationSession:
        if session is None:
            raise HTTPException(status_code=404, detail="No chat model is loaded on this server.")
        return session

    def _require_embedder() -> EmbeddingSession:
        if embedder is None:
            raise HTTPException(status_code=404, detail="No embedding model is loaded on this server.")
        return embedder

    def _require_store() -> TextVectorStore:
        if store is None:
            raise HTTPException(status_code=404, detail="No vector store is configured on this server.")
        return store

    async def _json_object(request: Request) -> dict[str, Any]:
        try:
            payload = await request.json()
        except Exception as exc:
            raise HTTPException(status_code=400, detail="Request body must be valid JSON.") from exc
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Request body must be a JSON object.")
        return payload

    async def _run_locked(fn: Any, *args: Any) -> Any:
        def _call() -> Any:
            with _engine_lock:
                return fn(*args)

        try:
            return await asyncio.to_thread(_call)
        except HTTPException:
            raise
        except ExecutionError as exc:
            raise HTTPException(
                status_code=500,
                detail={"message": str(exc), "partial_text": exc.partial_text},
            ) from exc
        except (ConfigurationError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except ResourceError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except Exception as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc

    # -------------------------------------------------------------------------
    # Health & Models
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/v1/models")
    async def list_models() -> dict[str, Any]:
        now = int(time.time())
        data: list[dict[str, Any]] = []
        if session is not None:
            info = session.model_info
            data.append(
                {
                    "id": model_id,
                    "object": "model",
                    "created": now,
                    "owned_by": "llmkit",
                    "family": info.model_family,
                    "kind": "chat",
                    "device": info.device,
                    "precision": info.precision,
                    "single_file": info.single_file,
                    "layers": info.layer_nums,
                }
            )
        if embedder is not None:
            data.append(
                {
                    "id": f"{model_id}-embedding" if session is not None else model_id,
                    "object": "model",
                    "created": now,
                    "owned_by": "llmkit",
                    "family": embedder.family.name,
                    "kind": "embedding",
                }
            )
        return {"object": "list", "data": data}

    # -------------------------------------------------------------------------
    # Chat
    # -------------------------------------------------------------------------

    @app.post("/v1/respond")
    async def respond(request: Request) -> Any:
        sess = _require_session()
        payload = await _json_object(request)
        query = payload.get("query")
        if not isinstance(query, str) or not query:
            raise HTTPException(status_code=400, detail="'query' is required and must be a non-empty string.")
        stream = bool(payload.get("stream", False))

        created = int(time.time())
        response_id = f"resp-{uuid.uuid4().hex}"

        if stream:
            event_iter = _stream_response(
                session=sess,
                query=query,
                lock=_engine_lock,
                request=request,
                response_id=response_id,
                created=created,
                model_id=model_id,
            )
            return StreamingResponse(event_iter, media_type="text/event-stream")

        def _respond() -> tuple[str, GenerateResponse | None]:
            text = sess.respond(query)
            return text, sess.last_response

        text, result = await _run_locked(_respond)

        resp: dict[str, Any] = {
            "id": response_id,
            "object": "response",
            "created": created,
            "model": model_id,
            "text": text,
            "finish_reason": result.finish_reason if result else "stop",
        }
        if result is not None:
            resp["usage"] = _usage_dict(result)
            resp["timing"] = _timing_dict(result)
        return JSONResponse(resp)

    @app.post("/v1/reset")
    async def reset() -> Any:
        sess = _require_session()
        await _run_locked(sess.reset)
        return JSONResponse({"status": "reset"})

    # -------------------------------------------------------------------------
    # Embeddings
    # -------------------------------------------------------------------------

    @app.post("/v1/embeddings")
    async def embeddings(request: Request) -> Any:
        emb = _require_embedder()
        payload = await _json_object(request)
        raw = payload.get("input")
        if isinstance(raw, str):
            texts = [raw]
        elif isinstance(raw, list) and raw and all(isinstance(t, str) for t in raw):
            texts = list(raw)
        else:
            raise HTTPException(status_code=400, detail="'input' must be a string or a non-empty list of strings.")

        def _embed_all() -> list[list[float]]:
            return [emb.embed(text).reshape(-1).tolist() for text in texts]

        vectors = await _run_locked(_embed_all)
        return JSONResponse(
            {
                "object": "list",
                "model": model_id,
                "data": [
                    {"object": "embedding", "index": i, "embedding": vec} for i, vec in enumerate(vectors)
                ],
            }
        )

    # -------------------------------------------------------------------------
    # Vector store
    # -------------------------------------------------------------------------

    @app.post("/v1/store/add")
    async def store_add(request: Request) -> Any:
        st = _require_store()
        payload = await _json_object(request)
        texts = payload.get("texts")
        if isinstance(payload.get("text"), str):
            texts = [payload["text"]]
        if not isinstance(texts, list) or not texts or not all(isinstance(t, str) for t in texts):
            raise HTTPException(status_code=400, detail="'texts' must be a non-empty list of strings.")
        await _run_locked(st.add_all, texts)
        return JSONResponse({"status": "added", "added": len(texts), "count": len(st)})

    @app.post("/v1/store/search")
    async def store_search(request: Request) -> Any:
        st = _require_store()
        payload = await _json_object(request)
        query = payload.get("query")
        if not isinstance(query, str) or not query:
            raise HTTPException(status_code=400, detail="'query' is required and must be a non-empty string.")
        k = payload.get("k", 3)
        try:
            k = int(k)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail="'k' must be an integer.") from exc
        if k <= 0:
            raise HTTPException(status_code=400, detail="'k' must be > 0.")

        hits = await _run_locked(st.search_with_scores, query, k)
        return JSONResponse({"results": [{"text": text, "distance": dist} for text, dist in hits]})

    @app.post("/v1/store/save")
    async def store_save(request: Request) -> Any:
        st = _require_store()
        payload = await _json_object(request)
        path = payload.get("path")
        if not isinstance(path, str) or not path:
            raise HTTPException(status_code=400, detail="'path' is required and must be a string.")
        await _run_locked(st.save, path)
        return JSONResponse({"status": "saved", "path": path, "count": len(st)})

    return app


def _sse(data: str) -> str:
    return f"data: {data}\n\n"


def _usage_dict(result: GenerateResponse) -> dict[str, int]:
    return {
        "prompt_tokens": result.usage.prompt_tokens,
        "completion_tokens": result.usage.completion_tokens,
        "total_tokens": result.usage.total_tokens,
    }


def _timing_dict(result: GenerateResponse) -> dict[str, float]:
    speed = result.speed_report()
    return {
        "prefill_s": result.timing.prefill_s,
        "decode_s": result.timing.decode_s,
        "total_s": result.timing.total_s,
        "decode_tok_per_s": speed["decode_tok_per_s"],
    }


async def _stream_response(
    *,
    session: GenerationSession,
    query: str,
    lock: threading.Lock,
    request: Request,
    response_id: str,
    created: int,
    model_id: str,
) -> AsyncIterator[str]:
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[_Delta | _Final | _Error | None] = asyncio.Queue()
    cancel = threading.Event()

    def emit(event: _Delta | _Final | _Error | None) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, event)

    def worker() -> None:
        try:
            with lock:
                words = session.stream(query)
                try:
                    for word in words:
                        if cancel.is_set():
                            break
                        emit(_Delta(word))
                finally:
                    words.close()
                if not cancel.is_set():
                    emit(_Final(session.last_response))
        except (ConfigurationError, ValueError) as exc:
            emit(_Error(str(exc), "invalid_request_error"))
        except Exception as exc:
            emit(_Error(str(exc), "server_error"))
        finally:
            emit(None)

    thread = threading.Thread(target=worker, name=f"llmkit-gen-{uuid.uuid4().hex}", daemon=True)
    thread.start()

    try:
        while True:
            event = await queue.get()
            if event is None:
                break

            # Stop consuming promptly on client disconnect; the worker sees `cancel` at the next token.
            if await request.is_disconnected():
                cancel.set()
                break

            if isinstance(event, _Delta):
                if not event.text:
                    continue
                yield _sse(
                    json.dumps(
                        {"id": response_id, "object": "response.chunk", "created": created, "model": model_id,
                         "delta": event.text, "finish_reason": None},
                        ensure_ascii=False,
                    )
                )
                continue

            if isinstance(event, _Error):
                yield _sse(
                    json.dumps(
                        {"error": {"message": event.message, "type": event.kind}},
                        ensure_ascii=False,
                    )
                )
                continue

            if isinstance(event, _Final):
                terminal: dict[str, Any] = {
                    "id": response_id,
                    "object": "response.chunk",
                    "created": created,
                    "model": model_id,
                    "delta": "",
                    "finish_reason": event.response.finish_reason if event.response else "stop",
                }
                if event.response is not None:
                    terminal["usage"] = _usage_dict(event.response)
                    terminal["timing"] = _timing_dict(event.response)
                yield _sse(json.dumps(terminal, ensure_ascii=False))
                yield "data: [DONE]\n\n"
    finally:
        cancel.set()
