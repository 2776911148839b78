"""Generation session: KV-cache lifecycle and the streaming decode loop.

A session owns one model family, its loaded modules, the conversation
history and, for the duration of a response, the KV cache and counters.

Response lifecycle (`SessionPhase`):

    IDLE/STOPPED --respond--> PREFILL --first token--> DECODE --stop|cap--> STOPPED

Each response starts from an empty KV cache and re-prefills the full
conversation history. The cache returned by a forward call replaces the one
passed in. Any failure inside a forward call aborts the response: the cache
and counters are cleared and the session returns to IDLE; history keeps what
was already appended.

Thread Safety:
    Not thread-safe. One response at a time per session; callers that share
    a session across threads must serialize access externally.
"""

from __future__ import annotations

import codecs
import logging
import os
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, TextIO

import torch

from .errors import ConfigurationError, ExecutionError, LlmkitError, ResourceError
from .families.base import DecodeState, ModelFamily, Prompt
from .module import BackendConfig, ExecutionEngine, ModuleHandle, TorchScriptEngine
from .registry import is_single_file, resolve_model_type
from .tensors import expect_outputs, expect_rank, int_tensor, read_token_id
from .tokenizer import TokenizerAdapter, load_tokenizer
from .types import GenerateResponse, ModelInfo, Timing, Usage
from .vision import load_image

logger = logging.getLogger(__name__)

MODULE_EXT = ".pt"
DISK_EMBEDDING_FILE = "embeddings_bf16.bin"

SINGLE_INPUTS = ("input_ids", "attention_mask", "position_ids", "past_key_values")
SINGLE_OUTPUTS = ("token_id", "presents")
BLOCK_INPUTS = ("inputs_embeds", "attention_mask", "position_ids", "past_key_values")
BLOCK_OUTPUTS = ("hidden_states", "presents")


class SessionPhase(str, Enum):
    IDLE = "idle"
    PREFILL = "prefill"
    DECODE = "decode"
    STOPPED = "stopped"


@dataclass(frozen=True)
class SessionConfig:
    """Per-session generation policy."""

    max_new_tokens: int = 1024
    end_with: str = "\n"
    disk_embedding: bool = False
    image_timeout_s: float = 30.0

    def validate(self) -> None:
        if self.max_new_tokens <= 0:
            raise ConfigurationError("'max_new_tokens' must be > 0.")
        if self.image_timeout_s <= 0:
            raise ConfigurationError("'image_timeout_s' must be > 0.")


@dataclass
class _ResponseState:
    """Mutable per-response bundle; only the decode loop touches it."""

    past_key_values: list[torch.Tensor] = field(default_factory=list)
    decode: DecodeState = field(default_factory=DecodeState)
    prompt_len: int = 0
    prefill_s: float = 0.0
    decode_s: float = 0.0


def repair_byte_token(piece: bytes) -> bytes:
    """Turn a `<0xHH>` byte-fallback piece into the single byte it names.

    Consecutive repaired bytes join into multi-byte UTF-8 characters once
    they pass through an incremental decoder.
    """
    if len(piece) == 6 and piece.startswith(b"<0x") and piece.endswith(b">"):
        try:
            return bytes([int(piece[3:5], 16)])
        except ValueError:
            return piece
    return piece


class GenerationSession:
    """
    Autoregressive chat session for one model family.

    Example:
        >>> session = GenerationSession.create("models/qwen-1.8b")
        >>> session.load("models/qwen-1.8b")
        >>> text = session.respond("Hello!", sink=sys.stdout)
        >>> session.reset()  # forget the conversation
    """

    def __init__(
        self,
        family: ModelFamily,
        *,
        single_file: bool = False,
        engine: ExecutionEngine | None = None,
        tokenizer: TokenizerAdapter | None = None,
        backend_config: BackendConfig | None = None,
        config: SessionConfig | None = None,
    ) -> None:
        if family.embedding_only:
            raise ConfigurationError(f"Model family {family.name!r} is embedding-only; use EmbeddingSession.")
        self._family = family
        self._single_file = single_file
        self._backend_config = backend_config or BackendConfig()
        self._engine = engine or TorchScriptEngine(self._backend_config)
        self._tokenizer = tokenizer
        self._config = config or SessionConfig()
        self._config.validate()

        self._model_path: str | None = None
        self._modules: dict[str, ModuleHandle] = {}
        self._load_progress = 0.0

        self._history: list[int] = []
        self._images: list[torch.Tensor] = []
        self._state = _ResponseState()
        self._phase = SessionPhase.IDLE
        self._last_response: GenerateResponse | None = None

    @classmethod
    def create(
        cls,
        model_path: str,
        model_type: str = "auto",
        **kwargs: Any,
    ) -> "GenerationSession":
        """Pick the family from `model_type` (or the path when "auto") and the execution path from the path."""
        family = resolve_model_type(model_path, model_type)
        return cls(family, single_file=is_single_file(model_path), **kwargs)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def family(self) -> ModelFamily:
        return self._family

    @property
    def single_file(self) -> bool:
        return self._single_file

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def history(self) -> list[int]:
        return list(self._history)

    @property
    def counters(self) -> DecodeState:
        return self._state.decode

    @property
    def past_key_values(self) -> list[torch.Tensor]:
        return list(self._state.past_key_values)

    @property
    def load_progress(self) -> float:
        return self._load_progress

    @property
    def last_response(self) -> GenerateResponse | None:
        return self._last_response

    @property
    def tokenizer(self) -> TokenizerAdapter | None:
        return self._tokenizer

    @property
    def model_info(self) -> ModelInfo:
        return ModelInfo(
            model_path=self._model_path or "",
            model_family=self._family.name,
            device=self._backend_config.device,
            precision=self._backend_config.precision,
            single_file=self._single_file,
            layer_nums=self._family.layer_nums,
            extra={"loaded": bool(self._modules), "history_tokens": len(self._history)},
        )

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    def load(self, model_path: str) -> None:
        """Load the tokenizer and every module the family needs.

        Multi-module layout: `lm.pt`, `embedding.pt` (unless disk embeddings are
        used), `visual.pt` (vision families), `block_<i>.pt`, `tokenizer.txt`.
        Single-file layout: `<name>.pt`, optional `<name>.pt.weight`, and the
        tokenizer in the same directory.
        """
        self._model_path = model_path
        self._modules = {}
        self._load_progress = 0.0

        if self._single_file:
            model_dir = os.path.dirname(os.path.abspath(model_path))
        else:
            if not os.path.isdir(model_path):
                raise ConfigurationError(f"Model directory not found: {model_path}")
            model_dir = model_path

        logger.info("load tokenizer")
        if self._tokenizer is None:
            self._tokenizer = load_tokenizer(model_dir)
        self._load_progress += 10.0
        logger.info("load tokenizer Done")

        if self._single_file:
            self._load_single(model_path)
        else:
            self._load_split(model_path)

    def _load_single(self, model_path: str) -> None:
        external_path = model_path + ".weight"
        config = self._backend_config.with_external(external_path if os.path.isfile(external_path) else None)
        logger.info("load %s ...", model_path)
        self._modules["model"] = self._engine.load(model_path, SINGLE_INPUTS, SINGLE_OUTPUTS, config=config)
        self._load_progress += 90.0
        logger.info("load %s Done!", model_path)

    def _load_split(self, model_dir: str) -> None:
        plan: list[tuple[str, tuple[str, ...], tuple[str, ...]]] = [("lm", (), ())]
        if self._config.disk_embedding:
            disk_path = os.path.join(model_dir, DISK_EMBEDDING_FILE)
            if not os.path.isfile(disk_path):
                raise ResourceError(f"Disk embedding file not found: {disk_path}")
        else:
            plan.append(("embedding", (), ()))
        if self._family.is_visual:
            plan.append(("visual", (), ()))
        plan.extend((f"block_{i}", BLOCK_INPUTS, BLOCK_OUTPUTS) for i in range(self._family.layer_nums))

        step = 90.0 / len(plan)
        for name, inputs, outputs in plan:
            path = os.path.join(model_dir, name + MODULE_EXT)
            logger.info("[%3.0f%% ] load %s model ...", self._load_progress, path)
            self._modules[name] = self._engine.load(path, inputs, outputs, config=self._backend_config)
            self._load_progress += step
        logger.info("[%3.0f%% ] all modules loaded", self._load_progress)

    def _ensure_loaded(self) -> None:
        if not self._modules or self._tokenizer is None:
            raise RuntimeError("Model not loaded. Call load() first.")

    # -------------------------------------------------------------------------
    # Prompt / decode
    # -------------------------------------------------------------------------

    def build_prompt(self, query: str) -> Prompt:
        """Apply the family template; the first turn is the one with empty history."""
        if self._tokenizer is None:
            raise RuntimeError("Tokenizer not loaded. Call load() first.")
        return self._family.prompt(self._tokenizer.encode, query, not self._history)

    def decode_bytes(self, token_id: int) -> bytes:
        if self._tokenizer is None:
            raise RuntimeError("Tokenizer not loaded. Call load() first.")
        return repair_byte_token(self._tokenizer.decode_bytes(token_id))

    def decode(self, token_id: int) -> str:
        """Text of one token on its own; a partial UTF-8 sequence decodes to U+FFFD."""
        return self.decode_bytes(token_id).decode("utf-8", errors="replace")

    # -------------------------------------------------------------------------
    # Responses
    # -------------------------------------------------------------------------

    def respond(self, query: str, sink: TextIO | None = None, *, end_with: str | None = None) -> str:
        """Run one full response, writing each token's text to `sink` as it is produced.

        Returns the generated text. The end-of-turn marker is written to the
        sink only, never included in the returned text.
        """
        if end_with is None:
            end_with = self._config.end_with
        parts: list[str] = []
        for word in self.stream(query):
            parts.append(word)
            if sink is not None:
                sink.write(word)
                sink.flush()
        if sink is not None and end_with:
            sink.write(end_with)
            sink.flush()
        return "".join(parts)

    def stream(self, query: str) -> Iterator[str]:
        """Yield the text of each generated token.

        Closing the iterator early is the cooperative cancel: the session
        drops its cache and returns to IDLE.
        """
        if self._phase in (SessionPhase.PREFILL, SessionPhase.DECODE):
            raise RuntimeError("Session is busy with another response.")
        self._ensure_loaded()

        prompt = self.build_prompt(query)
        # A failed fetch leaves history and images unchanged.
        pixels = self._load_images(prompt.images)
        if self._history:
            self._history.extend(prompt.ids)
        else:
            self._history = list(prompt.ids)
        self._images.extend(pixels)
        input_ids = list(self._history)

        self._begin_response(context_len=prompt.context_len, prompt_len=len(input_ids))
        utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        emitted: list[str] = []
        finish_reason = "length"
        completed = False
        try:
            self._phase = SessionPhase.PREFILL
            started = time.perf_counter()
            token = self._forward(input_ids)
            self._state.prefill_s = time.perf_counter() - started
            self._phase = SessionPhase.DECODE

            while True:
                if self._family.is_stop(token):
                    finish_reason = "stop"
                    break
                self._history.append(token)
                word = utf8.decode(self.decode_bytes(token))
                if word:
                    emitted.append(word)
                    yield word
                if self._state.decode.gen_seq_len >= self._config.max_new_tokens:
                    break
                started = time.perf_counter()
                token = self._forward([token])
                self._state.decode_s += time.perf_counter() - started

            tail = utf8.decode(b"", final=True)
            if tail:
                emitted.append(tail)
                yield tail
            completed = True
        except ExecutionError as exc:
            raise ExecutionError(str(exc), partial_text="".join(emitted)) from exc
        except LlmkitError:
            raise
        except Exception as exc:
            raise ExecutionError(f"Forward call failed: {exc}", partial_text="".join(emitted)) from exc
        finally:
            if completed:
                self._finish_response(finish_reason, "".join(emitted))
            else:
                self._abort_response()

    def reset(self) -> None:
        """Forget the conversation (history and loaded images)."""
        if self._phase in (SessionPhase.PREFILL, SessionPhase.DECODE):
            raise RuntimeError("Cannot reset while a response is in progress.")
        self._history = []
        self._images = []
        self._state = _ResponseState()
        self._phase = SessionPhase.IDLE

    def chat(self, input_fn: Callable[[str], str] = input, output: TextIO = sys.stdout) -> None:
        """Minimal read-eval loop: `/exit` ends it, `/reset` forgets the conversation."""
        while True:
            try:
                query = input_fn("\nQ: ")
            except EOFError:
                break
            if query == "/exit":
                break
            if query == "/reset":
                self.reset()
                output.write("\nA: reset done.\n")
                continue
            if not query.strip():
                continue
            output.write("\nA: ")
            output.flush()
            try:
                self.respond(query, sink=output)
            except LlmkitError as exc:
                logger.error("response failed: %s", exc)
                output.write(f"\n[error] {exc}\n")
        self.reset()

    def warmup(self) -> None:
        """Run one forward call on token 0 with a fresh cache, then clear all response state."""
        self._ensure_loaded()
        logger.info("### warmup ...")
        self._begin_response(context_len=0, prompt_len=1)
        try:
            self._forward([0])
        finally:
            self._state = _ResponseState()
            self._phase = SessionPhase.IDLE
        logger.info("### warmup Done")

    # -------------------------------------------------------------------------
    # Internal: response state
    # -------------------------------------------------------------------------

    def _begin_response(self, *, context_len: int, prompt_len: int) -> None:
        self._state = _ResponseState(
            past_key_values=self._family.empty_cache(self._single_file),
            decode=DecodeState(context_len=context_len),
            prompt_len=prompt_len,
        )

    def _finish_response(self, finish_reason: str, text: str) -> None:
        state = self._state
        self._last_response = GenerateResponse(
            text=text,
            usage=Usage(prompt_tokens=state.prompt_len, completion_tokens=state.decode.gen_seq_len),
            timing=Timing(prefill_s=state.prefill_s, decode_s=state.decode_s),
            finish_reason=finish_reason,  # type: ignore[arg-type]
        )
        self._phase = SessionPhase.STOPPED
        speed = self._last_response.speed_report()
        logger.info(
            "response done: prompt=%d output=%d prefill=%.2fs decode=%.2fs "
            "prefill_speed=%.2f tok/s decode_speed=%.2f tok/s finish=%s",
            state.prompt_len,
            state.decode.gen_seq_len,
            state.prefill_s,
            state.decode_s,
            speed["prefill_tok_per_s"],
            speed["decode_tok_per_s"],
            finish_reason,
        )

    def _abort_response(self) -> None:
        logger.warning(
            "response aborted after %d tokens; cache cleared", self._state.decode.gen_seq_len
        )
        self._state = _ResponseState()
        self._phase = SessionPhase.IDLE

    # -------------------------------------------------------------------------
    # Internal: forward
    # -------------------------------------------------------------------------

    def _forward(self, input_ids: list[int]) -> int:
        """One forward call; returns the next token id and swaps in the returned cache."""
        seq_len = len(input_ids)
        snapshot = self._state.decode
        attention_mask = self._family.attention_mask(seq_len, snapshot)
        position_ids = self._family.position_ids(seq_len, snapshot)
        cache = self._state.past_key_values

        if self._single_file:
            handle = self._modules["model"]
            outputs = expect_outputs(
                self._engine.forward(handle, [int_tensor(input_ids), attention_mask, position_ids, cache[0]]),
                2,
                module=handle.name,
            )
            token_id = read_token_id(outputs[0])
            cache[0] = outputs[1]
        else:
            hidden_states = self._embedding(input_ids, snapshot)
            for i in range(self._family.layer_nums):
                handle = self._modules[f"block_{i}"]
                outputs = expect_outputs(
                    self._engine.forward(handle, [hidden_states, attention_mask, position_ids, cache[i]]),
                    2,
                    module=handle.name,
                )
                hidden_states = outputs[0]
                cache[i] = outputs[1]
            lm = self._modules["lm"]
            token_id = read_token_id(expect_outputs(self._engine.forward(lm, [hidden_states]), 1, module=lm.name)[0])

        self._state.decode = snapshot.advance(seq_len)
        return token_id

    def _load_images(self, refs: list[str]) -> list[torch.Tensor]:
        if not refs:
            return []
        vision = self._family.vision
        if vision is None:
            raise ConfigurationError(f"Model family {self._family.name!r} does not accept images.")
        return [load_image(ref, vision, timeout_s=self._config.image_timeout_s) for ref in refs]

    def _embedding(self, input_ids: list[int], snapshot: DecodeState) -> torch.Tensor:
        if self._family.is_visual and snapshot.gen_seq_len == 0:
            return self._visual_embedding(input_ids)
        return self._text_embedding(input_ids)

    def _text_embedding(self, input_ids: list[int]) -> torch.Tensor:
        hidden = self._family.hidden_size
        if not input_ids:
            return torch.zeros((0, 1, hidden), dtype=torch.float32)
        if self._config.disk_embedding:
            return read_disk_embedding(
                os.path.join(self._model_path or "", DISK_EMBEDDING_FILE), input_ids, hidden
            )
        handle = self._modules["embedding"]
        return expect_outputs(self._engine.forward(handle, [int_tensor(input_ids)]), 1, module=handle.name)[0]

    def _visual_embedding(self, input_ids: list[int]) -> torch.Tensor:
        vision = self._family.vision
        assert vision is not None
        spans = _placeholder_spans(input_ids, vision.start_id, vision.end_id, vision.pad_len)
        if not spans:
            return self._text_embedding(input_ids)
        if len(spans) != len(self._images):
            raise ExecutionError(
                f"Prompt has {len(spans)} image placeholders but {len(self._images)} loaded images."
            )

        visual = self._modules["visual"]
        pieces: list[torch.Tensor] = []
        pos = 0
        for (start, end), image in zip(spans, self._images):
            # Start/end markers stay text tokens; only the pad run is replaced.
            pieces.append(self._text_embedding(input_ids[pos : start + 1]))
            image_embeds = expect_rank(
                expect_outputs(self._engine.forward(visual, [image]), 1, module=visual.name)[0],
                3,
                name="image embedding",
            )
            if image_embeds.shape[1] != 1:
                image_embeds = image_embeds.permute(1, 0, 2)
            if image_embeds.shape[0] != vision.pad_len:
                raise ExecutionError(
                    f"Visual encoder produced {image_embeds.shape[0]} rows, expected {vision.pad_len}."
                )
            pieces.append(image_embeds)
            pos = end
        pieces.append(self._text_embedding(input_ids[pos:]))
        return torch.cat([p.to(pieces[0].dtype) for p in pieces], dim=0)


def _placeholder_spans(input_ids: list[int], start_id: int, end_id: int, pad_len: int) -> list[tuple[int, int]]:
    """(start, end) index pairs of each `start, pad * pad_len, end` run."""
    spans: list[tuple[int, int]] = []
    i = 0
    n = len(input_ids)
    while i < n:
        if input_ids[i] == start_id:
            end = i + pad_len + 1
            if end >= n or input_ids[end] != end_id:
                raise ExecutionError(f"Malformed image placeholder at position {i}.")
            spans.append((i, end))
            i = end + 1
            continue
        i += 1
    return spans


def read_disk_embedding(path: str, input_ids: list[int], hidden_size: int) -> torch.Tensor:
    """Gather bfloat16 rows for `input_ids` from a flat file and widen them to float32.

    Returns shape (seq_len, 1, hidden_size).
    """
    stride = hidden_size * 2
    buffer = bytearray(len(input_ids) * stride)
    try:
        with open(path, "rb") as f:
            for i, token_id in enumerate(input_ids):
                f.seek(token_id * stride)
                row = f.read(stride)
                if len(row) != stride:
                    raise ExecutionError(f"Token id {token_id} is out of range for {path}.")
                buffer[i * stride : (i + 1) * stride] = row
    except OSError as exc:
        raise ResourceError(f"Failed to read disk embeddings {path}: {exc}") from exc
    rows = torch.frombuffer(buffer, dtype=torch.bfloat16)
    return rows.to(torch.float32).reshape(len(input_ids), 1, hidden_size)
