"""Sentence-embedding session (one forward call per text, no KV cache)."""

from __future__ import annotations

import logging
import os
import time
from typing import Any

import torch

from .errors import ConfigurationError
from .families.base import DecodeState, ModelFamily
from .module import BackendConfig, ExecutionEngine, ModuleHandle, TorchScriptEngine
from .registry import resolve_model_type
from .tensors import expect_outputs, expect_rank, int_tensor
from .tokenizer import TokenizerAdapter, load_tokenizer

logger = logging.getLogger(__name__)

EMBEDDING_INPUTS = ("input_ids", "attention_mask", "position_ids")
EMBEDDING_OUTPUTS = ("sentence_embeddings",)


class EmbeddingSession:
    """
    Text -> fixed-size vector.

    Example:
        >>> embedder = EmbeddingSession.create("models/bge-large-zh.pt")
        >>> embedder.load("models/bge-large-zh.pt")
        >>> vec = embedder.embed("hello")  # shape (1, hidden_size)
    """

    def __init__(
        self,
        family: ModelFamily,
        *,
        engine: ExecutionEngine | None = None,
        tokenizer: TokenizerAdapter | None = None,
        backend_config: BackendConfig | None = None,
    ) -> None:
        if not family.embedding_only:
            raise ConfigurationError(f"Model family {family.name!r} is not an embedding family.")
        self._family = family
        self._backend_config = backend_config or BackendConfig()
        self._engine = engine or TorchScriptEngine(self._backend_config)
        self._tokenizer = tokenizer
        self._module: ModuleHandle | None = None
        self._model_path: str | None = None
        self._last_prompt_len = 0
        self._last_embed_s = 0.0

    @classmethod
    def create(cls, model_path: str, model_type: str = "auto", **kwargs: Any) -> "EmbeddingSession":
        return cls(resolve_model_type(model_path, model_type), **kwargs)

    @property
    def family(self) -> ModelFamily:
        return self._family

    @property
    def hidden_size(self) -> int:
        return self._family.hidden_size

    def load(self, model_path: str) -> None:
        """Load the model file and the tokenizer from the same directory."""
        self._model_path = model_path
        if self._tokenizer is None:
            logger.info("load tokenizer")
            self._tokenizer = load_tokenizer(os.path.dirname(os.path.abspath(model_path)))
            logger.info("load tokenizer Done")
        logger.info("load %s ...", model_path)
        self._module = self._engine.load(
            model_path, EMBEDDING_INPUTS, EMBEDDING_OUTPUTS, config=self._backend_config
        )
        logger.info("load %s Done!", model_path)

    def embed(self, text: str) -> torch.Tensor:
        if self._module is None or self._tokenizer is None:
            raise RuntimeError("Model not loaded. Call load() first.")
        prompt = self._family.prompt(self._tokenizer.encode, text, True)
        seq_len = len(prompt.ids)
        attention_mask = self._family.attention_mask(seq_len, DecodeState())
        position_ids = self._family.position_ids(seq_len, DecodeState())

        started = time.perf_counter()
        outputs = expect_outputs(
            self._engine.forward(self._module, [int_tensor(prompt.ids), attention_mask, position_ids]),
            1,
            module=self._module.name,
        )
        self._last_embed_s = time.perf_counter() - started
        self._last_prompt_len = seq_len

        vector = outputs[0].to(torch.float32)
        if vector.dim() == 1:
            vector = vector.unsqueeze(0)
        expect_rank(vector, 2, name="sentence_embeddings")
        logger.debug(
            "embedded %d tokens in %.3fs (%.2f tok/s)",
            seq_len,
            self._last_embed_s,
            seq_len / self._last_embed_s if self._last_embed_s > 0 else 0.0,
        )
        return vector

    def speed_report(self) -> dict[str, float]:
        total_s = self._last_embed_s
        return {
            "total_tokens": float(self._last_prompt_len),
            "total_s": total_s,
            "total_tok_per_s": self._last_prompt_len / total_s if total_s > 0 else 0.0,
        }

    @staticmethod
    def distance(a: torch.Tensor, b: torch.Tensor) -> float:
        """Euclidean distance between two embeddings."""
        return float(torch.sqrt(torch.sum(torch.square(a.to(torch.float32) - b.to(torch.float32)))).item())
