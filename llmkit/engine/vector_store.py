"""In-memory text/vector store with brute-force L2 search.

Persisted with `torch.save` as a flat list: the (N, D) float32 vector block
first, then one uint8 tensor of raw UTF-8 bytes per stored text.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Iterable, Protocol

import torch

from .errors import ResourceError

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    def embed(self, text: str) -> torch.Tensor: ...


class TextVectorStore:
    def __init__(self, embedder: Embedder | None = None) -> None:
        self._embedder = embedder
        self._texts: list[str] = []
        self._vectors: torch.Tensor | None = None

    def __len__(self) -> int:
        return len(self._texts)

    @property
    def texts(self) -> list[str]:
        return list(self._texts)

    @property
    def vectors(self) -> torch.Tensor | None:
        return self._vectors

    def _text_to_vector(self, text: str) -> torch.Tensor:
        if self._embedder is None:
            raise RuntimeError("TextVectorStore has no embedder; pass one to the constructor or load().")
        vector = self._embedder.embed(text).to(torch.float32)
        return vector.reshape(1, -1)

    def add(self, text: str) -> None:
        vector = self._text_to_vector(text)
        if self._vectors is None:
            self._vectors = vector
        else:
            self._vectors = torch.cat([self._vectors, vector], dim=0)
        self._texts.append(text)

    def add_all(self, texts: Iterable[str]) -> None:
        for text in texts:
            self.add(text)

    def search_with_scores(self, text: str, k: int) -> list[tuple[str, float]]:
        """Up to `k` (text, distance) pairs, nearest first; ties keep insertion order."""
        if k <= 0 or self._vectors is None or not self._texts:
            return []
        query = self._text_to_vector(text)
        distances = _l2_distances(self._vectors, query)
        order = torch.sort(distances, stable=True).indices.tolist()
        results: list[tuple[str, float]] = []
        for idx in order[:k]:
            if 0 <= idx < len(self._texts):
                results.append((self._texts[idx], float(distances[idx].item())))
        return results

    def search(self, text: str, k: int) -> list[str]:
        return [t for t, _ in self.search_with_scores(text, k)]

    def save(self, path: str) -> None:
        if self._vectors is None:
            raise ValueError("Cannot save an empty TextVectorStore.")
        records: list[torch.Tensor] = [self._vectors]
        for text in self._texts:
            records.append(torch.tensor(list(text.encode("utf-8")), dtype=torch.uint8))
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        torch.save(records, path)
        logger.info("saved %d texts to %s", len(self._texts), path)

    @classmethod
    def load(cls, path: str, embedder: Embedder | None = None) -> "TextVectorStore | None":
        """Read a saved store.

        Returns None when the artifact holds fewer than two records, or when
        its vector block is not (N, D) with one row per stored text.
        """
        if not os.path.isfile(path):
            raise ResourceError(f"Vector store not found: {path}")
        try:
            records = torch.load(path, map_location="cpu", weights_only=True)
        except (RuntimeError, ValueError, OSError) as exc:
            raise ResourceError(f"Failed to read vector store {path}: {exc}") from exc
        if not isinstance(records, (list, tuple)) or len(records) < 2:
            logger.warning("vector store %s holds fewer than two records; ignoring", path)
            return None
        vectors = records[0]
        if not isinstance(vectors, torch.Tensor) or vectors.dim() != 2 or vectors.shape[0] != len(records) - 1:
            logger.warning(
                "vector store %s: vector block %s does not match %d texts; ignoring",
                path,
                tuple(vectors.shape) if isinstance(vectors, torch.Tensor) else type(vectors).__name__,
                len(records) - 1,
            )
            return None

        store = cls(embedder)
        store._vectors = vectors.to(torch.float32)
        store._texts = [bytes(t.to(torch.uint8).tolist()).decode("utf-8") for t in records[1:]]
        logger.info("loaded %d texts from %s", len(store._texts), path)
        return store

    def bench(self, n: int = 50000, d: int = 1024, top: int = 5) -> list[tuple[int, float]]:
        """Time one search over `n` random `d`-dim vectors; stored data is untouched."""
        vectors = torch.rand((n, d), dtype=torch.float32)
        query = torch.rand((1, d), dtype=torch.float32)
        started = time.perf_counter()
        distances = _l2_distances(vectors, query)
        order = torch.sort(distances, stable=True).indices
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        logger.info("search took %.0f milliseconds.", elapsed_ms)
        nearest = [(int(i), float(distances[i].item())) for i in order[:top].tolist()]
        for idx, dist in nearest:
            logger.info("index: %d, distance: %f", idx, dist)
        return nearest


def _l2_distances(vectors: torch.Tensor, query: torch.Tensor) -> torch.Tensor:
    return torch.sqrt(torch.sum(torch.square(vectors - query), dim=-1))
