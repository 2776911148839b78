"""Tokenizer adapters (text <-> token ids).

Two implementations share one small interface:

- `VocabTokenizer` reads the `tokenizer.txt` vocabulary shipped next to
  exported models: one base64-encoded token piece per line, the line index
  being the token id. Encoding is greedy longest-match over UTF-8 bytes.
- `HFTokenizer` wraps a Hugging Face tokenizer directory via
  `transformers.AutoTokenizer`.

`load_tokenizer()` picks one based on what is on disk.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path

from .errors import ResourceError

logger = logging.getLogger(__name__)

_HF_TOKENIZER_FILES = ("tokenizer.json", "tokenizer_config.json", "tokenizer.model")
_BYTE_PIECE = re.compile(r"<0x[0-9A-Fa-f]{2}>")


class TokenizerAdapter(ABC):
    """Abstract text <-> token-id mapping."""

    @abstractmethod
    def load(self, path: str) -> None:
        pass

    @abstractmethod
    def encode(self, text: str) -> list[int]:
        pass

    @abstractmethod
    def decode(self, token_id: int) -> str:
        pass

    def decode_bytes(self, token_id: int) -> bytes:
        """Raw bytes of one token; pieces that split a UTF-8 character stay partial."""
        return self.decode(token_id).encode("utf-8")


class VocabTokenizer(TokenizerAdapter):
    def __init__(self) -> None:
        self._pieces: list[bytes] = []
        self._piece_to_id: dict[bytes, int] = {}
        self._max_piece_len = 0

    @property
    def vocab_size(self) -> int:
        return len(self._pieces)

    def load(self, path: str) -> None:
        vocab_path = Path(path)
        if not vocab_path.is_file():
            raise ResourceError(f"Vocabulary file not found: {path}")

        pieces: list[bytes] = []
        with vocab_path.open("r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.rstrip("\n").rstrip("\r")
                try:
                    pieces.append(base64.b64decode(line, validate=True))
                except (binascii.Error, ValueError) as exc:
                    raise ResourceError(f"Corrupt vocabulary {path}: line {lineno} is not base64.") from exc
        if not pieces:
            raise ResourceError(f"Vocabulary file is empty: {path}")

        self._pieces = pieces
        self._piece_to_id = {}
        for idx, piece in enumerate(pieces):
            # First occurrence wins for duplicate pieces.
            if piece and piece not in self._piece_to_id:
                self._piece_to_id[piece] = idx
        self._max_piece_len = max(len(p) for p in pieces)
        logger.info("loaded vocabulary %s (%d pieces)", path, len(pieces))

    def encode(self, text: str) -> list[int]:
        if not self._pieces:
            raise RuntimeError("Tokenizer not loaded. Call load() first.")
        data = text.encode("utf-8")
        ids: list[int] = []
        pos = 0
        n = len(data)
        while pos < n:
            match_id = None
            match_len = 0
            for length in range(min(self._max_piece_len, n - pos), 0, -1):
                token_id = self._piece_to_id.get(data[pos : pos + length])
                if token_id is not None:
                    match_id = token_id
                    match_len = length
                    break
            if match_id is None:
                match_id = self._byte_fallback(data[pos])
                match_len = 1
            ids.append(match_id)
            pos += match_len
        return ids

    def _byte_fallback(self, byte: int) -> int:
        token_id = self._piece_to_id.get(f"<0x{byte:02X}>".encode("ascii"))
        if token_id is None:
            raise ValueError(f"Byte 0x{byte:02X} is not representable in this vocabulary.")
        return token_id

    def decode(self, token_id: int) -> str:
        if token_id < 0 or token_id >= len(self._pieces):
            return ""
        return self._pieces[token_id].decode("utf-8", errors="replace")

    def decode_bytes(self, token_id: int) -> bytes:
        if token_id < 0 or token_id >= len(self._pieces):
            return b""
        return self._pieces[token_id]


class HFTokenizer(TokenizerAdapter):
    def __init__(self) -> None:
        self._tokenizer = None

    @property
    def tokenizer(self):
        """Access the wrapped transformers tokenizer."""
        return self._tokenizer

    def load(self, path: str) -> None:
        from transformers import AutoTokenizer

        try:
            self._tokenizer = AutoTokenizer.from_pretrained(path, trust_remote_code=True)
        except (OSError, ValueError) as exc:
            raise ResourceError(f"Failed to load tokenizer from {path}: {exc}") from exc

    def encode(self, text: str) -> list[int]:
        if self._tokenizer is None:
            raise RuntimeError("Tokenizer not loaded. Call load() first.")
        return list(self._tokenizer.encode(text, add_special_tokens=False))

    def decode(self, token_id: int) -> str:
        if self._tokenizer is None:
            raise RuntimeError("Tokenizer not loaded. Call load() first.")
        return self._tokenizer.decode([int(token_id)], skip_special_tokens=False)

    def decode_bytes(self, token_id: int) -> bytes:
        if self._tokenizer is None:
            raise RuntimeError("Tokenizer not loaded. Call load() first.")
        # `<0xHH>` byte-fallback pieces are returned unrepaired.
        piece = self._tokenizer.convert_ids_to_tokens(int(token_id))
        if isinstance(piece, str) and _BYTE_PIECE.fullmatch(piece):
            return piece.encode("ascii")
        return self.decode(token_id).encode("utf-8")


def load_tokenizer(path: str) -> TokenizerAdapter:
    """Load the tokenizer found at `path`.

    A directory holding Hugging Face tokenizer files loads through
    transformers; a directory holding `tokenizer.txt`, or a direct path to a
    vocabulary file, loads as a `VocabTokenizer`.
    """
    if os.path.isdir(path):
        if any(os.path.isfile(os.path.join(path, name)) for name in _HF_TOKENIZER_FILES):
            tokenizer: TokenizerAdapter = HFTokenizer()
            tokenizer.load(path)
            return tokenizer
        path = os.path.join(path, "tokenizer.txt")

    tokenizer = VocabTokenizer()
    tokenizer.load(path)
    return tokenizer
