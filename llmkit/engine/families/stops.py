"""Stop predicates: pure functions of a token id."""

from __future__ import annotations

from .base import StopFn


def stop_on_id(token_id: int) -> StopFn:
    def _is_stop(tok: int) -> bool:
        return tok == token_id

    return _is_stop


def stop_at_or_below(threshold: int) -> StopFn:
    """Covers a small reserved range of low ids (e.g. pad/bos/eos = 0..2)."""

    def _is_stop(tok: int) -> bool:
        return tok <= threshold

    return _is_stop


def stop_at_or_above(threshold: int) -> StopFn:
    """Covers a block of special ids at the top of the vocabulary."""

    def _is_stop(tok: int) -> bool:
        return tok >= threshold

    return _is_stop


def stop_on_any(*token_ids: int) -> StopFn:
    ids = frozenset(token_ids)

    def _is_stop(tok: int) -> bool:
        return tok in ids

    return _is_stop
