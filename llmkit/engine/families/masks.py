"""Attention-mask and position-id builders.

Every builder takes `(seq_len, state)`: `seq_len > 1` is the prefill over the
whole prompt, `seq_len == 1` is a single decode step. `state` is the counter
snapshot taken before the forward call it feeds.

These tensors encode each architecture's trained positional convention; a
mismatch degrades output quality without raising, so shapes and fills here
are exact.
"""

from __future__ import annotations

import torch

from .base import DecodeState


# -----------------------------------------------------------------------------
# GLM (ChatGLM-6B)
# -----------------------------------------------------------------------------


def glm_attention_mask(seq_len: int, state: DecodeState) -> torch.Tensor:
    mask = torch.zeros((1, 1, seq_len, seq_len), dtype=torch.int32)
    if seq_len > 1:
        # Last column of every row except the final (BOS) row.
        mask[0, 0, : seq_len - 1, seq_len - 1] = 1
    return mask


def glm_position_ids(seq_len: int, state: DecodeState) -> torch.Tensor:
    if seq_len == 1:
        return torch.tensor([[[1], [state.all_seq_len - state.context_len]]], dtype=torch.int32)
    position_ids = torch.zeros((1, 2, seq_len), dtype=torch.int32)
    position_ids[0, 0] = torch.arange(seq_len, dtype=torch.int32)
    position_ids[0, 1, seq_len - 1] = 1
    return position_ids


# -----------------------------------------------------------------------------
# GLM2 (ChatGLM2/3, CodeGeeX2, Phi-2)
# -----------------------------------------------------------------------------


def glm2_attention_mask(seq_len: int, state: DecodeState) -> torch.Tensor:
    if seq_len == 1:
        return torch.zeros((1, 1, 1, 1), dtype=torch.int32)
    future = torch.triu(torch.ones((seq_len, seq_len), dtype=torch.int32), diagonal=1)
    return future.reshape(1, 1, seq_len, seq_len)


def glm2_position_ids(seq_len: int, state: DecodeState) -> torch.Tensor:
    if seq_len == 1:
        return torch.tensor([state.gen_seq_len], dtype=torch.int32)
    return torch.arange(seq_len, dtype=torch.int32)


# -----------------------------------------------------------------------------
# Causal float masks (Qwen, LLaMA family, Qwen-VL)
# -----------------------------------------------------------------------------


def causal_attention_mask(seq_len: int, state: DecodeState) -> torch.Tensor:
    if seq_len == 1:
        # Every cached position plus the new token is visible.
        return torch.zeros((1, 1, 1, state.all_seq_len + 1), dtype=torch.float32)
    lowest = torch.finfo(torch.float32).min
    mask = torch.zeros((seq_len, seq_len), dtype=torch.float32)
    future = torch.triu(torch.ones((seq_len, seq_len), dtype=torch.bool), diagonal=1)
    mask.masked_fill_(future, lowest)
    return mask.reshape(1, 1, seq_len, seq_len)


def causal_position_ids(seq_len: int, state: DecodeState) -> torch.Tensor:
    if seq_len == 1:
        return torch.tensor([[state.all_seq_len]], dtype=torch.int32)
    return torch.arange(seq_len, dtype=torch.int32).reshape(1, seq_len)


# -----------------------------------------------------------------------------
# Bidirectional encoder (BGE)
# -----------------------------------------------------------------------------


def bidirectional_attention_mask(seq_len: int, state: DecodeState) -> torch.Tensor:
    return torch.ones((1, 1, 1, seq_len), dtype=torch.int32)


def plain_position_ids(seq_len: int, state: DecodeState) -> torch.Tensor:
    return torch.arange(seq_len, dtype=torch.int32).reshape(1, seq_len)
