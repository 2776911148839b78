"""Shape-checked accessors for tensors crossing the execution-engine boundary."""

from __future__ import annotations

from typing import Sequence

import torch

from .errors import ExecutionError


def int_tensor(values: Sequence[int], shape: Sequence[int] | None = None) -> torch.Tensor:
    """Build an int32 tensor from token ids (optionally reshaped)."""
    out = torch.tensor(list(values), dtype=torch.int32)
    if shape is not None:
        out = out.reshape(tuple(shape))
    return out


def read_token_id(tensor: torch.Tensor) -> int:
    """Read the first element of a `token_id` output as a Python int."""
    if not isinstance(tensor, torch.Tensor):
        raise ExecutionError(f"Expected a tensor for token_id, got {type(tensor).__name__}.")
    if tensor.numel() < 1:
        raise ExecutionError("token_id output is empty.")
    if tensor.is_floating_point():
        raise ExecutionError(f"token_id output must be integral, got {tensor.dtype}.")
    return int(tensor.reshape(-1)[0].item())


def expect_rank(tensor: torch.Tensor, rank: int, *, name: str) -> torch.Tensor:
    if not isinstance(tensor, torch.Tensor):
        raise ExecutionError(f"Expected a tensor for {name}, got {type(tensor).__name__}.")
    if tensor.dim() != rank:
        raise ExecutionError(f"{name} must have rank {rank}, got shape {tuple(tensor.shape)}.")
    return tensor


def expect_outputs(outputs: Sequence[torch.Tensor], count: int, *, module: str) -> Sequence[torch.Tensor]:
    if len(outputs) < count:
        raise ExecutionError(f"Module {module!r} returned {len(outputs)} outputs, expected {count}.")
    return outputs
