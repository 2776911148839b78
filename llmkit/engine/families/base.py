"""Model family descriptor and the per-call decode snapshot."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable

import torch

Encoder = Callable[[str], list[int]]


@dataclass(frozen=True)
class DecodeState:
    """Counters visible to mask/position builders for one forward call.

    `all_seq_len` counts tokens already fed to the model in this response,
    `gen_seq_len` counts completed forward calls (one token each), and
    `context_len` is the length of the encoded query before special tokens.
    """

    all_seq_len: int = 0
    gen_seq_len: int = 0
    context_len: int = 0

    def advance(self, seq_len: int) -> "DecodeState":
        return replace(self, all_seq_len=self.all_seq_len + seq_len, gen_seq_len=self.gen_seq_len + 1)


@dataclass(frozen=True)
class Prompt:
    """Token ids for one turn plus what the position/vision code needs from it."""

    ids: list[int]
    context_len: int
    images: tuple[str, ...] = ()


PromptFn = Callable[[Encoder, str, bool], Prompt]
TensorFn = Callable[[int, DecodeState], torch.Tensor]
StopFn = Callable[[int], bool]


@dataclass(frozen=True)
class VisionConfig:
    """Placeholder ids and preprocessing constants for image spans."""

    start_id: int
    end_id: int
    pad_id: int
    pad_len: int = 256
    image_size: int = 448
    mean: tuple[float, float, float] = (123.25239296, 117.20384, 104.50194688)
    scale: tuple[float, float, float] = (0.0145414, 0.01494914, 0.01416452)


@dataclass(frozen=True)
class ModelFamily:
    """One named architecture: prompt framing, mask/position rules, stop rule, shapes.

    Behaviour lives in plain functions held as fields, so a variant is data
    and new variants are added by constructing another descriptor.
    """

    name: str
    layer_nums: int
    hidden_size: int
    prompt: PromptFn
    attention_mask: TensorFn
    position_ids: TensorFn
    is_stop: StopFn
    key_value_shape: tuple[int, ...] = ()
    vision: VisionConfig | None = None
    embedding_only: bool = False

    @property
    def is_visual(self) -> bool:
        return self.vision is not None

    def cache_shape(self, single_file: bool) -> tuple[int, ...]:
        if single_file:
            return (self.layer_nums, *self.key_value_shape)
        return self.key_value_shape

    def empty_cache(self, single_file: bool) -> list[torch.Tensor]:
        """Fresh per-layer (or one combined) KV-cache tensors with a zero-length sequence axis."""
        shape = self.cache_shape(single_file)
        count = 1 if single_file else self.layer_nums
        return [torch.zeros(shape, dtype=torch.float32) for _ in range(count)]
