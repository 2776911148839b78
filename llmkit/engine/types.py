"""Engine response and metadata types.

These types are used internally by the sessions and the outer surfaces.
They are independent of any HTTP/API layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class Timing:
    prefill_s: float = 0.0
    decode_s: float = 0.0

    @property
    def total_s(self) -> float:
        return self.prefill_s + self.decode_s


@dataclass(frozen=True)
class GenerateResponse:
    """Result of one `respond` call."""

    text: str
    usage: Usage
    timing: Timing
    finish_reason: Literal["stop", "length"] = "stop"

    def speed_report(self) -> dict[str, float]:
        """Token throughput figures; zero where a phase took no measurable time."""
        prompt = self.usage.prompt_tokens
        output = self.usage.completion_tokens
        t = self.timing
        return {
            "total_tok_per_s": _rate(prompt + output, t.total_s),
            "prefill_tok_per_s": _rate(prompt, t.prefill_s),
            "decode_tok_per_s": _rate(output, t.decode_s),
            "chat_tok_per_s": _rate(output, t.total_s),
        }


def _rate(tokens: int, seconds: float) -> float:
    if seconds <= 0:
        return 0.0
    return tokens / seconds


@dataclass
class ModelInfo:
    """Information about a loaded model."""

    model_path: str
    model_family: str
    device: str
    precision: str
    single_file: bool
    layer_nums: int
    extra: dict[str, Any] = field(default_factory=dict)
