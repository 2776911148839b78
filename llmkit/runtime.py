"""Runtime environment checks and feature flags for llmkit."""

from __future__ import annotations

import functools

import torch


@functools.lru_cache(maxsize=1)
def is_cuda_available() -> bool:
    """Check if CUDA is available."""
    return torch.cuda.is_available()


@functools.lru_cache(maxsize=1)
def is_pillow_available() -> bool:
    """Check if Pillow is available for image decoding."""
    try:
        import PIL.Image  # noqa: F401
        return True
    except ImportError:
        return False


def resolve_device(device: str) -> torch.device:
    """Map a backend name onto a torch device.

    "auto" picks CUDA when present; an explicit "cuda" on a host without CUDA
    is an error rather than a silent CPU fallback.
    """
    name = (device or "cpu").strip().lower()
    if name == "auto":
        return torch.device("cuda" if is_cuda_available() else "cpu")
    if name.startswith("cuda") and not is_cuda_available():
        raise RuntimeError(
            f"Device {device!r} requested but CUDA is not available. "
            "Use device='cpu' or device='auto'."
        )
    return torch.device(name)


def check_pillow_required() -> None:
    """Raise ImportError if Pillow is not available."""
    if not is_pillow_available():
        raise ImportError(
            "llmkit vision prompts require Pillow for image decoding. "
            "Install it with: pip install pillow"
        )
