"""Image loading and preprocessing for vision prompts."""

from __future__ import annotations

import io
import logging
import urllib.error
import urllib.request

import torch

from llmkit.runtime import check_pillow_required

from .errors import ImageFetchError
from .families.base import VisionConfig

logger = logging.getLogger(__name__)


def fetch_image_bytes(ref: str, *, timeout_s: float = 30.0) -> bytes:
    """Read an image from an http(s) URL or a local path."""
    if ref.startswith(("http://", "https://")):
        req = urllib.request.Request(ref, headers={"User-Agent": "llmkit"})
        try:
            with urllib.request.urlopen(req, timeout=timeout_s) as resp:
                status = getattr(resp, "status", 200)
                if status != 200:
                    raise ImageFetchError(f"Failed to download image {ref!r}: HTTP {status}")
                data = resp.read()
        except urllib.error.HTTPError as exc:
            raise ImageFetchError(f"Failed to download image {ref!r}: HTTP {exc.code}") from exc
        except (urllib.error.URLError, OSError) as exc:
            raise ImageFetchError(f"Failed to download image {ref!r}: {exc}") from exc
        logger.info("downloaded image %s (%d bytes)", ref, len(data))
        return data

    try:
        with open(ref, "rb") as f:
            return f.read()
    except OSError as exc:
        raise ImageFetchError(f"Failed to read image {ref!r}: {exc}") from exc


def preprocess_image(data: bytes, vision: VisionConfig) -> torch.Tensor:
    """Decode, resize (bilinear, RGB) and normalize into a (1, 3, S, S) float tensor."""
    check_pillow_required()
    from PIL import Image, UnidentifiedImageError

    try:
        image = Image.open(io.BytesIO(data)).convert("RGB")
    except (UnidentifiedImageError, OSError) as exc:
        raise ImageFetchError(f"Failed to decode image: {exc}") from exc

    size = vision.image_size
    image = image.resize((size, size), resample=Image.BILINEAR)
    pixels = torch.frombuffer(bytearray(image.tobytes()), dtype=torch.uint8)
    pixels = pixels.reshape(size, size, 3).permute(2, 0, 1).to(torch.float32)

    mean = torch.tensor(vision.mean, dtype=torch.float32).reshape(3, 1, 1)
    scale = torch.tensor(vision.scale, dtype=torch.float32).reshape(3, 1, 1)
    return ((pixels - mean) * scale).unsqueeze(0)


def load_image(ref: str, vision: VisionConfig, *, timeout_s: float = 30.0) -> torch.Tensor:
    return preprocess_image(fetch_image_bytes(ref, timeout_s=timeout_s), vision)
