"""Per-architecture prompt templates.

A template maps `(encode, query, first_turn)` to a `Prompt`. Framing token ids
are the ones each model's chat format tokenizes to; they are spliced in as ids
so that the template does not depend on how a vocabulary spells them.
"""

from __future__ import annotations

import re
from typing import Sequence

from ..errors import ConfigurationError
from .base import Encoder, Prompt, PromptFn, VisionConfig

GLM_TERMINATOR = (130001, 130004)
GLM2_FIRST_TURN_PREFIX = (64790, 64792)
QWEN_ROLE_OPEN = (198, 151644, 872, 198)  # "\n<|im_start|>user\n"
QWEN_ROLE_CLOSE = (151645, 198, 151644, 77091, 198)  # "<|im_end|>\n<|im_start|>assistant\n"
BGE_CLS = 101
BGE_SEP = 102

# name tag -> (prefix, suffix)
LLAMA_FRAMING: dict[str, tuple[tuple[int, ...], tuple[int, ...]]] = {
    # <s>[INST]{query}[/INST]
    "llama2": ((1, 5539, 25580, 29962), (12452, 25580, 29962)),
    # <reserved_106>{query}<reserved_107>
    "baichuan2": ((195,), (196,)),
    # <|User|>:{query}<eoh>\n<|Bot|>:
    "internlm": ((1, 333, 352, 1621, 352, 27232), (103027, 364, 333, 352, 23845, 352, 27232)),
}

_IMG_SPAN_RE = re.compile(r"<img>(.*?)</img>", flags=re.DOTALL)


def glm_prompt(encode: Encoder, query: str, first_turn: bool) -> Prompt:
    ids = encode(query)
    return Prompt(ids=[*ids, *GLM_TERMINATOR], context_len=len(ids))


def glm2_prompt(encode: Encoder, query: str, first_turn: bool) -> Prompt:
    ids = encode(f"问：{query}\n答：")
    context_len = len(ids)
    if first_turn:
        ids = [*GLM2_FIRST_TURN_PREFIX, *ids]
    return Prompt(ids=list(ids), context_len=context_len)


def plain_prompt(encode: Encoder, query: str, first_turn: bool) -> Prompt:
    ids = encode(query)
    return Prompt(ids=list(ids), context_len=len(ids))


def framed_prompt(prefix: Sequence[int], suffix: Sequence[int]) -> PromptFn:
    """Template that wraps the encoded query between fixed id sequences."""
    prefix = tuple(prefix)
    suffix = tuple(suffix)

    def _prompt(encode: Encoder, query: str, first_turn: bool) -> Prompt:
        ids = encode(query)
        return Prompt(ids=[*prefix, *ids, *suffix], context_len=len(ids))

    return _prompt


qwen_prompt = framed_prompt(QWEN_ROLE_OPEN, QWEN_ROLE_CLOSE)
bge_prompt = framed_prompt((BGE_CLS,), (BGE_SEP,))


def llama_prompt(variant: str) -> PromptFn:
    """LLaMA-family template selected by an explicit name tag."""
    try:
        prefix, suffix = LLAMA_FRAMING[variant]
    except KeyError as exc:
        available = ", ".join(LLAMA_FRAMING)
        raise ConfigurationError(f"Unknown LLaMA framing {variant!r}. Available: {available}") from exc
    return framed_prompt(prefix, suffix)


def split_image_spans(query: str) -> list[tuple[str, bool]]:
    """Split text into `(chunk, is_image)` parts around `<img>...</img>` spans.

    Empty text chunks are dropped; image chunks keep their (possibly empty) content.
    """
    parts: list[tuple[str, bool]] = []
    pos = 0
    for match in _IMG_SPAN_RE.finditer(query):
        if match.start() > pos:
            parts.append((query[pos : match.start()], False))
        parts.append((match.group(1), True))
        pos = match.end()
    if pos < len(query):
        parts.append((query[pos:], False))
    return parts


def vision_prompt(vision: VisionConfig) -> PromptFn:
    """Qwen-VL template: image spans become fixed-width placeholder runs."""

    placeholder = [vision.start_id, *([vision.pad_id] * vision.pad_len), vision.end_id]

    def _prompt(encode: Encoder, query: str, first_turn: bool) -> Prompt:
        ids: list[int] = []
        images: list[str] = []
        text_len = 0
        for chunk, is_image in split_image_spans(query):
            if is_image:
                ids.extend(placeholder)
                images.append(chunk.strip())
            else:
                chunk_ids = encode(chunk)
                ids.extend(chunk_ids)
                text_len += len(chunk_ids)
        return Prompt(
            ids=[*QWEN_ROLE_OPEN, *ids, *QWEN_ROLE_CLOSE],
            context_len=text_len,
            images=tuple(images),
        )

    return _prompt
