"""Model family registry.

Maps a model identifier (an explicit type string, or the model path itself
when the type is "auto") to a `ModelFamily`.

Rules are checked in order and matched case-sensitively; a rule applies when
every one of its fragments occurs in the identifier. More specific rules come
before the general family rule, e.g. ("qwen", "vl") before ("qwen",), so a
path naming both resolves to the vision variant.
"""

from __future__ import annotations

import logging
import os
from typing import Sequence

from .errors import ConfigurationError
from .families import (
    BAICHUAN2_7B,
    BGE,
    CHATGLM2_6B,
    CHATGLM3_6B,
    CHATGLM_6B,
    CODEGEEX2_6B,
    INTERNLM_7B,
    LLAMA2_7B,
    PHI_2,
    QWEN_1_8B,
    QWEN_7B,
    QWEN_VL,
    ModelFamily,
)

logger = logging.getLogger(__name__)

# Single-file artifacts are one combined graph; anything else is a directory of sub-modules.
SINGLE_FILE_SUFFIXES = (".pt", ".mnn")

_FAMILY_RULES: list[tuple[tuple[str, ...], ModelFamily]] = [
    (("chatglm2",), CHATGLM2_6B),
    (("chatglm3",), CHATGLM3_6B),
    (("chatglm",), CHATGLM_6B),
    (("codegeex2",), CODEGEEX2_6B),
    (("qwen", "vl"), QWEN_VL),
    # TODO: "1.8" is a plain substring match and also hits unrelated path
    # components such as version directories; needs a token-boundary rule.
    (("qwen", "1.8"), QWEN_1_8B),
    (("qwen",), QWEN_7B),
    (("llama2",), LLAMA2_7B),
    (("baichuan",), BAICHUAN2_7B),
    (("phi2",), PHI_2),
    (("internlm",), INTERNLM_7B),
    (("bge",), BGE),
]


def resolve_family(identifier: str) -> ModelFamily:
    """
    Get the model family for an identifier.

    Args:
        identifier: Model type string or model path.

    Returns:
        The first family whose rule fragments all occur in `identifier`.

    Raises:
        ConfigurationError: If no rule matches.
    """
    for fragments, family in _FAMILY_RULES:
        if all(fragment in identifier for fragment in fragments):
            return family
    available = ", ".join("+".join(fragments) for fragments, _ in _FAMILY_RULES)
    raise ConfigurationError(f"Cannot determine model family for {identifier!r}. Known fragments: {available}")


def resolve_model_type(model_path: str, model_type: str = "auto") -> ModelFamily:
    """Resolve from an explicit type, or from the path when `model_type` is "auto"."""
    identifier = model_path if model_type == "auto" else model_type
    family = resolve_family(identifier)
    logger.info("model family: %s (from %r)", family.name, identifier)
    return family


def is_single_file(model_path: str) -> bool:
    """True when `model_path` names one combined artifact rather than a directory of sub-modules."""
    path = model_path.rstrip("/\\")
    return path.endswith(SINGLE_FILE_SUFFIXES) and not os.path.isdir(path)


def register_family(fragments: Sequence[str], family: ModelFamily, *, index: int = 0) -> None:
    """
    Register a family rule.

    Args:
        fragments: Substrings that must all occur in the identifier.
        family: Family to select.
        index: Position in the rule table (default: first, i.e. highest priority).
    """
    fragments = tuple(fragments)
    if not fragments or not all(fragments):
        raise ConfigurationError("A family rule needs at least one non-empty fragment.")
    _FAMILY_RULES.insert(index, (fragments, family))


def list_model_families() -> list[str]:
    """Return registered family names in rule order (deduplicated)."""
    names: list[str] = []
    for _, family in _FAMILY_RULES:
        if family.name not in names:
            names.append(family.name)
    return names
