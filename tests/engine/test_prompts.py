import pytest

pytest.importorskip("torch", reason="torch not installed")

from llmkit.engine.errors import ConfigurationError
from llmkit.engine.families import (
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
    QWEN_VL_VISION,
)
from llmkit.engine.families.prompts import (
    LLAMA_FRAMING,
    QWEN_ROLE_CLOSE,
    QWEN_ROLE_OPEN,
    llama_prompt,
    split_image_spans,
)


def _encode(text: str) -> list[int]:
    return [1000 + ord(ch) for ch in text]


QUERY = "hi"
QUERY_IDS = _encode(QUERY)


@pytest.mark.parametrize(
    "family, prefix, suffix",
    [
        (QWEN_7B, list(QWEN_ROLE_OPEN), list(QWEN_ROLE_CLOSE)),
        (QWEN_1_8B, list(QWEN_ROLE_OPEN), list(QWEN_ROLE_CLOSE)),
        (LLAMA2_7B, [1, 5539, 25580, 29962], [12452, 25580, 29962]),
        (BAICHUAN2_7B, [195], [196]),
        (INTERNLM_7B, list(LLAMA_FRAMING["internlm"][0]), list(LLAMA_FRAMING["internlm"][1])),
        (BGE, [101], [102]),
        (PHI_2, [], []),
    ],
)
def test_framed_first_turn(family, prefix, suffix):
    prompt = family.prompt(_encode, QUERY, True)
    assert prompt.ids == prefix + QUERY_IDS + suffix
    assert prompt.context_len == len(QUERY_IDS)


def test_glm_appends_terminator_pair():
    prompt = CHATGLM_6B.prompt(_encode, QUERY, True)
    assert prompt.ids == QUERY_IDS + [130001, 130004]
    assert prompt.context_len == len(QUERY_IDS)


@pytest.mark.parametrize("family", [CHATGLM2_6B, CHATGLM3_6B, CODEGEEX2_6B])
def test_glm2_prefix_only_on_first_turn(family):
    framed = _encode(f"问：{QUERY}\n答：")

    first = family.prompt(_encode, QUERY, True)
    assert first.ids == [64790, 64792] + framed
    assert first.context_len == len(framed)

    later = family.prompt(_encode, QUERY, False)
    assert later.ids == framed


def test_unknown_llama_framing():
    with pytest.raises(ConfigurationError):
        llama_prompt("mistral")


def test_split_image_spans():
    parts = split_image_spans("look <img>a.png</img> and <img>\nb.png</img>!")
    assert parts == [
        ("look ", False),
        ("a.png", True),
        (" and ", False),
        ("\nb.png", True),
        ("!", False),
    ]
    assert split_image_spans("plain text") == [("plain text", False)]


def test_vision_prompt_placeholders():
    prompt = QWEN_VL.prompt(_encode, "<img> cat.jpg </img>hi", True)
    v = QWEN_VL_VISION
    placeholder = [v.start_id] + [v.pad_id] * v.pad_len + [v.end_id]

    assert prompt.ids == list(QWEN_ROLE_OPEN) + placeholder + QUERY_IDS + list(QWEN_ROLE_CLOSE)
    assert prompt.images == ("cat.jpg",)
    assert prompt.context_len == len(QUERY_IDS)


def test_vision_prompt_without_images_matches_qwen():
    assert QWEN_VL.prompt(_encode, QUERY, True).ids == QWEN_7B.prompt(_encode, QUERY, True).ids
