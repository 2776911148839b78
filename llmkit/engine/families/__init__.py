# Model family descriptors
#
# Each family bundles:
#   - a prompt template       (prompts.py)
#   - mask / position rules   (masks.py)
#   - a stop predicate        (stops.py)
#   - layer count, hidden size and KV-cache shape
#
# The registry (../registry.py) maps identifier fragments to these.

from .base import DecodeState, ModelFamily, Prompt, VisionConfig
from .masks import (
    bidirectional_attention_mask,
    causal_attention_mask,
    causal_position_ids,
    glm2_attention_mask,
    glm2_position_ids,
    glm_attention_mask,
    glm_position_ids,
    plain_position_ids,
)
from .prompts import bge_prompt, glm2_prompt, glm_prompt, llama_prompt, plain_prompt, qwen_prompt, vision_prompt
from .stops import stop_at_or_above, stop_at_or_below, stop_on_any, stop_on_id

CHATGLM_6B = ModelFamily(
    name="chatglm_6b",
    layer_nums=28,
    hidden_size=4096,
    key_value_shape=(2, 0, 1, 32, 128),
    prompt=glm_prompt,
    attention_mask=glm_attention_mask,
    position_ids=glm_position_ids,
    is_stop=stop_on_id(130005),
)


def _glm2(name: str) -> ModelFamily:
    return ModelFamily(
        name=name,
        layer_nums=28,
        hidden_size=4096,
        key_value_shape=(2, 0, 1, 2, 128),
        prompt=glm2_prompt,
        attention_mask=glm2_attention_mask,
        position_ids=glm2_position_ids,
        is_stop=stop_at_or_below(2),
    )


CHATGLM2_6B = _glm2("chatglm2_6b")
CHATGLM3_6B = _glm2("chatglm3_6b")
CODEGEEX2_6B = _glm2("codegeex2_6b")

PHI_2 = ModelFamily(
    name="phi_2",
    layer_nums=32,
    hidden_size=2560,
    key_value_shape=(1, 0, 2, 32, 80),
    prompt=plain_prompt,
    attention_mask=glm2_attention_mask,
    position_ids=glm2_position_ids,
    is_stop=stop_on_id(50256),
)

QWEN_7B = ModelFamily(
    name="qwen_7b",
    layer_nums=32,
    hidden_size=4096,
    key_value_shape=(2, 1, 0, 32, 128),
    prompt=qwen_prompt,
    attention_mask=causal_attention_mask,
    position_ids=causal_position_ids,
    is_stop=stop_at_or_above(151645),
)

QWEN_1_8B = ModelFamily(
    name="qwen_1_8b",
    layer_nums=24,
    hidden_size=2048,
    key_value_shape=(2, 1, 0, 16, 128),
    prompt=qwen_prompt,
    attention_mask=causal_attention_mask,
    position_ids=causal_position_ids,
    is_stop=stop_at_or_above(151645),
)

QWEN_VL_VISION = VisionConfig(start_id=151857, end_id=151858, pad_id=151859)

QWEN_VL = ModelFamily(
    name="qwen_vl",
    layer_nums=32,
    hidden_size=4096,
    key_value_shape=(2, 1, 0, 32, 128),
    prompt=vision_prompt(QWEN_VL_VISION),
    attention_mask=causal_attention_mask,
    position_ids=causal_position_ids,
    is_stop=stop_at_or_above(151645),
    vision=QWEN_VL_VISION,
)


def _llama(name: str, variant: str, is_stop) -> ModelFamily:
    return ModelFamily(
        name=name,
        layer_nums=32,
        hidden_size=4096,
        key_value_shape=(2, 1, 32, 0, 128),
        prompt=llama_prompt(variant),
        attention_mask=causal_attention_mask,
        position_ids=causal_position_ids,
        is_stop=is_stop,
    )


LLAMA2_7B = _llama("llama2_7b", "llama2", stop_on_id(2))
BAICHUAN2_7B = _llama("baichuan2_7b", "baichuan2", stop_on_id(2))
# 103028: <eoa>
INTERNLM_7B = _llama("internlm_7b", "internlm", stop_on_any(2, 103028))

BGE = ModelFamily(
    name="bge",
    layer_nums=24,
    hidden_size=1024,
    prompt=bge_prompt,
    attention_mask=bidirectional_attention_mask,
    position_ids=plain_position_ids,
    is_stop=stop_on_id(102),
    embedding_only=True,
)

GENERATION_FAMILIES = (
    CHATGLM_6B,
    CHATGLM2_6B,
    CHATGLM3_6B,
    CODEGEEX2_6B,
    PHI_2,
    QWEN_7B,
    QWEN_1_8B,
    QWEN_VL,
    LLAMA2_7B,
    BAICHUAN2_7B,
    INTERNLM_7B,
)

__all__ = [
    "DecodeState",
    "ModelFamily",
    "Prompt",
    "VisionConfig",
    "CHATGLM_6B",
    "CHATGLM2_6B",
    "CHATGLM3_6B",
    "CODEGEEX2_6B",
    "PHI_2",
    "QWEN_7B",
    "QWEN_1_8B",
    "QWEN_VL",
    "QWEN_VL_VISION",
    "LLAMA2_7B",
    "BAICHUAN2_7B",
    "INTERNLM_7B",
    "BGE",
    "GENERATION_FAMILIES",
]
