import pytest

torch = pytest.importorskip("torch", reason="torch not installed")

from llmkit.engine.families import (
    BAICHUAN2_7B,
    BGE,
    CHATGLM2_6B,
    CHATGLM_6B,
    INTERNLM_7B,
    LLAMA2_7B,
    PHI_2,
    QWEN_1_8B,
    QWEN_7B,
    QWEN_VL,
)
from llmkit.engine.families.base import DecodeState

LOWEST = torch.finfo(torch.float32).min


@pytest.mark.parametrize("family", [QWEN_7B, QWEN_1_8B, QWEN_VL, LLAMA2_7B, BAICHUAN2_7B, INTERNLM_7B])
@pytest.mark.parametrize("seq_len", [2, 5, 9])
def test_causal_prefill_mask(family, seq_len):
    mask = family.attention_mask(seq_len, DecodeState())
    assert mask.dtype == torch.float32
    assert tuple(mask.shape) == (1, 1, seq_len, seq_len)
    m = mask[0, 0]
    for i in range(seq_len):
        for j in range(seq_len):
            if j > i:
                assert m[i, j].item() == LOWEST
            else:
                assert m[i, j].item() == 0.0


def test_causal_decode_mask_and_positions():
    state = DecodeState(all_seq_len=7, gen_seq_len=1)
    mask = QWEN_7B.attention_mask(1, state)
    assert tuple(mask.shape) == (1, 1, 1, 8)
    assert torch.count_nonzero(mask).item() == 0
    assert QWEN_7B.position_ids(1, state).tolist() == [[7]]
    assert QWEN_7B.position_ids(4, DecodeState()).tolist() == [[0, 1, 2, 3]]


def test_glm_decode_positions():
    state = DecodeState(all_seq_len=9, gen_seq_len=3, context_len=5)
    pos = CHATGLM_6B.position_ids(1, state)
    assert pos.reshape(-1).tolist() == [1, 4]
    assert tuple(pos.shape) == (1, 2, 1)


def test_glm_prefill_mask_and_positions():
    mask = CHATGLM_6B.attention_mask(4, DecodeState())
    assert mask.dtype == torch.int32
    expected = torch.zeros((4, 4), dtype=torch.int32)
    expected[:3, 3] = 1
    assert torch.equal(mask[0, 0], expected)

    pos = CHATGLM_6B.position_ids(4, DecodeState(context_len=2))
    assert pos.tolist() == [[[0, 1, 2, 3], [0, 0, 0, 1]]]


def test_glm_decode_mask():
    mask = CHATGLM_6B.attention_mask(1, DecodeState(all_seq_len=3, gen_seq_len=1))
    assert tuple(mask.shape) == (1, 1, 1, 1)
    assert mask.item() == 0


@pytest.mark.parametrize("family", [CHATGLM2_6B, PHI_2])
def test_glm2_masks_and_positions(family):
    mask = family.attention_mask(3, DecodeState())
    assert mask[0, 0].tolist() == [[0, 1, 1], [0, 0, 1], [0, 0, 0]]
    assert family.position_ids(3, DecodeState()).tolist() == [0, 1, 2]

    state = DecodeState(all_seq_len=3, gen_seq_len=2)
    assert family.attention_mask(1, state).tolist() == [[[[0]]]]
    assert family.position_ids(1, state).tolist() == [2]


def test_bge_bidirectional():
    mask = BGE.attention_mask(4, DecodeState())
    assert mask.tolist() == [[[[1, 1, 1, 1]]]]
    assert BGE.position_ids(4, DecodeState()).tolist() == [[0, 1, 2, 3]]


def test_empty_cache_shapes():
    per_layer = QWEN_1_8B.empty_cache(single_file=False)
    assert len(per_layer) == 24
    assert tuple(per_layer[0].shape) == (2, 1, 0, 16, 128)

    combined = QWEN_1_8B.empty_cache(single_file=True)
    assert len(combined) == 1
    assert tuple(combined[0].shape) == (24, 2, 1, 0, 16, 128)


def test_decode_state_advance():
    state = DecodeState(context_len=3).advance(5).advance(1)
    assert state == DecodeState(all_seq_len=6, gen_seq_len=2, context_len=3)
