import pytest

torch = pytest.importorskip("torch", reason="torch not installed")

from llmkit.engine.errors import ConfigurationError, ExecutionError, ResourceError
from llmkit.engine.module import BackendConfig, TorchScriptEngine
from llmkit.engine.tensors import expect_outputs, expect_rank, int_tensor, read_token_id


class _AddOne(torch.nn.Module):
    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return x + 1


class _MatMul(torch.nn.Module):
    def forward(self, a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
        return a @ b


def _save_scripted(module, path):
    torch.jit.script(module).save(str(path))
    return str(path)


def test_backend_config_defaults_and_validation():
    cfg = BackendConfig()
    assert (cfg.device, cfg.num_threads, cfg.precision, cfg.memory) == ("cpu", 4, "low", "low")
    assert cfg.float_dtype(torch.device("cpu")) == torch.float32
    assert cfg.with_external("x.weight").external_path == "x.weight"

    for bad in (
        BackendConfig(num_threads=0),
        BackendConfig(precision="fast"),
        BackendConfig(memory="tiny"),
    ):
        with pytest.raises(ConfigurationError):
            bad.validate()


def test_load_missing_artifact(tmp_path):
    with pytest.raises(ResourceError):
        TorchScriptEngine().load(str(tmp_path / "lm.pt"))


def test_load_corrupt_artifact(tmp_path):
    path = tmp_path / "lm.pt"
    path.write_bytes(b"not a torchscript archive")
    with pytest.raises(ResourceError):
        TorchScriptEngine().load(str(path))


def test_load_and_forward(tmp_path):
    engine = TorchScriptEngine()
    handle = engine.load(_save_scripted(_AddOne(), tmp_path / "add.pt"), ("x",), ("y",))

    assert handle.name == "add.pt"
    outputs = engine.forward(handle, [int_tensor([1, 2, 3])])
    assert len(outputs) == 1
    assert outputs[0].tolist() == [2, 3, 4]


def test_forward_input_count_checked(tmp_path):
    engine = TorchScriptEngine()
    handle = engine.load(_save_scripted(_AddOne(), tmp_path / "add.pt"), ("x",), ("y",))
    with pytest.raises(ExecutionError):
        engine.forward(handle, [int_tensor([1]), int_tensor([2])])


def test_forward_failure_is_execution_error(tmp_path):
    engine = TorchScriptEngine()
    handle = engine.load(_save_scripted(_MatMul(), tmp_path / "mm.pt"))
    with pytest.raises(ExecutionError):
        engine.forward(handle, [torch.ones((2, 3)), torch.ones((2, 3))])


def test_cuda_request_without_cuda(tmp_path, monkeypatch):
    from llmkit import runtime

    monkeypatch.setattr(runtime, "is_cuda_available", lambda: False)
    path = _save_scripted(_AddOne(), tmp_path / "add.pt")
    with pytest.raises(ConfigurationError):
        TorchScriptEngine().load(path, config=BackendConfig(device="cuda"))


def test_read_token_id():
    assert read_token_id(torch.tensor([7], dtype=torch.int32)) == 7
    assert read_token_id(torch.tensor([[9, 1]])) == 9
    with pytest.raises(ExecutionError):
        read_token_id(torch.tensor([], dtype=torch.int32))
    with pytest.raises(ExecutionError):
        read_token_id(torch.tensor([1.5]))
    with pytest.raises(ExecutionError):
        read_token_id([1])


def test_shape_checks():
    t = int_tensor([1, 2, 3, 4], shape=(2, 2))
    assert t.dtype == torch.int32
    assert expect_rank(t, 2, name="ids") is t
    with pytest.raises(ExecutionError):
        expect_rank(t, 3, name="ids")
    with pytest.raises(ExecutionError):
        expect_outputs([t], 2, module="block_0")
