"""Execution-engine handle: load named modules and run forward passes.

The sessions only talk to `ExecutionEngine`. The shipped implementation,
`TorchScriptEngine`, runs TorchScript artifacts exported per sub-model
(`block_<i>.pt`, `lm.pt`, ...) or as one combined graph.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, Sequence

import torch

from llmkit.runtime import resolve_device

from .errors import ConfigurationError, ExecutionError, ResourceError

logger = logging.getLogger(__name__)

_PRECISIONS = ("low", "normal", "high")
_MEMORY_TIERS = ("low", "normal", "high")


@dataclass(frozen=True)
class BackendConfig:
    """Backend selection and resource policy for loaded modules.

    Notes:
    - `precision="low"` runs float inputs in float16 on CUDA; CPU stays float32.
    - `memory="low"` memory-maps external weight sidecars instead of reading them eagerly.
    """

    device: str = "cpu"
    num_threads: int = 4
    precision: str = "low"
    memory: str = "low"
    external_path: str | None = None

    def validate(self) -> None:
        if self.num_threads <= 0:
            raise ConfigurationError("'num_threads' must be > 0.")
        if self.precision not in _PRECISIONS:
            raise ConfigurationError(f"'precision' must be one of {_PRECISIONS}, got {self.precision!r}.")
        if self.memory not in _MEMORY_TIERS:
            raise ConfigurationError(f"'memory' must be one of {_MEMORY_TIERS}, got {self.memory!r}.")

    def with_external(self, external_path: str | None) -> "BackendConfig":
        return replace(self, external_path=external_path)

    def float_dtype(self, device: torch.device) -> torch.dtype:
        if self.precision == "low" and device.type == "cuda":
            return torch.float16
        return torch.float32


@dataclass
class ModuleHandle:
    """A loaded module plus the input/output labels it was loaded with."""

    name: str
    path: str
    module: Any
    input_names: tuple[str, ...] = ()
    output_names: tuple[str, ...] = ()
    device: torch.device = torch.device("cpu")
    float_dtype: torch.dtype = torch.float32


class ExecutionEngine(ABC):
    """Abstract execution engine used by the sessions."""

    @abstractmethod
    def load(
        self,
        path: str,
        input_names: Sequence[str] = (),
        output_names: Sequence[str] = (),
        *,
        config: BackendConfig | None = None,
    ) -> ModuleHandle:
        pass

    @abstractmethod
    def forward(self, handle: ModuleHandle, inputs: Sequence[torch.Tensor]) -> list[torch.Tensor]:
        pass


class TorchScriptEngine(ExecutionEngine):
    def __init__(self, config: BackendConfig | None = None) -> None:
        self._config = config or BackendConfig()
        self._config.validate()

    @property
    def config(self) -> BackendConfig:
        return self._config

    def load(
        self,
        path: str,
        input_names: Sequence[str] = (),
        output_names: Sequence[str] = (),
        *,
        config: BackendConfig | None = None,
    ) -> ModuleHandle:
        cfg = config or self._config
        cfg.validate()
        if not os.path.isfile(path):
            raise ResourceError(f"Model artifact not found: {path}")

        try:
            device = resolve_device(cfg.device)
        except RuntimeError as exc:
            raise ConfigurationError(str(exc)) from exc
        torch.set_num_threads(cfg.num_threads)

        try:
            module = torch.jit.load(path, map_location=device)
        except (RuntimeError, ValueError) as exc:
            raise ResourceError(f"Failed to load model artifact {path}: {exc}") from exc

        if cfg.external_path:
            self._load_external_weights(module, cfg, device)

        dtype = cfg.float_dtype(device)
        if dtype != torch.float32:
            module = module.to(dtype)
        module.eval()

        return ModuleHandle(
            name=os.path.basename(path),
            path=path,
            module=module,
            input_names=tuple(input_names),
            output_names=tuple(output_names),
            device=device,
            float_dtype=dtype,
        )

    def _load_external_weights(self, module: Any, cfg: BackendConfig, device: torch.device) -> None:
        external_path = cfg.external_path
        if not external_path or not os.path.isfile(external_path):
            raise ResourceError(f"External weights file not found: {external_path}")
        try:
            state = torch.load(
                external_path,
                map_location=device,
                mmap=cfg.memory == "low",
                weights_only=True,
            )
        except (RuntimeError, ValueError, OSError) as exc:
            raise ResourceError(f"Failed to read external weights {external_path}: {exc}") from exc
        if not isinstance(state, dict):
            raise ResourceError(f"External weights {external_path} must hold a state dict.")
        missing, unexpected = module.load_state_dict(state, strict=False)
        if unexpected:
            logger.warning("external weights %s: %d unexpected keys ignored", external_path, len(unexpected))
        if missing:
            logger.debug("external weights %s: %d keys kept from the artifact", external_path, len(missing))

    def forward(self, handle: ModuleHandle, inputs: Sequence[torch.Tensor]) -> list[torch.Tensor]:
        if handle.input_names and len(inputs) != len(handle.input_names):
            raise ExecutionError(
                f"Module {handle.name!r} expects inputs {list(handle.input_names)}, got {len(inputs)} tensors."
            )

        args = [self._to_device(t, handle) for t in inputs]
        try:
            with torch.inference_mode():
                raw = handle.module(*args)
        except Exception as exc:
            raise ExecutionError(f"Forward failed in module {handle.name!r}: {exc}") from exc
        outputs = _normalize_outputs(raw, handle)
        if handle.output_names and len(outputs) < len(handle.output_names):
            raise ExecutionError(
                f"Module {handle.name!r} returned {len(outputs)} outputs, "
                f"expected {list(handle.output_names)}."
            )
        return outputs

    @staticmethod
    def _to_device(tensor: torch.Tensor, handle: ModuleHandle) -> torch.Tensor:
        tensor = tensor.to(handle.device)
        if tensor.is_floating_point() and tensor.dtype != handle.float_dtype:
            tensor = tensor.to(handle.float_dtype)
        return tensor


def _normalize_outputs(raw: Any, handle: ModuleHandle) -> list[torch.Tensor]:
    if isinstance(raw, torch.Tensor):
        return [raw]
    if isinstance(raw, (list, tuple)):
        return list(raw)
    if isinstance(raw, dict):
        names = handle.output_names or tuple(raw.keys())
        try:
            return [raw[name] for name in names]
        except KeyError as exc:
            raise ExecutionError(f"Module {handle.name!r} did not return output {exc.args[0]!r}.") from exc
    raise ExecutionError(f"Module {handle.name!r} returned unsupported output type {type(raw).__name__}.")
