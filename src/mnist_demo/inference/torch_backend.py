from __future__ import annotations

import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Final

import torch
from torch import Tensor

from ..errors import BackendError
from ..logging import get_logger, log_event
from .manifest import MANIFEST_NAME, ModelManifest
from .types import (
    BindingPointInfo,
    ComputeBackend,
    InputTensors,
    NetworkHandle,
    OutputTensors,
    Status,
    TensorInfo,
)

_LOAD_ERRORS: Final[tuple[type[BaseException], ...]] = (
    OSError,
    ValueError,
    RuntimeError,
    UnicodeDecodeError,
)


@dataclass(frozen=True)
class _LoadedNetwork:
    module: torch.jit.ScriptModule
    device: torch.device
    input_names: tuple[str, ...]
    model_input_shapes: dict[str, tuple[int, ...]]
    output_names: tuple[str, ...]


class TorchBackend:
    """TorchScript archives with a binding manifest stored as an extra file."""

    name = "torch"

    def __init__(self) -> None:
        self._logger = get_logger()
        self._networks: dict[int, _LoadedNetwork] = {}
        self._next_id = 0

    def load_network(
        self,
        model_path: Path,
        inputs: Mapping[str, TensorInfo],
        outputs: Sequence[str],
        compute: ComputeBackend,
    ) -> NetworkHandle:
        module, manifest = load_archive(model_path)
        _check_bindings(manifest, inputs, outputs)
        device = _device_for(compute)
        optimized = _optimize(module, compute, device)

        network_id = self._next_id
        self._next_id += 1
        in_bindings = {
            name: BindingPointInfo(binding_id=i, info=info)
            for i, (name, info) in enumerate(inputs.items())
        }
        out_bindings = {
            name: BindingPointInfo(binding_id=len(in_bindings) + i, info=manifest.outputs[name])
            for i, name in enumerate(outputs)
        }
        self._networks[network_id] = _LoadedNetwork(
            module=optimized,
            device=device,
            input_names=tuple(inputs),
            model_input_shapes={n: manifest.inputs[n].shape for n in inputs},
            output_names=tuple(outputs),
        )
        log_event(
            "network_loaded",
            {
                "engine": self.name,
                "compute": compute.value,
                "network_id": network_id,
                "model": manifest.model_id,
            },
        )
        return NetworkHandle(
            network_id=network_id, compute=compute, inputs=in_bindings, outputs=out_bindings
        )

    def enqueue_workload(
        self, network: NetworkHandle, inputs: InputTensors, outputs: OutputTensors
    ) -> Status:
        net = self._networks.get(network.network_id)
        if net is None:
            self._logger.error("unknown_network network_id=%d", network.network_id)
            return Status.failure
        in_by_id = dict(inputs)
        out_by_id = dict(outputs)
        args: list[Tensor] = []
        for name in net.input_names:
            t = in_by_id.get(network.inputs[name].binding_id)
            if t is None:
                self._logger.error("input_not_bound binding=%s", name)
                return Status.failure
            args.append(t.reshape(net.model_input_shapes[name]).to(net.device))

        t0 = time.perf_counter()
        try:
            with torch.no_grad():
                result: object = net.module(*args)
        except RuntimeError as exc:
            self._logger.error("inference_failed engine=torch msg=%s", exc)
            return Status.failure
        latency_ms = int((time.perf_counter() - t0) * 1000)

        results = _collect_outputs(result, net.output_names)
        for name in net.output_names:
            buf = out_by_id.get(network.outputs[name].binding_id)
            r = results.get(name)
            if buf is None or r is None:
                self._logger.error("output_not_bound binding=%s", name)
                return Status.failure
            if int(r.numel()) != int(buf.numel()):
                self._logger.error(
                    "output_size_mismatch binding=%s got=%d want=%d",
                    name,
                    int(r.numel()),
                    int(buf.numel()),
                )
                return Status.failure
            buf.copy_(r.detach().reshape(buf.shape).to(device=buf.device, dtype=buf.dtype))
        log_event("inference_done", {"engine": self.name, "latency_ms": latency_ms})
        return Status.success

    def close(self) -> None:
        self._networks.clear()


def load_archive(path: Path) -> tuple[torch.jit.ScriptModule, ModelManifest]:
    if not path.is_file():
        raise BackendError(f"model file not found: {path.as_posix()}")
    extra: dict[str, object] = {MANIFEST_NAME: ""}
    try:
        module = torch.jit.load(path.as_posix(), map_location="cpu", _extra_files=extra)
        raw = extra.get(MANIFEST_NAME, "")
        text = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
        if not text:
            raise ValueError(f"archive has no {MANIFEST_NAME}")
        manifest = ModelManifest.from_json(text)
    except _LOAD_ERRORS as exc:
        raise BackendError(f"failed to load TorchScript model {path.as_posix()}: {exc}") from exc
    return module, manifest


def save_archive(module: torch.nn.Module, path: Path, manifest: ModelManifest) -> None:
    """Script ``module`` and write it with ``manifest`` embedded."""
    scripted = torch.jit.script(module.eval())
    path.parent.mkdir(parents=True, exist_ok=True)
    torch.jit.save(scripted, path.as_posix(), _extra_files={MANIFEST_NAME: manifest.to_json()})


def _check_bindings(
    manifest: ModelManifest, inputs: Mapping[str, TensorInfo], outputs: Sequence[str]
) -> None:
    for name, info in inputs.items():
        have = manifest.inputs.get(name)
        if have is None:
            raise BackendError(f"model has no input named {name!r}")
        if have.num_elements != info.num_elements:
            raise BackendError(
                f"input {name!r} expects {have.num_elements} elements, declared {info.num_elements}"
            )
        if have.dtype is not info.dtype:
            raise BackendError(f"input {name!r} expects {have.dtype.value}")
    for name in outputs:
        if name not in manifest.outputs:
            raise BackendError(f"model has no output named {name!r}")


def _device_for(compute: ComputeBackend) -> torch.device:
    if compute is ComputeBackend.gpu_acc:
        if not torch.cuda.is_available():
            raise BackendError("compute backend gpu_acc requested but CUDA is not available")
        return torch.device("cuda")
    return torch.device("cpu")


def _optimize(
    module: torch.jit.ScriptModule, compute: ComputeBackend, device: torch.device
) -> torch.jit.ScriptModule:
    m = module.to(device)
    m.eval()
    if compute is ComputeBackend.cpu_ref:
        return m
    try:
        if compute is ComputeBackend.cpu_acc:
            return torch.jit.optimize_for_inference(torch.jit.freeze(m))
        return torch.jit.freeze(m)
    except RuntimeError as exc:
        raise BackendError(f"failed to optimize network for {compute.value}: {exc}") from exc


def _collect_outputs(result: object, names: tuple[str, ...]) -> dict[str, Tensor]:
    if isinstance(result, Tensor):
        # A bare tensor can only stand for a single declared output
        return {names[0]: result} if len(names) == 1 else {}
    if isinstance(result, dict):
        return {str(k): v for k, v in result.items() if isinstance(v, Tensor)}
    if isinstance(result, tuple | list):
        return {n: v for n, v in zip(names, result, strict=False) if isinstance(v, Tensor)}
    return {}
