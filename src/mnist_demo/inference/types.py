from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum

import torch
from torch import Tensor


class ComputeBackend(str, Enum):
    """Execution target for an optimized network.

    ``cpu_ref`` runs the plain, unoptimized graph on the CPU, ``cpu_acc``
    runs it on the CPU after the library's inference optimizations and
    ``gpu_acc`` places it on the first GPU.
    """

    cpu_ref = "cpu_ref"
    cpu_acc = "cpu_acc"
    gpu_acc = "gpu_acc"

    @staticmethod
    def parse(value: str) -> ComputeBackend:
        key = value.strip().lower()
        for cb in ComputeBackend:
            if cb.value == key:
                return cb
        known = ", ".join(cb.value for cb in ComputeBackend)
        raise ValueError(f"unknown compute backend {value!r}; expected one of: {known}")


DEFAULT_COMPUTE: ComputeBackend = ComputeBackend.cpu_acc


class DataType(str, Enum):
    float32 = "float32"
    uint8 = "uint8"

    @property
    def torch_dtype(self) -> torch.dtype:
        return torch.float32 if self is DataType.float32 else torch.uint8


class Status(str, Enum):
    success = "success"
    failure = "failure"


@dataclass(frozen=True)
class TensorInfo:
    shape: tuple[int, ...]
    dtype: DataType = DataType.float32

    @property
    def num_elements(self) -> int:
        return math.prod(self.shape)


@dataclass(frozen=True)
class BindingPointInfo:
    binding_id: int
    info: TensorInfo


@dataclass(frozen=True)
class NetworkHandle:
    network_id: int
    compute: ComputeBackend
    inputs: Mapping[str, BindingPointInfo] = field(default_factory=dict)
    outputs: Mapping[str, BindingPointInfo] = field(default_factory=dict)

    def input_binding(self, name: str) -> BindingPointInfo:
        b = self.inputs.get(name)
        if b is None:
            raise KeyError(f"no input binding named {name!r}")
        return b

    def output_binding(self, name: str) -> BindingPointInfo:
        b = self.outputs.get(name)
        if b is None:
            raise KeyError(f"no output binding named {name!r}")
        return b


# Pairs of (binding id, buffer) handed to enqueue_workload
InputTensors = list[tuple[int, Tensor]]
OutputTensors = list[tuple[int, Tensor]]


def make_input_tensors(binding: BindingPointInfo, data: Tensor) -> InputTensors:
    """Bind ``data`` to an input, reshaped to the binding's declared shape."""
    info = binding.info
    if int(data.numel()) != info.num_elements:
        raise ValueError(
            f"input buffer has {int(data.numel())} elements, binding expects {info.num_elements}"
        )
    t = data.reshape(info.shape).to(dtype=info.dtype.torch_dtype)
    return [(binding.binding_id, t)]


def make_output_tensors(binding: BindingPointInfo, buffer: Tensor) -> OutputTensors:
    info = binding.info
    if tuple(int(d) for d in buffer.shape) != info.shape:
        raise ValueError(
            f"output buffer shape {tuple(buffer.shape)} does not match binding {info.shape}"
        )
    if buffer.dtype != info.dtype.torch_dtype:
        raise ValueError("output buffer dtype does not match binding")
    return [(binding.binding_id, buffer)]


def allocate_output(binding: BindingPointInfo) -> Tensor:
    return torch.zeros(binding.info.shape, dtype=binding.info.dtype.torch_dtype)


def argmax_first(scores: Sequence[float]) -> int:
    """Index of the maximum score; ties go to the lowest index."""
    if len(scores) == 0:
        raise ValueError("cannot reduce an empty score vector")
    top_idx = 0
    best = scores[0]
    for i in range(1, len(scores)):
        if scores[i] > best:
            best = scores[i]
            top_idx = i
    return top_idx


@dataclass(frozen=True)
class Prediction:
    scores: tuple[float, ...]
    label: int

    @staticmethod
    def from_output(buffer: Tensor) -> Prediction:
        scores = tuple(float(x) for x in buffer.detach().reshape(-1).cpu().tolist())
        return Prediction(scores=scores, label=argmax_first(scores))
