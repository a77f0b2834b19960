from __future__ import annotations

from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Final, Literal, Protocol

from ..errors import BackendError
from .types import ComputeBackend, InputTensors, NetworkHandle, OutputTensors, Status, TensorInfo

Engine = Literal["auto", "tensorflow", "torch"]
ENGINES: Final[tuple[str, ...]] = ("auto", "tensorflow", "torch")

_SUFFIX_ENGINE: Final[dict[str, Engine]] = {
    ".prototxt": "tensorflow",
    ".pbtxt": "tensorflow",
    ".pb": "tensorflow",
    ".pt": "torch",
    ".ts": "torch",
    ".torchscript": "torch",
}


class InferenceBackend(Protocol):
    """Adapter around an external inference library.

    ``load_network`` parses the model artifact, checks the named bindings
    against it, optimizes it for ``compute`` and loads it, raising
    ``BackendError`` on any failure. ``enqueue_workload`` runs one
    synchronous inference and reports library errors as ``Status.failure``.
    ``close`` releases every loaded network; later workloads fail.
    """

    name: str

    def load_network(
        self,
        model_path: Path,
        inputs: Mapping[str, TensorInfo],
        outputs: Sequence[str],
        compute: ComputeBackend,
    ) -> NetworkHandle: ...

    def enqueue_workload(
        self, network: NetworkHandle, inputs: InputTensors, outputs: OutputTensors
    ) -> Status: ...

    def close(self) -> None: ...


def parse_engine(value: str) -> Engine:
    v = value.strip().lower()
    if v == "auto":
        return "auto"
    if v == "tensorflow":
        return "tensorflow"
    if v == "torch":
        return "torch"
    raise ValueError(f"unknown engine {value!r}; expected one of: {', '.join(ENGINES)}")


def resolve_engine(model_path: Path, engine: Engine = "auto") -> Engine:
    if engine != "auto":
        return engine
    found = _SUFFIX_ENGINE.get(model_path.suffix.lower())
    if found is None:
        raise BackendError(f"cannot infer engine from model file suffix: {model_path.name}")
    return found


def backend_for_model(model_path: Path, engine: Engine = "auto") -> InferenceBackend:
    resolved = resolve_engine(model_path, engine)
    if resolved == "tensorflow":
        from .tf_backend import TensorFlowBackend

        return TensorFlowBackend()
    from .torch_backend import TorchBackend

    return TorchBackend()
