from __future__ import annotations

import importlib
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Final

import torch

from ..errors import BackendError
from ..logging import get_logger, log_event
from .types import (
    BindingPointInfo,
    ComputeBackend,
    DataType,
    InputTensors,
    NetworkHandle,
    OutputTensors,
    Status,
    TensorInfo,
)

_TEXT_SUFFIXES: Final[frozenset[str]] = frozenset({".prototxt", ".pbtxt"})
# Placeholders created for input bindings get this suffix to avoid clashing
# with the imported node they replace.
_BINDING_SUFFIX: Final[str] = "_binding"


@dataclass(frozen=True)
class _LoadedGraph:
    session: object
    feeds: dict[str, object]
    fetches: dict[str, object]


class TensorFlowBackend:
    """Frozen TensorFlow GraphDefs run through a v1-compat session."""

    name = "tensorflow"

    def __init__(self) -> None:
        self._logger = get_logger()
        self._tf = _import_tensorflow()
        self._graphs: dict[int, _LoadedGraph] = {}
        self._next_id = 0

    def load_network(
        self,
        model_path: Path,
        inputs: Mapping[str, TensorInfo],
        outputs: Sequence[str],
        compute: ComputeBackend,
    ) -> NetworkHandle:
        tf = self._tf
        graph_def = _read_graph_def(tf, model_path)
        node_names = {n.name for n in graph_def.node}
        for name in [*inputs, *outputs]:
            if name not in node_names:
                raise BackendError(f"model has no node named {name!r}")
        device = _device_for(tf, compute)

        graph = tf.Graph()
        try:
            with graph.as_default(), tf.device(device):
                feeds: dict[str, object] = {}
                for name, info in inputs.items():
                    feeds[name] = tf.compat.v1.placeholder(
                        _tf_dtype(tf, info.dtype), shape=info.shape, name=name + _BINDING_SUFFIX
                    )
                fetched = tf.compat.v1.import_graph_def(
                    graph_def,
                    input_map={f"{n}:0": ph for n, ph in feeds.items()},
                    return_elements=[f"{n}:0" for n in outputs],
                    name="",
                )
        except (ValueError, TypeError, tf.errors.OpError) as exc:
            raise BackendError(f"failed to import graph {model_path.as_posix()}: {exc}") from exc
        fetches = dict(zip(outputs, fetched, strict=True))
        session = tf.compat.v1.Session(graph=graph, config=_session_config(tf, compute))

        network_id = self._next_id
        self._next_id += 1
        self._graphs[network_id] = _LoadedGraph(session=session, feeds=feeds, fetches=fetches)
        in_bindings = {
            name: BindingPointInfo(binding_id=i, info=info)
            for i, (name, info) in enumerate(inputs.items())
        }
        out_bindings = {
            name: BindingPointInfo(
                binding_id=len(in_bindings) + i, info=_static_info(fetches[name], name)
            )
            for i, name in enumerate(outputs)
        }
        log_event(
            "network_loaded",
            {"engine": self.name, "compute": compute.value, "network_id": network_id},
        )
        return NetworkHandle(
            network_id=network_id, compute=compute, inputs=in_bindings, outputs=out_bindings
        )

    def enqueue_workload(
        self, network: NetworkHandle, inputs: InputTensors, outputs: OutputTensors
    ) -> Status:
        g = self._graphs.get(network.network_id)
        if g is None:
            self._logger.error("unknown_network network_id=%d", network.network_id)
            return Status.failure
        in_by_id = dict(inputs)
        out_by_id = dict(outputs)
        feed_dict: dict[object, object] = {}
        for name, ph in g.feeds.items():
            t = in_by_id.get(network.inputs[name].binding_id)
            if t is None:
                self._logger.error("input_not_bound binding=%s", name)
                return Status.failure
            feed_dict[ph] = t.detach().cpu().numpy()

        names = list(g.fetches)
        t0 = time.perf_counter()
        try:
            values = g.session.run([g.fetches[n] for n in names], feed_dict=feed_dict)
        except self._tf.errors.OpError as exc:
            self._logger.error("inference_failed engine=tensorflow msg=%s", exc.message)
            return Status.failure
        latency_ms = int((time.perf_counter() - t0) * 1000)

        for name, value in zip(names, values, strict=True):
            buf = out_by_id.get(network.outputs[name].binding_id)
            if buf is None:
                self._logger.error("output_not_bound binding=%s", name)
                return Status.failure
            r = torch.as_tensor(value)
            if int(r.numel()) != int(buf.numel()):
                self._logger.error(
                    "output_size_mismatch binding=%s got=%d want=%d",
                    name,
                    int(r.numel()),
                    int(buf.numel()),
                )
                return Status.failure
            buf.copy_(r.reshape(buf.shape).to(dtype=buf.dtype))
        log_event("inference_done", {"engine": self.name, "latency_ms": latency_ms})
        return Status.success

    def close(self) -> None:
        graphs = list(self._graphs.values())
        self._graphs.clear()
        for g in graphs:
            g.session.close()


def _import_tensorflow() -> ModuleType:
    try:
        return importlib.import_module("tensorflow")
    except ImportError as exc:
        raise BackendError(
            "the tensorflow engine needs the 'tensorflow' package (pip install mnist-demo[tf])"
        ) from exc


def _read_graph_def(tf: ModuleType, path: Path) -> object:
    if not path.is_file():
        raise BackendError(f"model file not found: {path.as_posix()}")
    from google.protobuf import text_format

    graph_def = tf.compat.v1.GraphDef()
    try:
        if path.suffix.lower() in _TEXT_SUFFIXES:
            text_format.Merge(path.read_text(encoding="utf-8"), graph_def)
        else:
            graph_def.ParseFromString(path.read_bytes())
    except (OSError, UnicodeDecodeError, text_format.ParseError) as exc:
        raise BackendError(f"failed to parse graph {path.as_posix()}: {exc}") from exc
    except Exception as exc:
        # protobuf raises its own DecodeError for malformed binary graphs
        raise BackendError(f"malformed graph {path.as_posix()}: {exc}") from exc
    return graph_def


def _device_for(tf: ModuleType, compute: ComputeBackend) -> str:
    if compute is ComputeBackend.gpu_acc:
        if not tf.config.list_physical_devices("GPU"):
            raise BackendError("compute backend gpu_acc requested but no GPU is visible")
        return "/GPU:0"
    return "/CPU:0"


def _session_config(tf: ModuleType, compute: ComputeBackend) -> object:
    v1 = tf.compat.v1
    level = (
        v1.OptimizerOptions.L0 if compute is ComputeBackend.cpu_ref else v1.OptimizerOptions.L1
    )
    return v1.ConfigProto(
        graph_options=v1.GraphOptions(optimizer_options=v1.OptimizerOptions(opt_level=level)),
        allow_soft_placement=False,
    )


def _tf_dtype(tf: ModuleType, dtype: DataType) -> object:
    return tf.float32 if dtype is DataType.float32 else tf.uint8


def _static_info(tensor: object, name: str) -> TensorInfo:
    shape_obj = getattr(tensor, "shape", None)
    dims = shape_obj.as_list() if shape_obj is not None else None
    if not dims or any(d is None for d in dims):
        raise BackendError(f"output {name!r} has no fully defined static shape")
    dtype_name = str(getattr(getattr(tensor, "dtype", None), "name", "float32"))
    dtype = DataType.uint8 if dtype_name == "uint8" else DataType.float32
    return TensorInfo(shape=tuple(int(d) for d in dims), dtype=dtype)
