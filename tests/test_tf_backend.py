from __future__ import annotations

from pathlib import Path

import pytest
import torch
from _mnist_raw import seven_image, write_t10k

from mnist_demo.config import DatasetConfig, ModelConfig, Settings
from mnist_demo.driver import run
from mnist_demo.errors import BackendError, ErrorCode
from mnist_demo.inference.tf_backend import TensorFlowBackend
from mnist_demo.inference.types import (
    ComputeBackend,
    NetworkHandle,
    Status,
    TensorInfo,
    allocate_output,
    make_input_tensors,
    make_output_tensors,
)

tf = pytest.importorskip("tensorflow")

_IN = {"Placeholder": TensorInfo(shape=(1, 784))}


def _write_graph(
    path: Path, winner: int, binary: bool = False, check_numerics: bool = False
) -> Path:
    """Softmax regression in the layout of the classic TF MNIST tutorial graph."""
    weights = [[0.0] * 10 for _ in range(784)]
    for r in range(784):
        weights[r][winner] = 1.0
    g = tf.Graph()
    with g.as_default():
        x = tf.compat.v1.placeholder(tf.float32, shape=[None, 784], name="Placeholder")
        if check_numerics:
            x = tf.debugging.check_numerics(x, "pixels", name="CheckPixels")
        w = tf.constant(weights, dtype=tf.float32, name="Variable")
        b = tf.constant([0.0] * 10, dtype=tf.float32, name="Variable_1")
        logits = tf.add(tf.matmul(x, w), b, name="add")
        tf.nn.softmax(logits, name="Softmax")
    gd = g.as_graph_def()
    if binary:
        path.write_bytes(gd.SerializeToString())
    else:
        from google.protobuf import text_format

        path.write_text(text_format.MessageToString(gd), encoding="utf-8")
    return path


@pytest.mark.parametrize("compute", [ComputeBackend.cpu_ref, ComputeBackend.cpu_acc])
def test_prototxt_load_and_run(tmp_path: Path, compute: ComputeBackend) -> None:
    path = _write_graph(tmp_path / "simple_mnist_tf.prototxt", winner=3)
    be = TensorFlowBackend()
    h = be.load_network(path, _IN, ["Softmax"], compute)
    out_b = h.output_binding("Softmax")
    assert out_b.info.shape == (1, 10)
    buf = allocate_output(out_b)
    status = be.enqueue_workload(
        h,
        make_input_tensors(h.input_binding("Placeholder"), torch.full((784,), 0.01)),
        make_output_tensors(out_b, buf),
    )
    assert status is Status.success
    assert int(buf.argmax()) == 3


def test_binary_graph(tmp_path: Path) -> None:
    path = _write_graph(tmp_path / "simple_mnist.pb", winner=5, binary=True)
    h = TensorFlowBackend().load_network(path, _IN, ["Softmax"], ComputeBackend.cpu_ref)
    assert h.output_binding("Softmax").info.num_elements == 10


def test_unknown_node_name(tmp_path: Path) -> None:
    path = _write_graph(tmp_path / "g.prototxt", winner=0)
    with pytest.raises(BackendError, match="no node named 'logits'"):
        TensorFlowBackend().load_network(path, _IN, ["logits"], ComputeBackend.cpu_ref)


def test_malformed_text_graph(tmp_path: Path) -> None:
    path = tmp_path / "g.prototxt"
    path.write_text("node { this is not a graph", encoding="utf-8")
    with pytest.raises(BackendError, match="failed to parse"):
        TensorFlowBackend().load_network(path, _IN, ["Softmax"], ComputeBackend.cpu_ref)


def test_gpu_acc_without_gpu(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = _write_graph(tmp_path / "g.prototxt", winner=0)
    monkeypatch.setattr(tf.config, "list_physical_devices", lambda *_: [])
    with pytest.raises(BackendError, match="no GPU"):
        TensorFlowBackend().load_network(path, _IN, ["Softmax"], ComputeBackend.gpu_acc)


def test_driver_with_default_graph_layout(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    data = tmp_path / "data"
    write_t10k(data, [seven_image()], [7])
    (tmp_path / "model").mkdir()
    model = _write_graph(tmp_path / "model" / "simple_mnist_tf.prototxt", winner=7)
    s = Settings(dataset=DatasetConfig(data_dir=data, index=0), model=ModelConfig(path=model))
    assert run(s) == 0
    assert capsys.readouterr().out.splitlines() == ["Predicted: 7", "Actual: 7"]


def _enqueue(
    be: TensorFlowBackend, h: NetworkHandle, x: torch.Tensor
) -> tuple[Status, torch.Tensor]:
    out_b = h.output_binding("Softmax")
    buf = allocate_output(out_b)
    status = be.enqueue_workload(
        h,
        make_input_tensors(h.input_binding("Placeholder"), x),
        make_output_tensors(out_b, buf),
    )
    return status, buf


def test_op_error_reports_failure_status(tmp_path: Path) -> None:
    path = _write_graph(tmp_path / "g.prototxt", winner=1, check_numerics=True)
    be = TensorFlowBackend()
    h = be.load_network(path, _IN, ["Softmax"], ComputeBackend.cpu_ref)
    status, buf = _enqueue(be, h, torch.full((784,), float("nan")))
    assert status is Status.failure
    assert float(buf.abs().sum()) == 0.0
    # The same network still runs finite input afterwards
    status, buf = _enqueue(be, h, torch.full((784,), 0.01))
    assert status is Status.success and int(buf.argmax()) == 1


def test_malformed_binary_graph(tmp_path: Path) -> None:
    path = tmp_path / "g.pb"
    path.write_bytes(b"\xff\xfe\x00 not a serialized GraphDef \x0a\xff")
    with pytest.raises(BackendError, match="malformed graph|failed to parse") as ei:
        TensorFlowBackend().load_network(path, _IN, ["Softmax"], ComputeBackend.cpu_ref)
    assert ei.value.code is ErrorCode.model_load_failed


def test_close_releases_sessions(tmp_path: Path) -> None:
    path = _write_graph(tmp_path / "g.prototxt", winner=2)
    be = TensorFlowBackend()
    h = be.load_network(path, _IN, ["Softmax"], ComputeBackend.cpu_ref)
    be.close()
    status, _ = _enqueue(be, h, torch.full((784,), 0.01))
    assert status is Status.failure
