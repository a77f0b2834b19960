from __future__ import annotations

from pathlib import Path

import pytest
import torch
from PIL import Image
from scripts import train_simple_mnist as tsm
from scripts.train_simple_mnist import SimpleMnist, TrainConfig, export, train

from mnist_demo.inference.torch_backend import TorchBackend
from mnist_demo.inference.types import (
    ComputeBackend,
    Status,
    TensorInfo,
    allocate_output,
    make_input_tensors,
    make_output_tensors,
)


class _Stripes:
    """Two separable digit classes: a bright left half (0) and a bright right half (1)."""

    def __init__(self, n: int) -> None:
        self._n = n

    def __len__(self) -> int:
        return self._n

    def __getitem__(self, idx: int) -> tuple[Image.Image, int]:
        label = idx % 2
        img = Image.new("L", (28, 28), 0)
        x0 = 0 if label == 0 else 14
        for y in range(28):
            for x in range(x0, x0 + 14):
                img.putpixel((x, y), 255)
        return img, label


def _cfg(tmp_path: Path, epochs: int = 3) -> TrainConfig:
    return TrainConfig(
        data_root=tmp_path / "mnist",
        out=tmp_path / "model" / "simple_mnist.pt",
        model_id="m_test",
        epochs=epochs,
        batch_size=4,
        lr=0.5,
        seed=0,
    )


def test_parse_args_defaults_and_overrides() -> None:
    cfg = tsm._parse_args([])
    assert cfg.out == Path("./model/simple_mnist.pt") and cfg.epochs > 0
    cfg2 = tsm._parse_args(["--epochs", "1", "--out", "x.pt", "--lr", "0.1"])
    assert cfg2.epochs == 1 and cfg2.out == Path("x.pt") and cfg2.lr == 0.1


def test_simple_mnist_outputs_probabilities() -> None:
    m = SimpleMnist()
    probs = m(torch.zeros(2, 784))
    assert tuple(probs.shape) == (2, 10)
    assert torch.allclose(probs.sum(dim=1), torch.ones(2))


def test_train_export_and_run(tmp_path: Path) -> None:
    cfg = _cfg(tmp_path)
    model, val_acc = train(cfg, (_Stripes(16), _Stripes(8)))
    assert val_acc >= 0.75
    manifest = export(model, cfg.out, cfg.model_id)
    assert cfg.out.exists()
    assert manifest.inputs["Placeholder"].shape == (1, 784)

    be = TorchBackend()
    h = be.load_network(
        cfg.out, {"Placeholder": TensorInfo(shape=(1, 784))}, ["Softmax"], ComputeBackend.cpu_acc
    )
    x = torch.zeros(28, 28)
    x[:, 14:] = 1.0
    buf = allocate_output(h.output_binding("Softmax"))
    status = be.enqueue_workload(
        h,
        make_input_tensors(h.input_binding("Placeholder"), x),
        make_output_tensors(h.output_binding("Softmax"), buf),
    )
    assert status is Status.success and int(buf.argmax()) == 1


def test_main_uses_torchvision_datasets(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def _mnist(root: str, train: bool, download: bool) -> _Stripes:
        assert download is True
        return _Stripes(8 if train else 4)

    monkeypatch.setattr("scripts.train_simple_mnist.datasets.MNIST", _mnist, raising=True)
    out = tmp_path / "out.pt"
    tsm.main(["--data-root", str(tmp_path), "--out", str(out), "--epochs", "1"])
    assert out.exists()
