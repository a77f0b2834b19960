from __future__ import annotations

import argparse
import random
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final, Protocol

import torch
import torch.nn.functional as F  # noqa: N812 (torch convention)
from PIL import Image
from torch import Tensor
from torch.utils.data import DataLoader, Dataset
from torchvision import datasets
from torchvision.transforms.functional import pil_to_tensor

from mnist_demo.inference.manifest import ModelManifest
from mnist_demo.inference.torch_backend import save_archive
from mnist_demo.inference.types import DataType, TensorInfo
from mnist_demo.logging import get_logger, init_logging

MNIST_N_CLASSES: Final[int] = 10
MNIST_PIXELS: Final[int] = 28 * 28
INPUT_NAME: Final[str] = "Placeholder"
OUTPUT_NAME: Final[str] = "Softmax"


@dataclass(frozen=True)
class TrainConfig:
    data_root: Path
    out: Path
    model_id: str
    epochs: int
    batch_size: int
    lr: float
    seed: int


class MNISTLike(Protocol):
    def __len__(self) -> int: ...
    def __getitem__(self, idx: int) -> tuple[Image.Image, int]: ...


class SimpleMnist(torch.nn.Module):
    """Single dense layer followed by softmax, the classic TF MNIST tutorial model."""

    def __init__(self) -> None:
        super().__init__()
        self.fc = torch.nn.Linear(MNIST_PIXELS, MNIST_N_CLASSES)

    def logits(self, x: Tensor) -> Tensor:
        return self.fc(x.reshape(x.shape[0], -1))

    def forward(self, x: Tensor) -> Tensor:
        return torch.softmax(self.logits(x), dim=1)


class _FlatDataset(Dataset[tuple[Tensor, int]]):
    """MNIST images as flat float vectors scaled to [0, 1], matching the demo loader."""

    def __init__(self, base: MNISTLike) -> None:
        self._base = base

    def __len__(self) -> int:
        return len(self._base)

    def __getitem__(self, idx: int) -> tuple[Tensor, int]:
        img, label = self._base[idx]
        if not isinstance(img, Image.Image):  # pragma: no cover - torchvision contract
            raise RuntimeError("MNIST returned a non-image sample")
        t = pil_to_tensor(img.convert("L")).reshape(-1).to(torch.float32) / 255.0
        return t, int(label)


def _parse_args(argv: list[str] | None = None) -> TrainConfig:
    ap = argparse.ArgumentParser(description="Train the single-layer MNIST demo model")
    ap.add_argument("--data-root", default="./data/mnist", help="Directory for MNIST cache")
    ap.add_argument("--out", default="./model/simple_mnist.pt", help="TorchScript output path")
    ap.add_argument("--model-id", default="simple_mnist_v1", help="Model id for the manifest")
    ap.add_argument("--epochs", type=int, default=3)
    ap.add_argument("--batch-size", type=int, default=100)
    ap.add_argument("--lr", type=float, default=0.5)
    ap.add_argument("--seed", type=int, default=42)
    args = ap.parse_args(argv)
    return TrainConfig(
        data_root=Path(str(args.data_root)),
        out=Path(str(args.out)),
        model_id=str(args.model_id),
        epochs=int(args.epochs),
        batch_size=int(args.batch_size),
        lr=float(args.lr),
        seed=int(args.seed),
    )


def _set_seed(seed: int) -> None:
    random.seed(seed)
    torch.manual_seed(seed)


def _evaluate(model: SimpleMnist, loader: DataLoader[tuple[Tensor, int]]) -> float:
    model.eval()
    total = 0
    correct = 0
    with torch.no_grad():
        for x, y in loader:
            preds = model.logits(x).argmax(dim=1)
            correct += int((preds == y).sum().item())
            total += int(y.size(0))
    return (correct / total) if total > 0 else 0.0


def train(cfg: TrainConfig, bases: tuple[MNISTLike, MNISTLike]) -> tuple[SimpleMnist, float]:
    log = get_logger()
    _set_seed(cfg.seed)
    train_loader: DataLoader[tuple[Tensor, int]] = DataLoader(
        _FlatDataset(bases[0]), batch_size=cfg.batch_size, shuffle=True, num_workers=0
    )
    test_loader: DataLoader[tuple[Tensor, int]] = DataLoader(
        _FlatDataset(bases[1]), batch_size=cfg.batch_size, shuffle=False, num_workers=0
    )
    model = SimpleMnist()
    optimizer = torch.optim.SGD(model.parameters(), lr=cfg.lr)
    val_acc = 0.0
    for ep in range(1, cfg.epochs + 1):
        model.train()
        total = 0
        loss_sum = 0.0
        for x, y in train_loader:
            optimizer.zero_grad(set_to_none=True)
            loss = F.cross_entropy(model.logits(x), y)
            loss.backward()
            optimizer.step()
            total += int(y.size(0))
            loss_sum += float(loss.item()) * int(y.size(0))
        train_loss = loss_sum / total if total > 0 else 0.0
        val_acc = _evaluate(model, test_loader)
        log.info(f"epoch_done idx={ep} train_loss={train_loss:.4f} val_acc={val_acc:.4f}")
    return model, val_acc


def export(model: SimpleMnist, out: Path, model_id: str) -> ModelManifest:
    manifest = ModelManifest(
        schema_version="v1",
        model_id=model_id,
        n_classes=MNIST_N_CLASSES,
        created_at=datetime.now(UTC),
        inputs={INPUT_NAME: TensorInfo(shape=(1, MNIST_PIXELS), dtype=DataType.float32)},
        outputs={OUTPUT_NAME: TensorInfo(shape=(1, MNIST_N_CLASSES), dtype=DataType.float32)},
    )
    save_archive(model, out, manifest)
    get_logger().info("model_exported model_id=%s path=%s", model_id, out.as_posix())
    return manifest


def main(argv: list[str] | None = None) -> None:
    init_logging()
    cfg = _parse_args(argv)
    train_base = datasets.MNIST(cfg.data_root.as_posix(), train=True, download=True)
    test_base = datasets.MNIST(cfg.data_root.as_posix(), train=False, download=True)
    model, _val_acc = train(cfg, (train_base, test_base))
    export(model, cfg.out, cfg.model_id)


if __name__ == "__main__":  # pragma: no cover - script entry
    main()
