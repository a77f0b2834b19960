from __future__ import annotations

import gzip
import zlib
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Final

import torch
from torch import Tensor

from .errors import SampleLoadError
from .logging import log_event

MNIST_ROWS: Final[int] = 28
MNIST_COLS: Final[int] = 28
MNIST_IMAGE_BYTES: Final[int] = MNIST_ROWS * MNIST_COLS
MNIST_N_CLASSES: Final[int] = 10

_IMAGES_MAGIC: Final[int] = 2051
_LABELS_MAGIC: Final[int] = 2049
_IMAGES_HEADER_BYTES: Final[int] = 16
_LABELS_HEADER_BYTES: Final[int] = 8

# Standard distribution names first, then the dotted spelling some mirrors use.
IMAGE_FILE_NAMES: Final[tuple[str, ...]] = (
    "t10k-images-idx3-ubyte",
    "t10k-images.idx3-ubyte",
    "t10k-images-idx3-ubyte.gz",
    "t10k-images.idx3-ubyte.gz",
)
LABEL_FILE_NAMES: Final[tuple[str, ...]] = (
    "t10k-labels-idx1-ubyte",
    "t10k-labels.idx1-ubyte",
    "t10k-labels-idx1-ubyte.gz",
    "t10k-labels.idx1-ubyte.gz",
)


@dataclass(frozen=True)
class Sample:
    """One MNIST test image flattened to 784 intensities in [0, 1]."""

    pixels: Tensor
    label: int


def load_sample(data_dir: Path, index: int) -> Sample:
    """Read record ``index`` from the MNIST test split under ``data_dir``.

    Raises SampleLoadError for missing or unreadable files, a bad header,
    mismatched image/label counts, an out-of-range index or a truncated
    record. No partially filled Sample is ever returned.
    """
    image_path = _find_file(data_dir, IMAGE_FILE_NAMES, "images")
    label_path = _find_file(data_dir, LABEL_FILE_NAMES, "labels")
    if index < 0:
        raise SampleLoadError(f"sample index must be >= 0, got {index}")
    try:
        with _open_idx(image_path) as fi, _open_idx(label_path) as fl:
            n_images = _read_images_header(fi, image_path)
            n_labels = _read_labels_header(fl, label_path)
            if n_images != n_labels:
                raise SampleLoadError(
                    f"image count {n_images} does not match label count {n_labels}"
                )
            if index >= n_images:
                raise SampleLoadError(f"sample index {index} out of range (count={n_images})")
            fi.seek(_IMAGES_HEADER_BYTES + index * MNIST_IMAGE_BYTES)
            raw = fi.read(MNIST_IMAGE_BYTES)
            fl.seek(_LABELS_HEADER_BYTES + index)
            lab = fl.read(1)
    except (OSError, EOFError, zlib.error) as exc:
        msg = f"failed to read MNIST files in {data_dir.as_posix()}: {exc}"
        raise SampleLoadError(msg) from exc
    if len(raw) != MNIST_IMAGE_BYTES:
        raise SampleLoadError(f"truncated image record {index} in {image_path.as_posix()}")
    if len(lab) != 1:
        raise SampleLoadError(f"truncated label record {index} in {label_path.as_posix()}")
    label = int(lab[0])
    if label >= MNIST_N_CLASSES:
        raise SampleLoadError(f"label {label} at index {index} is not a digit class")

    pixels = torch.frombuffer(bytearray(raw), dtype=torch.uint8).to(torch.float32) / 255.0
    log_event("sample_loaded", {"index": index, "label": label})
    return Sample(pixels=pixels, label=label)


def _find_file(data_dir: Path, names: tuple[str, ...], kind: str) -> Path:
    for name in names:
        p = data_dir / name
        if p.is_file():
            return p
    raise SampleLoadError(f"no MNIST test {kind} file found in {data_dir.as_posix()}")


@contextmanager
def _open_idx(path: Path) -> Iterator[BinaryIO]:
    if path.suffix == ".gz":
        with gzip.open(path, "rb") as f:
            yield f
    else:
        with path.open("rb") as f:
            yield f


def _read_be_ints(f: BinaryIO, count: int, path: Path) -> list[int]:
    raw = f.read(4 * count)
    if len(raw) != 4 * count:
        raise SampleLoadError(f"truncated IDX header in {path.as_posix()}")
    return [int.from_bytes(raw[i * 4 : (i + 1) * 4], "big") for i in range(count)]


def _read_images_header(f: BinaryIO, path: Path) -> int:
    magic, count, rows, cols = _read_be_ints(f, 4, path)
    if magic != _IMAGES_MAGIC:
        raise SampleLoadError(f"bad magic {magic} in {path.as_posix()}, expected {_IMAGES_MAGIC}")
    if rows * cols != MNIST_IMAGE_BYTES:
        raise SampleLoadError(f"unexpected image size {rows}x{cols} in {path.as_posix()}")
    return count


def _read_labels_header(f: BinaryIO, path: Path) -> int:
    magic, count = _read_be_ints(f, 2, path)
    if magic != _LABELS_MAGIC:
        raise SampleLoadError(f"bad magic {magic} in {path.as_posix()}, expected {_LABELS_MAGIC}")
    return count
