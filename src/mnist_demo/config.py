from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

from .inference.backend import Engine, parse_engine
from .inference.types import DEFAULT_COMPUTE, ComputeBackend, DataType, TensorInfo

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/mnist_demo.toml")


@dataclass(frozen=True)
class DatasetConfig:
    data_dir: Path = Path("data/")
    index: int = 0


@dataclass(frozen=True)
class ModelConfig:
    path: Path = Path("model/simple_mnist_tf.prototxt")
    engine: Engine = "auto"
    compute: ComputeBackend = DEFAULT_COMPUTE
    input_name: str = "Placeholder"
    output_name: str = "Softmax"
    input_info: TensorInfo = TensorInfo(shape=(1, 784), dtype=DataType.float32)


@dataclass(frozen=True)
class Settings:
    dataset: DatasetConfig
    model: ModelConfig

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("MNIST_DEMO_CONFIG")
        if env_val:
            return Path(env_val)
        return _DEFAULT_CONFIG_PATH

    @classmethod
    def defaults(cls) -> Settings:
        return cls(dataset=DatasetConfig(), model=ModelConfig())

    @classmethod
    def load(cls) -> Settings:
        # Env first, then TOML on top when the file exists.
        base = cls(dataset=_load_dataset_from_env(), model=_load_model_from_env())
        cfg_path = cls._toml_path()
        if not cfg_path.exists():
            return base
        try:
            raw: object = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RuntimeError(f"Failed to read config TOML: {cfg_path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"Invalid TOML config: {cfg_path}") from exc
        return cls(
            dataset=_merge_dataset(base.dataset, _toml_table(raw, "dataset")),
            model=_merge_model(base.model, _toml_table(raw, "model")),
        )


def _parse_index(v: str) -> int:
    # Range is checked by the loader so every source fails the same way
    s = v.strip()
    try:
        return int(s)
    except ValueError as exc:
        raise ValueError(f"sample index must be an integer, got {v!r}") from exc


def _load_dataset_from_env() -> DatasetConfig:
    d = DatasetConfig()
    dd = os.getenv("DATASET__DIR")
    ix = os.getenv("DATASET__INDEX")
    if dd:
        d = replace(d, data_dir=Path(dd))
    if ix:
        d = replace(d, index=_parse_index(ix))
    return d


def _load_model_from_env() -> ModelConfig:
    m = ModelConfig()
    mp = os.getenv("MODEL__PATH")
    en = os.getenv("MODEL__ENGINE")
    cb = os.getenv("MODEL__COMPUTE")
    inp = os.getenv("MODEL__INPUT_NAME")
    out = os.getenv("MODEL__OUTPUT_NAME")
    if mp:
        m = replace(m, path=Path(mp))
    if en:
        m = replace(m, engine=parse_engine(en))
    if cb:
        m = replace(m, compute=ComputeBackend.parse(cb))
    if inp:
        m = replace(m, input_name=inp)
    if out:
        m = replace(m, output_name=out)
    return m


def _merge_dataset(base: DatasetConfig, data: dict[str, object]) -> DatasetConfig:
    out = base
    if "dir" in data:
        out = replace(out, data_dir=Path(str(data["dir"])))
    if "index" in data:
        out = replace(out, index=_parse_index(str(data["index"])))
    return out


def _merge_model(base: ModelConfig, data: dict[str, object]) -> ModelConfig:
    out = base
    if "path" in data:
        out = replace(out, path=Path(str(data["path"])))
    if "engine" in data:
        out = replace(out, engine=parse_engine(str(data["engine"])))
    if "compute" in data:
        out = replace(out, compute=ComputeBackend.parse(str(data["compute"])))
    if "input_name" in data:
        out = replace(out, input_name=str(data["input_name"]))
    if "output_name" in data:
        out = replace(out, output_name=str(data["output_name"]))
    return out


def _toml_table(raw: object, key: str) -> dict[str, object]:
    if isinstance(raw, dict):
        tab: object = raw.get(key, {})
        if isinstance(tab, dict):
            return {str(k): v for k, v in tab.items()}
    return {}
