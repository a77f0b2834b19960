from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Final

from .types import DataType, TensorInfo

MANIFEST_NAME: Final[str] = "manifest.json"
_ALLOWED_SCHEMA_VERSIONS: Final[tuple[str, ...]] = ("v1",)


@dataclass(frozen=True)
class ModelManifest:
    """Binding table stored next to a TorchScript graph inside its archive."""

    schema_version: str
    model_id: str
    n_classes: int
    created_at: datetime
    inputs: dict[str, TensorInfo]
    outputs: dict[str, TensorInfo]

    @staticmethod
    def from_json(s: str) -> ModelManifest:
        obj: object = json.loads(s)
        if not isinstance(obj, dict):
            raise ValueError("manifest must be a JSON object")
        data: dict[str, object] = {str(k): v for k, v in obj.items()}
        return ModelManifest.from_dict(data)

    @staticmethod
    def from_dict(d: dict[str, object]) -> ModelManifest:
        schema_version = str(d.get("schema_version", "")).strip()
        model_id = str(d.get("model_id", "")).strip()
        if not schema_version or not model_id:
            raise ValueError("manifest is missing required fields")
        if schema_version not in _ALLOWED_SCHEMA_VERSIONS:
            raise ValueError("unsupported manifest schema version")
        n_classes = int(str(d.get("n_classes", 10)))
        if n_classes < 2:
            raise ValueError("n_classes must be >= 2")
        created_at_str = str(d["created_at"]) if "created_at" in d else ""
        created = datetime.fromisoformat(created_at_str) if created_at_str else datetime.now()
        inputs = _bindings(d.get("inputs"), "inputs")
        outputs = _bindings(d.get("outputs"), "outputs")
        return ModelManifest(
            schema_version=schema_version,
            model_id=model_id,
            n_classes=n_classes,
            created_at=created,
            inputs=inputs,
            outputs=outputs,
        )

    def to_json(self) -> str:
        return json.dumps(
            {
                "schema_version": self.schema_version,
                "model_id": self.model_id,
                "n_classes": self.n_classes,
                "created_at": self.created_at.isoformat(),
                "inputs": _dump_bindings(self.inputs),
                "outputs": _dump_bindings(self.outputs),
            }
        )


def _bindings(raw: object, key: str) -> dict[str, TensorInfo]:
    if not isinstance(raw, dict) or not raw:
        raise ValueError(f"manifest {key} must be a non-empty object")
    out: dict[str, TensorInfo] = {}
    for name, entry in raw.items():
        if not isinstance(entry, dict):
            raise ValueError(f"manifest {key}.{name} must be an object")
        shape_raw = entry.get("shape")
        if not isinstance(shape_raw, list) or not shape_raw:
            raise ValueError(f"manifest {key}.{name}.shape must be a non-empty list")
        shape = tuple(int(str(x)) for x in shape_raw)
        if any(dim <= 0 for dim in shape):
            raise ValueError(f"manifest {key}.{name}.shape must be positive")
        dtype = DataType(str(entry.get("dtype", DataType.float32.value)))
        out[str(name)] = TensorInfo(shape=shape, dtype=dtype)
    return out


def _dump_bindings(bindings: dict[str, TensorInfo]) -> dict[str, dict[str, object]]:
    return {
        name: {"shape": list(info.shape), "dtype": info.dtype.value}
        for name, info in bindings.items()
    }
