from __future__ import annotations

import json

import pytest

from mnist_demo.inference.manifest import ModelManifest
from mnist_demo.inference.types import DataType


def _valid() -> dict[str, object]:
    return {
        "schema_version": "v1",
        "model_id": "simple_mnist_v1",
        "n_classes": 10,
        "created_at": "2024-01-01T00:00:00+00:00",
        "inputs": {"Placeholder": {"shape": [1, 784], "dtype": "float32"}},
        "outputs": {"Softmax": {"shape": [1, 10]}},
    }


def test_manifest_parses_bindings() -> None:
    m = ModelManifest.from_json(json.dumps(_valid()))
    assert m.model_id == "simple_mnist_v1"
    assert m.inputs["Placeholder"].num_elements == 784
    assert m.outputs["Softmax"].shape == (1, 10)
    assert m.outputs["Softmax"].dtype is DataType.float32
    # Serialized form parses back to the same bindings
    again = ModelManifest.from_json(m.to_json())
    assert again.inputs == m.inputs and again.outputs == m.outputs


@pytest.mark.parametrize(
    ("key", "value"),
    [
        ("schema_version", "v9"),
        ("model_id", ""),
        ("n_classes", 1),
        ("inputs", {}),
        ("outputs", {"Softmax": {"shape": []}}),
        ("outputs", {"Softmax": {"shape": [1, 0]}}),
        ("inputs", {"Placeholder": {"shape": [1, 784], "dtype": "float16"}}),
    ],
)
def test_manifest_rejects_invalid(key: str, value: object) -> None:
    d = _valid()
    d[key] = value
    with pytest.raises(ValueError):
        ModelManifest.from_dict(d)


def test_manifest_must_be_object() -> None:
    with pytest.raises(ValueError):
        ModelManifest.from_json("[]")
