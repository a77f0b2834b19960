from __future__ import annotations

import sys
from typing import TextIO

from torch import Tensor

from .config import Settings
from .dataset import load_sample
from .errors import BackendError, DemoError
from .inference.backend import InferenceBackend, backend_for_model
from .inference.types import (
    Prediction,
    Status,
    allocate_output,
    make_input_tensors,
    make_output_tensors,
)
from .logging import get_logger, log_event


def predict_one(settings: Settings, backend: InferenceBackend | None = None) -> tuple[int, int]:
    """Classify one test image and return ``(predicted, actual)``.

    Every failure surfaces as a DemoError subclass; nothing is retried.
    """
    sample = load_sample(settings.dataset.data_dir, settings.dataset.index)

    mc = settings.model
    be = backend if backend is not None else backend_for_model(mc.path, mc.engine)
    try:
        scores = _infer(be, settings, sample.pixels)
    finally:
        be.close()

    pred = Prediction.from_output(scores)
    log_event(
        "prediction",
        {"predicted": pred.label, "actual": sample.label, "correct": pred.label == sample.label},
    )
    return pred.label, sample.label


def _infer(be: InferenceBackend, settings: Settings, pixels: Tensor) -> Tensor:
    mc = settings.model
    network = be.load_network(
        mc.path,
        inputs={mc.input_name: mc.input_info},
        outputs=[mc.output_name],
        compute=mc.compute,
    )
    in_binding = network.input_binding(mc.input_name)
    out_binding = network.output_binding(mc.output_name)

    scores = allocate_output(out_binding)
    try:
        input_tensors = make_input_tensors(in_binding, pixels)
        output_tensors = make_output_tensors(out_binding, scores)
    except ValueError as exc:
        raise BackendError(str(exc)) from exc
    status = be.enqueue_workload(network, input_tensors, output_tensors)
    if status is not Status.success:
        raise BackendError(f"inference returned status {status.value}", during_inference=True)
    return scores


def run(
    settings: Settings,
    backend: InferenceBackend | None = None,
    out: TextIO | None = None,
) -> int:
    """Run the demo once and return the process exit status."""
    stream = out if out is not None else sys.stdout
    try:
        predicted, actual = predict_one(settings, backend)
    except DemoError as exc:
        get_logger().error("%s msg=%s", exc.code.value, exc.message)
        return exc.exit_status
    stream.write(f"Predicted: {predicted}\n")
    stream.write(f"Actual: {actual}\n")
    stream.flush()
    return 0
