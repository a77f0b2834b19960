from __future__ import annotations

from enum import Enum
from typing import Final


class ErrorCode(str, Enum):
    sample_load_failed = "sample_load_failed"
    invalid_config = "invalid_config"
    model_load_failed = "model_load_failed"
    inference_failed = "inference_failed"


_DEFAULT_MESSAGE: Final[dict[ErrorCode, str]] = {
    ErrorCode.sample_load_failed: "Failed to load the test sample.",
    ErrorCode.invalid_config: "Invalid configuration.",
    ErrorCode.model_load_failed: "Failed to load the model.",
    ErrorCode.inference_failed: "Inference did not complete.",
}


class DemoError(Exception):
    def __init__(self, code: ErrorCode, message: str | None = None) -> None:
        msg = message if message is not None else _DEFAULT_MESSAGE.get(code, "")
        super().__init__(msg)
        self.code = code
        self.message = msg

    @property
    def exit_status(self) -> int:
        return exit_status_for(self.code)


class SampleLoadError(DemoError):
    def __init__(self, message: str | None = None) -> None:
        super().__init__(ErrorCode.sample_load_failed, message)


class BackendError(DemoError):
    """Failure reported by, or on the way into, an inference library."""

    def __init__(self, message: str | None = None, *, during_inference: bool = False) -> None:
        code = ErrorCode.inference_failed if during_inference else ErrorCode.model_load_failed
        super().__init__(code, message)


def exit_status_for(code: ErrorCode) -> int:
    if code is ErrorCode.sample_load_failed:
        return 1
    if code is ErrorCode.invalid_config:
        return 2
    if code is ErrorCode.model_load_failed:
        return 3
    if code is ErrorCode.inference_failed:
        return 4
    return 1
