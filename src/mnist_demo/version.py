from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class VersionInfo:
    program: str
    version: str
    torch_version: str


def get_version() -> VersionInfo:
    import torch

    return VersionInfo(
        program="mnist-demo",
        version=_pkg_version(),
        torch_version=str(torch.__version__),
    )


def _pkg_version() -> str:
    from importlib.metadata import PackageNotFoundError, version

    try:
        return version("mnist-demo")
    except PackageNotFoundError as exc:
        from .logging import get_logger

        get_logger().warning("pkg_version_fallback error=%s", exc)
        raise RuntimeError("package version not found") from exc
