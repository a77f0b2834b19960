from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence
from dataclasses import replace
from pathlib import Path

from .config import Settings
from .driver import run
from .errors import ErrorCode, exit_status_for
from .inference.backend import ENGINES, parse_engine
from .inference.types import ComputeBackend
from .logging import LogStyle, get_logger, init_logging


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="mnist-demo",
        description="Classify one MNIST test image with a pre-trained model",
    )
    ap.add_argument("--data-dir", help="Directory holding the MNIST t10k IDX files")
    ap.add_argument("--index", type=int, help="Zero-based test sample index")
    ap.add_argument("--model", help="Model artifact (.prototxt/.pbtxt/.pb or TorchScript .pt)")
    ap.add_argument("--engine", choices=list(ENGINES), help="Inference library to use")
    ap.add_argument(
        "--compute",
        choices=[cb.value for cb in ComputeBackend],
        help="Compute backend (default cpu_acc)",
    )
    ap.add_argument("--input-name", help="Input binding name")
    ap.add_argument("--output-name", help="Output binding name")
    ap.add_argument("--log-style", choices=["auto", "json", "pretty"], default="auto")
    ap.add_argument("--version", action="store_true", help="Print version and exit")
    return ap


def _log_style(v: str) -> LogStyle:
    if v == "json":
        return "json"
    if v == "pretty":
        return "pretty"
    return "auto"


def _apply_args(s: Settings, args: argparse.Namespace) -> Settings:
    ds = s.dataset
    md = s.model
    if args.data_dir is not None:
        ds = replace(ds, data_dir=Path(str(args.data_dir)))
    if args.index is not None:
        ds = replace(ds, index=int(args.index))
    if args.model is not None:
        md = replace(md, path=Path(str(args.model)))
    if args.engine is not None:
        md = replace(md, engine=parse_engine(str(args.engine)))
    if args.compute is not None:
        md = replace(md, compute=ComputeBackend.parse(str(args.compute)))
    if args.input_name is not None:
        md = replace(md, input_name=str(args.input_name))
    if args.output_name is not None:
        md = replace(md, output_name=str(args.output_name))
    return Settings(dataset=ds, model=md)


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(list(argv) if argv is not None else None)
    init_logging(_log_style(str(args.log_style)))
    if args.version:
        from .version import get_version

        try:
            v = get_version()
        except RuntimeError as exc:
            get_logger().error("version_unavailable msg=%s", exc)
            return 1
        sys.stdout.write(f"{v.program} {v.version} (torch {v.torch_version})\n")
        return 0
    try:
        settings = _apply_args(Settings.load(), args)
    except (ValueError, RuntimeError) as exc:
        get_logger().error("%s msg=%s", ErrorCode.invalid_config.value, exc)
        return exit_status_for(ErrorCode.invalid_config)
    return run(settings)
