# src/ladderocr/cli.py
from __future__ import annotations

import argparse
import ast
import asyncio
import getpass
import importlib
import json
import logging
import queue
import re
import signal
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .budget import CancellationToken
from .config import OCRConfig
from .engines import normalize_engine_alias
from .exceptions import LadderOCRError
from .ingest import IMAGE_SUFFIXES, PAGED_SUFFIXES
from .logger import attach_queue_handler, setup_logging
from .presets import PRESETS

__all__ = ["collect_inputs", "run_pipeline", "main"]

logger = logging.getLogger("ladderocr")


# Helper

def _parse_backend_kwargs(val) -> dict:
    """
    Accept several syntaxes for --engine-kwargs:
      1) JSON (double quotes)                      {"tesseract_cmd":"/usr/bin/tesseract"}
      2) JSON wrapped in single quotes             '{"tessdata_dir":"/opt/tessdata"}'
      3) Python-literal dict with single quotes    {'extra_config': '--oem 1'}
      4) key=value pairs separated by , or ;       tesseract_cmd=/usr/bin/tesseract;extra_config=--oem 1
    """
    if isinstance(val, dict):
        return dict(val)
    if not isinstance(val, str):
        return {}

    s = val.strip()
    if len(s) >= 2 and s[0] in ("'", '"') and s[-1] == s[0]:
        s = s[1:-1].strip()

    try:
        return json.loads(s)
    except Exception:
        pass

    try:
        lit = ast.literal_eval(s)
        if isinstance(lit, dict):
            return lit
    except Exception:
        pass

    # Fallback: key=value pairs
    out: dict = {}
    for part in re.split(r"[;,]\s*", s):
        if not part:
            continue
        if "=" in part:
            k, v = part.split("=", 1)
        elif ":" in part:
            k, v = part.split(":", 1)
        else:
            continue

        k = k.strip().strip('"\'').lstrip("{[").rstrip("}]").strip()
        v = v.strip().strip('"\'').lstrip("{[").rstrip("}]").rstrip(",").strip()

        low = v.lower()
        if low in ("true", "false"):
            v = (low == "true")
        elif re.fullmatch(r"-?\d+", v):
            v = int(v)
        elif re.fullmatch(r"-?\d+\.\d*", v):
            v = float(v)
        out[k] = v

    if out:
        return out

    raise SystemExit(f"Invalid --engine-kwargs. Could not parse: {val!r}")


def _normalize_common_backend_kwargs(d: dict) -> dict:
    """hyphen-case -> snake_case, lowercase keys."""
    return {k.strip().lower().replace("-", "_"): v for k, v in (d or {}).items()}


def _preflight_backend_import(dotted: str) -> None:
    """
    Import the backend class now, so a typo fails fast with a clear message
    instead of surfacing as an engine error on every page.
    """
    try:
        module_path, cls_name = dotted.rsplit(".", 1)
    except ValueError:
        raise SystemExit(f"--engine must be 'module.Class', got: {dotted!r}")

    try:
        mod = importlib.import_module(module_path)
    except Exception as e:
        raise SystemExit(f"Cannot import engine module: {module_path!r} ({e})")

    if not hasattr(mod, cls_name):
        raise SystemExit(
            f"Engine class not found: {dotted}\n"
            f"- For Tesseract, use: tesseract  (or ladderocr.engines.tesseract_backend.TesseractOCREngine)"
        )


def _normalize_output_path(arg: Path) -> Path:
    """
    Accept both files and directories for --output-path.
    - Existing directory: create a timestamped .txt inside it.
    - Filename with no suffix: add .txt
    """
    out = Path(arg)
    if out.exists() and out.is_dir():
        out = out / f"ladderocr_{datetime.now():%Y%m%d_%H%M%S}.txt"
    elif out.suffix == "":
        out = out.with_suffix(".txt")

    out.parent.mkdir(parents=True, exist_ok=True)
    try:
        with open(out, "a", encoding="utf-8"):
            pass
    except Exception as e:
        raise SystemExit(f"--output-path is not writable: {out} ({e})")
    return out


def collect_inputs(inputs: List[Path]) -> List[Path]:
    """Expand directories recursively; keep supported files in a stable order."""
    supported = IMAGE_SUFFIXES | PAGED_SUFFIXES
    files: List[Path] = []
    for item in inputs:
        if item.is_dir():
            files.extend(sorted(p for p in item.rglob("*") if p.is_file() and p.suffix.lower() in supported))
        elif item.is_file():
            files.append(item)
        else:
            logger.error("Input does not exist, %s", item)
    logger.info("Selected %d file(s) for processing", len(files))
    return files


def _prompt_password(incorrect: bool) -> Optional[str]:
    prompt = "Wrong password, try again (empty to cancel): " if incorrect else "Password (empty to cancel): "
    try:
        value = getpass.getpass(prompt)
    except EOFError:
        return None
    return value or None


class _SkipHandler:
    """
    First Ctrl+C skips the page being recognized, a second one before that
    page reacts aborts the run.

    Presets that recognize several pages at once share one token, so the
    skip lands on whichever in-flight page polls first, not necessarily the
    one the progress bar names.
    """

    def __init__(self, token: CancellationToken):
        self.token = token

    def __call__(self, signum, frame):
        if not self.token.is_set:
            logger.warning("Interrupt received, skipping the current page. Press Ctrl+C again to abort.")
            self.token.request_skip()
        else:
            logger.error("Second interrupt received, aborting.")
            sys.exit(1)


def run_pipeline(config: OCRConfig, inputs: List[Path], token: Optional[CancellationToken] = None) -> int:
    """
    Ingest, recognize and export (non-UI CLI). Returns the number of failed pages.
    """
    from .pipeline import OCRRunner  # local import to avoid import cycles

    settings = config.settings()
    logger.info("Starting ladderOCR")
    logger.info(
        "Preset, %s | languages, %s | psm, %s | scale, %s",
        settings.preset_id, settings.options.lang_key, settings.options.psm, settings.options.scale,
    )

    files = collect_inputs(inputs)
    if not files:
        logger.info("Nothing to process")
        return 0

    runner = OCRRunner(config)

    async def _go():
        await runner.ingest(files, password_provider=_prompt_password)
        return await runner.run(token=token)

    results = asyncio.run(_go())
    for path in runner.export():
        logger.info("Wrote %s", path)
    failed = sum(1 for r in results if r is not None and not r.ok)
    logger.info("ladderOCR processing complete, %d page(s), %d failed", len(results), failed)
    return failed


# -------------------------------
# CLI parsing
# -------------------------------

def _build_run_parser(subparsers: argparse._SubParsersAction) -> argparse.ArgumentParser:
    p = subparsers.add_parser("run", help="Recognize images and PDFs")

    p.add_argument("inputs", nargs="+", type=Path, help="Files or directories to OCR")
    p.add_argument(
        "-o", "--output-path", type=Path,
        help="Output path, .txt for flat text or .json for per-page records. A directory gets a timestamped .txt.",
    )
    p.add_argument("--export-txt", action="store_true", help="Also write one .txt per source document")
    p.add_argument("--error-log-path", type=Path, help="Path to save the error log JSONL file")
    p.add_argument("--log-file", type=Path, help="Path of the run log (default, next to the output)")
    p.add_argument("-q", "--quiet", action="store_true", help="Hide the progress bar")

    p.add_argument("-p", "--preset", default="fast", choices=sorted(PRESETS), help="Speed/quality preset")

    knobs = p.add_argument_group("Image options (any of these switches to the custom preset)")
    knobs.add_argument("-l", "--languages", nargs="+", help="Engine language codes, e.g. tha eng")
    knobs.add_argument("--psm", type=int, help="Page segmentation mode")
    knobs.add_argument("--scale", type=float, help="Preprocessing scale factor")
    knobs.add_argument("--contrast", type=float, help="Contrast factor, clamped to 0.5..2.0")
    knobs.add_argument("--sharpen", type=float, help="Unsharp mask amount, 0..1")
    knobs.add_argument("--grayscale", action=argparse.BooleanOptionalAction, default=None)
    knobs.add_argument("--binarize", action=argparse.BooleanOptionalAction, default=None)

    runtime = p.add_argument_group("Runtime")
    runtime.add_argument("-j", "--hardware-concurrency", type=int, help="Parallelism hint for the worker pools")
    runtime.add_argument("--render-scale", type=float, help="Rasterization scale for PDF pages")
    runtime.add_argument("-e", "--engine", default="tesseract", help="Engine alias or dotted path 'module.Class'")
    runtime.add_argument(
        "--engine-kwargs",
        type=str,
        default="{}",
        help=('Engine init kwargs as JSON or key=value pairs, e.g. '
              '\'{"tesseract_cmd":"/usr/bin/tesseract"}\'  or  tesseract_cmd=/usr/bin/tesseract'),
    )
    runtime.add_argument("--tessdata-dir", type=Path, help="Directory holding *.traineddata files")

    post = p.add_argument_group("Post-processing")
    post.add_argument("--no-locale-cleanup", dest="locale_cleanup", action="store_false",
                      help="Keep spacing artifacts between Thai characters")
    post.add_argument("--word-spacing", action="store_true", help="Insert spaces at Thai word boundaries")
    post.add_argument("--no-wrap", dest="auto_wrap", action="store_false", help="Do not reflow lines")
    post.add_argument("--wrap-width", type=int, help="Maximum characters per reflowed line")
    return p


def _build_presets_parser(subparsers: argparse._SubParsersAction) -> argparse.ArgumentParser:
    pp = subparsers.add_parser("presets", help="List the available presets")
    pp.add_argument("--json", action="store_true", help="Print machine readable output")
    return pp


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="ladderOCR, budgeted multi-attempt OCR for scans and PDFs")
    subparsers = parser.add_subparsers(dest="command")
    _build_run_parser(subparsers)
    _build_presets_parser(subparsers)
    return parser.parse_args(argv)


# -------------------------------
# Entry points
# -------------------------------

def _overrides_from_args(args: argparse.Namespace) -> dict:
    overrides = {
        "languages": args.languages,
        "psm": args.psm,
        "scale": args.scale,
        "contrast": args.contrast,
        "sharpen": args.sharpen,
        "grayscale": args.grayscale,
        "binarize": args.binarize,
    }
    return {k: v for k, v in overrides.items() if v is not None}


def _show_presets(args: argparse.Namespace) -> None:
    if args.json:
        rows = [
            {
                "id": p.id,
                "name": p.name,
                "note": p.note,
                "page_budget_ms": p.page_budget_ms,
                "timeout_ms": p.timeout_ms,
                "cap_mpx": p.cap_mpx,
                "ladder": p.ladder.value,
            }
            for p in PRESETS.values()
        ]
        print(json.dumps(rows, ensure_ascii=False, indent=2))
        return
    for p in PRESETS.values():
        print(f"{p.id:<10} {p.name:<12} budget {p.page_budget_ms / 1000:>4.0f}s  "
              f"cap {p.cap_mpx:.1f}MP  ladder {p.ladder.value:<16} {p.note}")


def _run_from_cli(args: argparse.Namespace) -> int:
    log_queue = queue.Queue(-1)

    if args.output_path:
        args.output_path = _normalize_output_path(Path(args.output_path))

    engine = normalize_engine_alias(args.engine)
    _preflight_backend_import(engine)

    if args.log_file:
        log_file = args.log_file
    elif args.output_path:
        log_file = args.output_path.with_suffix(".log")
    else:
        log_file = Path.cwd() / f"ladderocr_{time.strftime('%Y%m%d-%H%M%S')}.log"

    listener = setup_logging(
        log_queue=log_queue,
        console=True,
        level=logging.INFO,
        file_path=log_file,
        file_level=logging.DEBUG,
    )
    attach_queue_handler(log_queue)
    listener.start()

    token = CancellationToken()
    previous = signal.signal(signal.SIGINT, _SkipHandler(token))
    try:
        backend_kwargs = _normalize_common_backend_kwargs(_parse_backend_kwargs(args.engine_kwargs))
        cfg_dict = {
            "preset": args.preset,
            "overrides": _overrides_from_args(args),
            "ocr_backend": engine,
            "ocr_backend_kwargs": backend_kwargs,
            "tessdata_dir": args.tessdata_dir,
            "hardware_concurrency": args.hardware_concurrency,
            "render_scale": args.render_scale,
            "locale_cleanup": args.locale_cleanup,
            "word_spacing": args.word_spacing,
            "auto_wrap": args.auto_wrap,
            "wrap_width": args.wrap_width,
            "output_path": args.output_path,
            "error_log_path": args.error_log_path,
            "export_txt": args.export_txt,
            "show_progress": not args.quiet,
            "log_queue": log_queue,
        }
        cfg_dict = {k: v for k, v in cfg_dict.items() if v is not None}
        try:
            config = OCRConfig.from_dict(cfg_dict)
        except (KeyError, ValueError) as e:
            raise SystemExit(f"Invalid configuration: {e}")

        try:
            failed = run_pipeline(config, args.inputs, token)
        except LadderOCRError as e:
            logger.error("Run aborted, %s", e)
            return 1
        return 1 if failed else 0
    finally:
        signal.signal(signal.SIGINT, previous)
        listener.stop()


def main(argv: Optional[List[str]] = None):
    args = _parse_args(argv)

    if args.command == "presets":
        _show_presets(args)
        return

    if args.command == "run":
        sys.exit(_run_from_cli(args))

    print("Usage:\n  ladderocr run <files or dirs> [-o out.txt|out.json] [--preset fast] [options]\n  ladderocr presets")
    sys.exit(2)


if __name__ == "__main__":
    main()
