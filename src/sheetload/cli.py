"""Command line entry point for sheetload."""
from __future__ import annotations

import argparse
import logging
from typing import Callable, Dict, List, Optional, Sequence

from .backend import RestBackend
from .config import PipelineSettings, load_settings
from .errors import SheetLoadError
from .logging_utils import LOGGER_ROOT, get_logger, get_user_logger, log_error, log_warning
from .memory_backend import InMemoryBackend
from .models import FileStatus, ProgressSnapshot, SourceFile
from .orchestrator import (
    AwaitingBrandClassification,
    AwaitingColumnDecision,
    BrandClassifications,
    CancelClassification,
    Decision,
    PipelineOrchestrator,
    ProceedIgnoringExtra,
    SkipFile,
)


logger = logging.getLogger(__name__)

InputFn = Callable[[str], str]


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the ``sheetload`` command."""

    parser = argparse.ArgumentParser(prog="sheetload", description="Upload spreadsheets through the ingestion pipeline")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Upload one or more files for a sheet")
    run.add_argument("--config", default="config.yaml", help="Path to configuration file")
    run.add_argument("--sheet", required=True, help="Sheet code or id the files belong to")
    run.add_argument("files", nargs="+", help="Spreadsheet files (.xlsx, .xls, .csv)")
    run.add_argument("--batch-size", type=_positive_int, help="Rows per ingestion call (overrides config)")
    run.add_argument(
        "--on-extra-columns",
        choices=["ask", "proceed", "skip"],
        default="ask",
        help="What to do when a file has columns the mapping does not know",
    )
    run.add_argument(
        "--brand-type",
        action="append",
        default=[],
        metavar="NAME=TYPE_ID",
        help="Brand type for a new brand; repeat for several brands",
    )
    run.add_argument("--dry-run", action="store_true", help="Use the in-memory backend built from the config sheets")

    sheets = sub.add_parser("sheets", help="List active sheet mappings")
    sheets.add_argument("--config", default="config.yaml", help="Path to configuration file")
    sheets.add_argument("--dry-run", action="store_true", help="List the sheets defined in the config file")
    return parser


def _positive_int(raw: str) -> int:
    value = int(raw)
    if value < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return value


def parse_brand_types(values: Sequence[str]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for raw in values:
        name, sep, type_id = str(raw).partition("=")
        if not sep or not name.strip() or not type_id.strip():
            raise argparse.ArgumentTypeError(f"--brand-type expects NAME=TYPE_ID, got {raw!r}")
        out[name.strip()] = type_id.strip()
    return out


def build_backend(settings: PipelineSettings, dry_run: bool = False):
    if dry_run or settings.backend.kind == "memory":
        return InMemoryBackend(sheets=settings.sheets)
    return RestBackend(settings.backend)


def column_prompt(mode: str, input_fn: InputFn = input) -> Callable[[AwaitingColumnDecision], Decision]:
    def decide(state: AwaitingColumnDecision) -> Decision:
        if mode == "proceed":
            return ProceedIgnoringExtra()
        if mode == "skip":
            return SkipFile()
        answer = input_fn(f"Columns not in the mapping: {', '.join(state.extra)}. Proceed without them? [y/N] ")
        return ProceedIgnoringExtra() if answer.strip().lower() in {"y", "yes"} else SkipFile()

    return decide


def brand_prompt(
    known: Dict[str, str],
    interactive: bool,
    brand_types: Sequence[Dict[str, str]] = (),
    input_fn: InputFn = input,
) -> Callable[[AwaitingBrandClassification], Decision]:
    def decide(state: AwaitingBrandClassification) -> Decision:
        mapping = {name: known[name] for name in state.pending_brands if name in known}
        missing = [name for name in state.pending_brands if name not in mapping]
        if missing and not interactive:
            return CancelClassification()
        if missing and brand_types:
            print("Brand types: " + ", ".join(f"{bt.get('id')} ({bt.get('type_name') or bt.get('type_code')})" for bt in brand_types))
        for name in missing:
            answer = input_fn(f"Brand type id for new brand {name!r} (blank to cancel the file): ").strip()
            if not answer:
                return CancelClassification()
            mapping[name] = answer
            known[name] = answer
        return BrandClassifications(mapping)

    return decide


def _progress_printer(user_logger: logging.Logger) -> Callable[[ProgressSnapshot], None]:
    printed = set()

    def report(snapshot: ProgressSnapshot) -> None:
        # the file-finish snapshot repeats the last batch
        key = (snapshot.file_id, snapshot.batch_index)
        if not snapshot.batch_index or key in printed:
            return
        printed.add(key)
        user_logger.info(
            f"  {snapshot.file_name}: batch {snapshot.batch_index}/{snapshot.total_batches}, "
            f"{snapshot.processed_rows} rows ({snapshot.progress_percent}%, {snapshot.elapsed_seconds:.1f}s)"
        )

    return report


def run_command(args: argparse.Namespace, input_fn: InputFn = input) -> int:
    settings = load_settings(args.config)
    if args.batch_size is not None:
        settings.upload.batch_size = args.batch_size
    config = settings.model_dump()
    # handlers on the package logger cover every sheetload.* module
    get_logger(LOGGER_ROOT, config)
    user_logger = get_user_logger(config)

    backend = build_backend(settings, dry_run=args.dry_run)
    orchestrator = PipelineOrchestrator(
        backend,
        settings,
        on_progress=_progress_printer(user_logger),
        user_logger=user_logger,
    )
    for path in args.files:
        orchestrator.add_file(SourceFile.from_path(path), args.sheet)

    interactive = args.on_extra_columns == "ask"
    brand_types: List[Dict[str, str]] = []
    if interactive:
        try:
            brand_types = backend.list_brand_types()
        except SheetLoadError as exc:
            log_warning(logger, f"Could not list brand types: {exc}")

    summary = orchestrator.run_to_completion(
        column_prompt(args.on_extra_columns, input_fn),
        brand_prompt(parse_brand_types(args.brand_type), interactive, brand_types, input_fn),
    )
    for task in orchestrator.tasks():
        if task.status == FileStatus.ERROR:
            user_logger.info(f"  FAILED {task.file_name}: {task.error_message}")
    return 0 if summary.failed_files == 0 else 1


def sheets_command(args: argparse.Namespace) -> int:
    settings = load_settings(args.config)
    backend = build_backend(settings, dry_run=args.dry_run)
    sheets = backend.lookup_active_sheet_mappings()
    if not sheets:
        print("No active sheet mappings.")
        return 0
    for sheet in sorted(sheets, key=lambda s: s.sheet_code or s.id):
        flags = [name for name, on in (("customers", sheet.check_customer), ("brands", sheet.check_brand), ("products", sheet.check_product)) if on]
        print(f"{sheet.sheet_code or '-':<12} {sheet.label:<30} -> {sheet.target_table or '-'} [{', '.join(flags) or 'no checks'}]")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entry point."""

    parser = build_arg_parser()
    args = parser.parse_args(argv)
    try:
        if args.command == "sheets":
            return sheets_command(args)
        return run_command(args)
    except argparse.ArgumentTypeError as exc:
        parser.error(str(exc))
    except (SheetLoadError, OSError) as exc:
        log_error(logger, str(exc))
        return 2
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
