"""Serial file-by-file pipeline with two interactive pause points.

Every file goes through::

    Idle -> ReadingFile -> ValidatingColumns -> (AwaitingColumnDecision)
         -> ResolvingCustomers -> Uploading -> (AwaitingBrandClassification)
         -> Finalizing -> Idle | Done

The orchestrator runs until it reaches one of the two ``Awaiting*`` states or
``Done``. A decision delivered through :meth:`PipelineOrchestrator.resume`
continues the paused file where it stopped; the file is never re-read.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Union

import pandas as pd

from .columns import ColumnValidator
from .config import PipelineSettings, SheetMapping
from .entities import EntityResolver
from .errors import BoundaryError, ConfigError, InvalidTransitionError, SheetLoadError
from .file_queue import FileQueue
from .heartbeat import Heartbeat
from .ledger import UploadLedger
from .logging_utils import end_timer, get_user_logger, log_error, log_system_event, log_warning, start_timer
from .models import (
    ColumnDecision,
    FileStatus,
    FileSummary,
    FileTask,
    ProgressSnapshot,
    RunSummary,
    SourceFile,
    UploadOutcome,
)
from .reader import SpreadsheetReader
from .uploader import BatchUploader


logger = logging.getLogger(__name__)

SKIP_FILE_MESSAGE = "Skip File"
CANCEL_UPLOAD_MESSAGE = "Upload cancelled"

# progress_percent milestones inside one file
READ_DONE = 10
COLUMNS_DONE = 20
CUSTOMERS_DONE = 30

ProgressCallback = Callable[[ProgressSnapshot], None]


# -- states -----------------------------------------------------------------


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class ReadingFile:
    task_id: str


@dataclass(frozen=True)
class ValidatingColumns:
    task_id: str


@dataclass(frozen=True)
class AwaitingColumnDecision:
    task_id: str
    decision: ColumnDecision

    @property
    def extra(self) -> List[str]:
        return list(self.decision.extra)

    @property
    def missing(self) -> List[str]:
        return list(self.decision.missing)


@dataclass(frozen=True)
class ResolvingCustomers:
    task_id: str


@dataclass(frozen=True)
class Uploading:
    task_id: str
    next_batch: int
    total_batches: int


@dataclass(frozen=True)
class AwaitingBrandClassification:
    task_id: str
    pending_brands: Tuple[str, ...]
    batch_index: int
    total_batches: int


@dataclass(frozen=True)
class Finalizing:
    task_id: str


@dataclass(frozen=True)
class Done:
    summary: RunSummary


PipelineState = Union[
    Idle,
    ReadingFile,
    ValidatingColumns,
    AwaitingColumnDecision,
    ResolvingCustomers,
    Uploading,
    AwaitingBrandClassification,
    Finalizing,
    Done,
]


# -- decisions ----------------------------------------------------------------


@dataclass(frozen=True)
class ProceedIgnoringExtra:
    """Upload the file without its unmapped columns."""


@dataclass(frozen=True)
class SkipFile:
    """Stop processing the paused file and mark it as failed."""


@dataclass(frozen=True)
class BrandClassifications:
    mapping: Mapping[str, str]


@dataclass(frozen=True)
class CancelClassification:
    pass


Decision = Union[ProceedIgnoringExtra, SkipFile, BrandClassifications, CancelClassification]


@dataclass
class FileRun:
    """Working state of the file currently being processed."""

    task_id: str
    sheet: Optional[SheetMapping] = None
    started: float = 0.0
    frame: Optional[pd.DataFrame] = None
    validator: Optional[ColumnValidator] = None
    accepted: Optional[ColumnDecision] = None
    rows: Optional[pd.DataFrame] = None
    log_id: Optional[str] = None
    outcome: Optional[UploadOutcome] = None
    new_customers: int = 0
    classifications: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def elapsed_seconds(self) -> float:
        return time.perf_counter() - self.started if self.started else 0.0


class PipelineOrchestrator:
    """Owns the FileQueue and drives each file through the pipeline."""

    def __init__(
        self,
        backend,
        settings: Optional[PipelineSettings] = None,
        *,
        on_progress: Optional[ProgressCallback] = None,
        heartbeat: Optional[Heartbeat] = None,
        user_logger: Optional[logging.Logger] = None,
    ) -> None:
        self.backend = backend
        self.settings = settings or PipelineSettings()
        self.queue = FileQueue()
        self.reader = SpreadsheetReader(self.settings.upload.allowed_extensions)
        self.resolver = EntityResolver(backend)
        self.uploader = BatchUploader(backend, batch_size=self.settings.upload.batch_size)
        self.ledger = UploadLedger(backend, uploader=self.settings.upload.uploader)
        self.heartbeat = heartbeat or Heartbeat(
            backend.keep_alive,
            interval_seconds=self.settings.heartbeat.interval_seconds,
            enabled=self.settings.heartbeat.enabled,
        )
        self.on_progress = on_progress
        self.user_logger = user_logger or get_user_logger()
        # seconds per task id
        self.timings: Dict[str, float] = {}
        self.summary: Optional[RunSummary] = None
        self._state: PipelineState = Idle()
        self._current: Optional[FileRun] = None
        self._sheets: Optional[Dict[str, SheetMapping]] = None

    # -- configuration ------------------------------------------------------

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def paused(self) -> bool:
        return isinstance(self._state, (AwaitingColumnDecision, AwaitingBrandClassification))

    def sheet_mappings(self) -> Dict[str, SheetMapping]:
        """Active sheet mappings, fetched once per session."""

        if self._sheets is None:
            self._sheets = {s.id: s for s in self.backend.lookup_active_sheet_mappings()}
            logger.info("Loaded %d active sheet mappings", len(self._sheets))
        return self._sheets

    def find_sheet(self, key: str) -> SheetMapping:
        """Look a sheet up by id or by sheet code (case-insensitive)."""

        sheets = self.sheet_mappings()
        if key in sheets:
            return sheets[key]
        for sheet in sheets.values():
            if sheet.sheet_code and sheet.sheet_code.lower() == str(key).lower():
                return sheet
        raise ConfigError(f"No active sheet mapping for {key!r}")

    # -- queue surface ------------------------------------------------------

    def add_file(self, source: SourceFile, sheet: str) -> FileTask:
        mapping = self.find_sheet(sheet)
        task = self.queue.enqueue(source, mapping.id)
        logger.info("Queued %s for sheet %s", source.name, mapping.label)
        return task

    def assign_mapping(self, task_id: str, sheet: str) -> FileTask:
        mapping = self.find_sheet(sheet)
        return self.queue.assign_mapping(task_id, mapping.id)

    def remove_file(self, task_id: str) -> FileTask:
        return self.queue.remove(task_id)

    def tasks(self) -> List[FileTask]:
        return self.queue.tasks()

    # -- driving ------------------------------------------------------------

    def start(self) -> PipelineState:
        """Process queued files until a pause point or until the queue drains."""

        if not isinstance(self._state, (Idle, Done)):
            raise InvalidTransitionError(f"Cannot start while {type(self._state).__name__}")
        self._state = Idle()
        self.summary = None
        log_system_event(logger, f"Run started with {len(self.queue)} queued files")
        return self._drain()

    def resume(self, decision: Decision) -> PipelineState:
        """Deliver the user's answer to the current pause and keep going."""

        state = self._state
        run = self._current
        if isinstance(state, AwaitingColumnDecision) and run is not None:
            if isinstance(decision, ProceedIgnoringExtra):
                logger.info("Proceeding without extra columns %s", state.extra)
                run.accepted = state.decision
                self._state = ValidatingColumns(run.task_id)
            elif isinstance(decision, SkipFile):
                run.error = SKIP_FILE_MESSAGE
                self._state = Finalizing(run.task_id)
            else:
                raise InvalidTransitionError(f"{type(decision).__name__} does not answer a column decision")
        elif isinstance(state, AwaitingBrandClassification) and run is not None:
            if isinstance(decision, BrandClassifications):
                missing = [b for b in state.pending_brands if b not in decision.mapping and b not in run.classifications]
                if missing:
                    raise InvalidTransitionError(f"No brand type given for: {', '.join(missing)}")
                run.classifications.update({str(k): str(v) for k, v in decision.mapping.items()})
                self._state = Uploading(run.task_id, state.batch_index, state.total_batches)
            elif isinstance(decision, (CancelClassification, SkipFile)):
                run.error = CANCEL_UPLOAD_MESSAGE
                self._state = Finalizing(run.task_id)
            else:
                raise InvalidTransitionError(f"{type(decision).__name__} does not answer a brand classification")
        else:
            raise InvalidTransitionError(f"No decision is pending (state: {type(state).__name__})")
        return self._drain()

    def proceed(self) -> PipelineState:
        return self.resume(ProceedIgnoringExtra())

    def skip_file(self) -> PipelineState:
        return self.resume(SkipFile())

    def classify_brands(self, mapping: Mapping[str, str]) -> PipelineState:
        return self.resume(BrandClassifications(dict(mapping)))

    def cancel(self) -> PipelineState:
        return self.resume(CancelClassification())

    def run_to_completion(
        self,
        on_column_decision: Callable[[AwaitingColumnDecision], Decision],
        on_brand_classification: Callable[[AwaitingBrandClassification], Decision],
    ) -> RunSummary:
        """Drive the whole queue, answering pauses through the given callbacks."""

        state = self.start()
        while not isinstance(state, Done):
            if isinstance(state, AwaitingColumnDecision):
                state = self.resume(on_column_decision(state))
            else:
                state = self.resume(on_brand_classification(state))
        return state.summary

    # -- state machine ------------------------------------------------------

    def _drain(self) -> PipelineState:
        while not (self.paused or isinstance(self._state, Done)):
            state = self._state
            try:
                self._state = self._step(state)
            except Exception as exc:
                self._state = self._fail(state, exc)
            logger.info("State -> %s", type(self._state).__name__)
        return self._state

    def _step(self, state: PipelineState) -> PipelineState:
        if isinstance(state, Idle):
            return self._next_file()
        run = self._current
        if run is None:
            raise InvalidTransitionError(f"{type(state).__name__} without a file in progress")
        if isinstance(state, ReadingFile):
            return self._read(run)
        if isinstance(state, ValidatingColumns):
            return self._validate(run)
        if isinstance(state, ResolvingCustomers):
            return self._resolve(run)
        if isinstance(state, Uploading):
            return self._upload(run)
        if isinstance(state, Finalizing):
            return self._finalize(run)
        raise InvalidTransitionError(f"Unexpected state {type(state).__name__}")

    def _fail(self, state: PipelineState, exc: Exception) -> PipelineState:
        run = self._current
        message = exc.message if isinstance(exc, BoundaryError) else str(exc)
        if isinstance(exc, SheetLoadError):
            log_error(logger, f"{type(state).__name__} failed: {message}")
        else:
            logger.exception("Unexpected failure while %s", type(state).__name__)
        if run is None:
            raise exc
        run.error = message or type(exc).__name__
        if isinstance(state, Finalizing):
            # the ledger itself failed; close the task without another ledger write
            self._close(run)
            return Idle()
        return Finalizing(run.task_id)

    def _next_file(self) -> PipelineState:
        task = self.queue.next_pending()
        if task is None:
            self.summary = self._summarize()
            self.user_logger.info(self.summary.describe())
            log_system_event(logger, "Run finished")
            return Done(self.summary)

        self.queue.update_status(task.id, status=FileStatus.PROCESSING, progress_percent=0)
        self._current = FileRun(task_id=task.id, started=start_timer(task.id))
        self.heartbeat.start()
        self.user_logger.info(
            f"[{self.queue.index_of(task.id) + 1}/{len(self.queue)}] Processing {task.file_name}"
        )
        self._emit(self._current)
        return ReadingFile(task.id)

    def _read(self, run: FileRun) -> PipelineState:
        task = self.queue.get(run.task_id)
        run.sheet = self.find_sheet(task.sheet_mapping_id)
        run.frame = self.reader.read(task.source, skip_first_row=run.sheet.skip_first_row)
        logger.info("Read %d rows from %s", len(run.frame), task.file_name)
        self._progress(run, READ_DONE)
        return ValidatingColumns(run.task_id)

    def _validate(self, run: FileRun) -> PipelineState:
        if run.accepted is not None:
            return self._accept_columns(run, run.accepted)
        mappings = self.backend.lookup_column_mapping(run.sheet.id)
        run.validator = ColumnValidator(mappings)
        decision = run.validator.validate(run.frame)
        if decision.requires_decision:
            logger.info("Waiting for a decision on extra columns %s", decision.extra)
            return AwaitingColumnDecision(run.task_id, decision)
        return self._accept_columns(run, decision)

    def _accept_columns(self, run: FileRun, decision: ColumnDecision) -> PipelineState:
        run.rows = run.validator.apply(run.frame, decision)
        task = self.queue.get(run.task_id)
        run.log_id = self.ledger.open(task.file_name, run.sheet.id, self._source_dates(run))
        self._progress(run, COLUMNS_DONE)
        return ResolvingCustomers(run.task_id)

    def _resolve(self, run: FileRun) -> PipelineState:
        discovery = self.resolver.resolve(run.rows, run.sheet)
        run.new_customers = len(discovery.new_customers)
        self._progress(run, CUSTOMERS_DONE)
        run.outcome = UploadOutcome(total_batches=self._batch_count(run))
        return Uploading(run.task_id, 0, run.outcome.total_batches)

    def _upload(self, run: FileRun) -> PipelineState:
        outcome = self.uploader.upload(
            run.rows,
            run.sheet,
            brand_classifications=run.classifications or None,
            outcome=run.outcome,
            on_batch=lambda index, current: self._progress(run, self._upload_percent(current), index + 1),
        )
        if outcome.awaiting_classification:
            return AwaitingBrandClassification(
                run.task_id,
                tuple(outcome.pending_brands),
                outcome.next_batch,
                outcome.total_batches,
            )
        if outcome.failed:
            run.error = outcome.error_message or "Upload failed"
        return Finalizing(run.task_id)

    def _finalize(self, run: FileRun) -> PipelineState:
        task = self.queue.get(run.task_id)
        if run.log_id is None:
            # failed before columns were accepted; the file still gets one ledger row
            sheet_id = run.sheet.id if run.sheet else task.sheet_mapping_id
            run.log_id = self.ledger.open(task.file_name, sheet_id, self._source_dates(run))
        self.ledger.finalize(run.log_id, outcome=run.outcome, error=run.error, new_customers=run.new_customers)
        completed = run.error is None
        self._close(run)
        if completed:
            self._maintenance()
        return Idle()

    def _close(self, run: FileRun) -> None:
        task = self.queue.get(run.task_id)
        outcome = run.outcome or UploadOutcome()
        elapsed = end_timer(task.id, run.started, self.timings)
        if run.error is None:
            summary = FileSummary(
                record_count=outcome.record_count,
                total_value=outcome.total_value,
                new_customers=run.new_customers,
                new_products=outcome.new_products,
                new_brands=outcome.new_brands,
            )
            task = self.queue.update_status(task.id, status=FileStatus.COMPLETED, progress_percent=100, summary=summary)
            self.user_logger.info(
                f"{task.file_name}: {summary.record_count} records, total {summary.total_value:,.2f} ({elapsed:.2f}s)"
            )
        else:
            task = self.queue.update_status(task.id, status=FileStatus.ERROR, error_message=run.error)
            self.user_logger.info(f"{task.file_name}: failed ({run.error}) after {elapsed:.2f}s")
        self._emit(run)
        self.heartbeat.stop()
        self._current = None

    def _maintenance(self) -> None:
        try:
            self.backend.run_post_ingest_maintenance()
        except Exception as exc:
            log_warning(logger, f"Post-ingest maintenance failed: {exc}")

    # -- helpers ------------------------------------------------------------

    def _batch_count(self, run: FileRun) -> int:
        size = self.uploader.batch_size
        return (len(run.rows) + size - 1) // size

    @staticmethod
    def _upload_percent(outcome: UploadOutcome) -> int:
        if not outcome.total_batches:
            return 100
        span = 100 - CUSTOMERS_DONE
        return CUSTOMERS_DONE + (span * outcome.next_batch) // outcome.total_batches

    @staticmethod
    def _source_dates(run: FileRun) -> List[object]:
        frame = run.rows if run.rows is not None else run.frame
        if frame is None or run.sheet is None:
            return []
        for column in frame.columns:
            if str(column).strip().lower() == run.sheet.date_column.lower():
                return frame[column].tolist()
        return []

    def _progress(self, run: FileRun, percent: int, batch_index: int = 0) -> None:
        self.queue.update_status(run.task_id, progress_percent=percent)
        self._emit(run, batch_index)

    def _emit(self, run: FileRun, batch_index: int = 0) -> None:
        if self.on_progress is None:
            return
        task = self.queue.get(run.task_id)
        outcome = run.outcome
        snapshot = ProgressSnapshot(
            current_file_index=self.queue.index_of(task.id),
            file_id=task.id,
            file_name=task.file_name,
            progress_percent=task.progress_percent,
            batch_index=batch_index or (outcome.next_batch if outcome else 0),
            total_batches=outcome.total_batches if outcome else 0,
            processed_rows=outcome.record_count if outcome else 0,
            elapsed_seconds=run.elapsed_seconds,
        )
        self.on_progress(snapshot)

    def _summarize(self) -> RunSummary:
        tasks = self.queue.tasks()
        completed = [t for t in tasks if t.status == FileStatus.COMPLETED]
        return RunSummary(
            total_files=len(tasks),
            successful_files=len(completed),
            failed_files=sum(1 for t in tasks if t.status == FileStatus.ERROR),
            total_records=sum(t.summary.record_count for t in completed if t.summary),
            total_value=sum(t.summary.total_value for t in completed if t.summary),
            file_durations=tuple((t.file_name, self.timings[t.id]) for t in tasks if t.id in self.timings),
        )
