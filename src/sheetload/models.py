"""Data records shared by the pipeline components."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


class FileStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (FileStatus.COMPLETED, FileStatus.ERROR)


@dataclass(frozen=True)
class FileSummary:
    """Counters reported for a completed file."""

    record_count: int = 0
    total_value: float = 0.0
    new_customers: int = 0
    new_products: int = 0
    new_brands: int = 0


@dataclass(frozen=True)
class SourceFile:
    """Binary handle of a user-selected file."""

    name: str
    content: bytes

    @classmethod
    def from_path(cls, path: str | Path) -> "SourceFile":
        p = Path(path)
        return cls(name=p.name, content=p.read_bytes())


@dataclass(frozen=True)
class FileTask:
    """One queued spreadsheet upload.

    Instances are immutable; the queue replaces them on every status change so
    callers only ever hold snapshots.
    """

    id: str
    source: SourceFile
    sheet_mapping_id: str
    status: FileStatus = FileStatus.PENDING
    progress_percent: int = 0
    error_message: Optional[str] = None
    summary: Optional[FileSummary] = None

    @property
    def file_name(self) -> str:
        return self.source.name

    def with_changes(self, **changes: Any) -> "FileTask":
        return replace(self, **changes)


@dataclass(frozen=True)
class ColumnDecision:
    """Outcome of comparing a file's headers to its column mapping."""

    missing: List[str] = field(default_factory=list)
    extra: List[str] = field(default_factory=list)
    matched: Dict[str, str] = field(default_factory=dict)

    @property
    def requires_decision(self) -> bool:
        return bool(self.extra)


@dataclass(frozen=True)
class CustomerStub:
    customer_phone: str
    customer_name: str
    creation_date: Optional[str]
    status: str = "active"

    def to_record(self) -> Dict[str, Any]:
        return {
            "customer_phone": self.customer_phone,
            "customer_name": self.customer_name,
            "creation_date": self.creation_date,
            "status": self.status,
        }


@dataclass(frozen=True)
class BatchResult:
    """What the ingestion boundary reported for one batch."""

    count: int = 0
    total_value: float = 0.0
    products_upserted: int = 0
    brands_upserted: int = 0
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    requires_brand_type_selection: bool = False
    new_brands: List[str] = field(default_factory=list)
    message: str = ""

    @classmethod
    def from_response(cls, payload: Dict[str, Any]) -> "BatchResult":
        payload = payload or {}
        date_range = payload.get("dateRange") or {}
        new_brands = []
        for item in payload.get("newBrands") or []:
            name = item.get("brand_name") if isinstance(item, dict) else item
            if name:
                new_brands.append(str(name))
        return cls(
            count=int(payload.get("count") or 0),
            total_value=float(payload.get("totalValue") or 0.0),
            products_upserted=int(payload.get("productsUpserted") or 0),
            brands_upserted=int(payload.get("brandsUpserted") or 0),
            date_from=date_range.get("from"),
            date_to=date_range.get("to"),
            requires_brand_type_selection=bool(payload.get("requiresBrandTypeSelection")),
            new_brands=new_brands,
            message=str(payload.get("message") or ""),
        )


@dataclass
class UploadOutcome:
    """Running totals for one file's upload.

    ``next_batch`` is the cursor of the first batch that has not been accepted
    yet. ``status`` is ``completed``, ``awaiting_classification`` or
    ``failed``.
    """

    total_batches: int = 0
    next_batch: int = 0
    record_count: int = 0
    total_value: float = 0.0
    new_products: int = 0
    new_brands: int = 0
    date_range_start: Optional[str] = None
    date_range_end: Optional[str] = None
    status: str = "pending"
    error_message: Optional[str] = None
    pending_brands: List[str] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.status == "completed"

    @property
    def awaiting_classification(self) -> bool:
        return self.status == "awaiting_classification"

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    def absorb(self, result: BatchResult) -> None:
        self.record_count += result.count
        self.total_value += result.total_value
        self.new_products += result.products_upserted
        self.new_brands += result.brands_upserted
        self.extend_date_range(result.date_from, result.date_to)

    def extend_date_range(self, start: Optional[str], end: Optional[str]) -> None:
        # ISO dates compare correctly as strings
        for value in (start, end):
            if not value:
                continue
            if self.date_range_start is None or value < self.date_range_start:
                self.date_range_start = value
            if self.date_range_end is None or value > self.date_range_end:
                self.date_range_end = value


@dataclass(frozen=True)
class UploadLogRecord:
    """Durable audit row for one FileTask."""

    file_name: str
    uploader: str
    sheet_mapping_id: str
    status: str = "processing"
    records_processed: int = 0
    new_customers_count: int = 0
    new_products_count: int = 0
    new_brands_count: int = 0
    total_value: float = 0.0
    date_range_start: Optional[str] = None
    date_range_end: Optional[str] = None
    error_message: Optional[str] = None
    distinct_source_dates: List[str] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "file_name": self.file_name,
            "user_name": self.uploader,
            "sheet_id": self.sheet_mapping_id,
            "status": self.status,
            "records_processed": self.records_processed,
            "new_customers_count": self.new_customers_count,
            "new_products_count": self.new_products_count,
            "new_brands_count": self.new_brands_count,
            "total_value": self.total_value,
            "date_range_start": self.date_range_start,
            "date_range_end": self.date_range_end,
            "error_message": self.error_message,
            "excel_dates": list(self.distinct_source_dates),
        }


@dataclass(frozen=True)
class ProgressSnapshot:
    current_file_index: int
    file_id: str
    file_name: str
    progress_percent: int
    batch_index: int
    total_batches: int
    processed_rows: int
    elapsed_seconds: float


@dataclass(frozen=True)
class RunSummary:
    total_files: int = 0
    successful_files: int = 0
    failed_files: int = 0
    total_records: int = 0
    total_value: float = 0.0
    # (file name, seconds) in queue order
    file_durations: Tuple[Tuple[str, float], ...] = ()

    def describe(self) -> str:
        lines = [
            f"Files: {self.total_files} ({self.successful_files} succeeded, {self.failed_files} failed) | "
            f"Records: {self.total_records} | Total value: {self.total_value:,.2f}"
        ]
        lines.extend(f"  {name}: {seconds:.2f}s" for name, seconds in self.file_durations)
        return "\n".join(lines)
