"""Audit trail: one upload log record per file, opened once and finalized once."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from .errors import LedgerError
from .models import UploadLogRecord, UploadOutcome


logger = logging.getLogger(__name__)


def distinct_dates(values: Iterable[object]) -> List[str]:
    """Sorted distinct non-empty date strings."""

    return sorted({str(v) for v in values if v is not None and str(v).strip()})


class UploadLedger:
    """Writes upload log records through the backend.

    ``open`` inserts the record with ``status=processing``; ``finalize`` moves
    it to ``completed`` or ``failed``. Each log id accepts exactly one
    finalize call.
    """

    def __init__(self, backend, uploader: str) -> None:
        self.backend = backend
        self.uploader = uploader
        self._open: Dict[str, UploadLogRecord] = {}
        self._finalized: Dict[str, UploadLogRecord] = {}

    def open(self, file_name: str, sheet_mapping_id: str, source_dates: Iterable[object] = (), uploader: Optional[str] = None) -> str:
        record = UploadLogRecord(
            file_name=file_name,
            uploader=uploader or self.uploader,
            sheet_mapping_id=sheet_mapping_id,
            status="processing",
            distinct_source_dates=distinct_dates(source_dates),
        )
        payload = record.to_payload()
        payload["upload_date"] = datetime.now(timezone.utc).isoformat()
        log_id = self.backend.open_upload_log(payload)
        self._open[log_id] = record
        logger.info("Opened upload log %s for %s", log_id, file_name)
        return log_id

    def finalize(
        self,
        log_id: str,
        outcome: Optional[UploadOutcome] = None,
        error: Optional[str] = None,
        new_customers: int = 0,
    ) -> UploadLogRecord:
        """Write the terminal state of ``log_id``.

        Without ``error`` the record becomes ``completed`` with the outcome's
        counters; with ``error`` it becomes ``failed`` and still carries the
        counters of the batches that were applied.
        """

        if log_id in self._finalized:
            raise LedgerError(f"Upload log {log_id} is already finalized")
        opened = self._open.get(log_id)
        if opened is None:
            raise LedgerError(f"Upload log {log_id} was never opened")

        outcome = outcome or UploadOutcome()
        record = UploadLogRecord(
            file_name=opened.file_name,
            uploader=opened.uploader,
            sheet_mapping_id=opened.sheet_mapping_id,
            status="failed" if error else "completed",
            records_processed=outcome.record_count,
            new_customers_count=new_customers,
            new_products_count=outcome.new_products,
            new_brands_count=outcome.new_brands,
            total_value=outcome.total_value,
            date_range_start=outcome.date_range_start,
            date_range_end=outcome.date_range_end,
            error_message=error,
            distinct_source_dates=opened.distinct_source_dates,
        )
        patch = record.to_payload()
        for key in ("file_name", "user_name", "sheet_id", "excel_dates"):
            patch.pop(key, None)
        self.backend.update_upload_log(log_id, patch)
        del self._open[log_id]
        self._finalized[log_id] = record
        logger.info("Finalized upload log %s as %s", log_id, record.status)
        return record
