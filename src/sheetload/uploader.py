"""Submit a validated row frame to the ingestion boundary in fixed-size batches."""
from __future__ import annotations

import logging
import math
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from .config import SheetMapping
from .errors import BoundaryError
from .models import BatchResult, UploadOutcome


logger = logging.getLogger(__name__)

BatchCallback = Callable[[int, UploadOutcome], None]


def batch_bounds(total_rows: int, batch_size: int) -> List[Tuple[int, int]]:
    """Row ranges ``[start, stop)`` of each batch, in order."""

    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    return [(start, min(start + batch_size, total_rows)) for start in range(0, total_rows, batch_size)]


def count_batches(total_rows: int, batch_size: int) -> int:
    return math.ceil(total_rows / batch_size) if total_rows else 0


def _plain(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, np.generic):
        return value.item()
    return value


def frame_to_records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    """JSON-ready row records with nulls for missing cells."""

    return [{k: _plain(v) for k, v in record.items()} for record in df.to_dict("records")]


def iter_batches(df: pd.DataFrame, batch_size: int, start_batch: int = 0) -> Iterator[Tuple[int, List[Dict[str, Any]]]]:
    for index, (start, stop) in enumerate(batch_bounds(len(df), batch_size)):
        if index < start_batch:
            continue
        yield index, frame_to_records(df.iloc[start:stop])


class BatchUploader:
    """Sequential batch submission with pause and partial-failure semantics."""

    def __init__(self, backend, batch_size: int = 1000) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.backend = backend
        self.batch_size = batch_size

    def upload(
        self,
        df: pd.DataFrame,
        sheet: SheetMapping,
        brand_classifications: Optional[Mapping[str, str]] = None,
        outcome: Optional[UploadOutcome] = None,
        on_batch: Optional[BatchCallback] = None,
    ) -> UploadOutcome:
        """Send the batches of ``df`` starting at ``outcome.next_batch``.

        Passing the outcome of a paused upload resumes with the batch that
        asked for brand classification; counters keep accumulating on the
        same outcome object.

        A boundary error stops the loop: the outcome is marked ``failed`` and
        keeps the totals of the batches that were accepted before it.
        """

        if outcome is None:
            outcome = UploadOutcome(total_batches=count_batches(len(df), self.batch_size))
        outcome.status = "uploading"
        outcome.pending_brands = []

        for index, rows in iter_batches(df, self.batch_size, start_batch=outcome.next_batch):
            logger.info("Submitting batch %d/%d (%d rows) for sheet %s", index + 1, outcome.total_batches, len(rows), sheet.id)
            try:
                result: BatchResult = self.backend.submit_batch(sheet, rows, brand_classifications)
            except BoundaryError as exc:
                logger.error("[ERROR] Batch %d/%d failed: %s", index + 1, outcome.total_batches, exc)
                outcome.status = "failed"
                outcome.error_message = str(exc)
                return outcome

            if result.requires_brand_type_selection and not result.new_brands:
                outcome.status = "failed"
                outcome.error_message = "Brand classification requested without brand names"
                logger.error("[ERROR] Batch %d/%d: %s", index + 1, outcome.total_batches, outcome.error_message)
                return outcome
            if result.requires_brand_type_selection:
                logger.info("Batch %d/%d requires brand classification for %s", index + 1, outcome.total_batches, result.new_brands)
                outcome.status = "awaiting_classification"
                outcome.pending_brands = list(result.new_brands)
                return outcome

            outcome.absorb(result)
            outcome.next_batch = index + 1
            if on_batch is not None:
                on_batch(index, outcome)

        outcome.status = "completed"
        return outcome
