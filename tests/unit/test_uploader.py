"""Unit tests for batch partitioning, pause/resume and partial failure."""
import math

import pandas as pd
import pytest

from conftest import make_sheet
from sheetload.errors import BoundaryError
from sheetload.models import BatchResult
from sheetload.uploader import BatchUploader, batch_bounds, count_batches, frame_to_records


class StubBackend:
    """Accepts every batch; optional pause or failure on a given call."""

    def __init__(self, classify_on_call=None, fail_on_call=None):
        self.calls = []
        self.classify_on_call = classify_on_call
        self.fail_on_call = fail_on_call

    def submit_batch(self, sheet, rows, brand_classifications=None):
        call = len(self.calls)
        self.calls.append((list(rows), dict(brand_classifications or {})))
        if call == self.fail_on_call:
            raise BoundaryError("Network request failed")
        if call == self.classify_on_call and not brand_classifications:
            return BatchResult(requires_brand_type_selection=True, new_brands=["Acme"])
        dates = sorted(r["created_at_date"] for r in rows)
        return BatchResult(
            count=len(rows),
            total_value=float(sum(r["total"] for r in rows)),
            products_upserted=1,
            brands_upserted=1 if brand_classifications and call == self.classify_on_call + 1 else 0,
            date_from=dates[0],
            date_to=dates[-1],
        )


def _frame(n):
    return pd.DataFrame(
        {
            "row": list(range(n)),
            "total": [1] * n,
            "created_at_date": [f"2024-01-{(i % 28) + 1:02d}" for i in range(n)],
        }
    )


@pytest.mark.parametrize("rows, size", [(2500, 1000), (2000, 1000), (1, 1000), (7, 3), (10, 1)])
def test_partition_property(rows, size):
    backend = StubBackend()

    outcome = BatchUploader(backend, batch_size=size).upload(_frame(rows), make_sheet())

    sizes = [len(batch) for batch, _ in backend.calls]
    expected_last = rows % size or size
    assert len(sizes) == math.ceil(rows / size)
    assert sizes[:-1] == [size] * (len(sizes) - 1)
    assert sizes[-1] == expected_last
    assert [r["row"] for batch, _ in backend.calls for r in batch] == list(range(rows))
    assert outcome.completed
    assert outcome.record_count == rows


def test_clean_run_reports_cumulative_rows():
    seen = []
    uploader = BatchUploader(StubBackend(), batch_size=1000)

    outcome = uploader.upload(_frame(2500), make_sheet(), on_batch=lambda i, o: seen.append((i, o.record_count)))

    assert seen == [(0, 1000), (1, 2000), (2, 2500)]
    assert outcome.next_batch == outcome.total_batches == 3
    assert outcome.total_value == 2500.0
    assert outcome.date_range_start == "2024-01-01"
    assert outcome.date_range_end == "2024-01-28"


def test_classification_pause_resumes_same_batch():
    backend = StubBackend(classify_on_call=1)
    uploader = BatchUploader(backend, batch_size=2)
    df = _frame(6)

    outcome = uploader.upload(df, make_sheet())

    assert outcome.awaiting_classification
    assert outcome.pending_brands == ["Acme"]
    assert outcome.next_batch == 1
    assert outcome.record_count == 2

    outcome = uploader.upload(df, make_sheet(), brand_classifications={"Acme": "bt-1"}, outcome=outcome)

    assert outcome.completed
    assert outcome.record_count == 6
    assert outcome.new_brands == 1
    assert len(backend.calls) == 4
    assert backend.calls[1][0] == backend.calls[2][0]
    assert backend.calls[2][1] == {"Acme": "bt-1"}
    assert backend.calls[3][1] == {"Acme": "bt-1"}


def test_boundary_error_keeps_partial_totals():
    backend = StubBackend(fail_on_call=1)

    outcome = BatchUploader(backend, batch_size=2).upload(_frame(6), make_sheet())

    assert outcome.failed
    assert outcome.error_message == "Network request failed"
    assert outcome.record_count == 2
    assert outcome.next_batch == 1
    assert len(backend.calls) == 2


def test_classification_request_without_names_fails():
    class NamelessBackend:
        def submit_batch(self, sheet, rows, brand_classifications=None):
            return BatchResult(requires_brand_type_selection=True)

    outcome = BatchUploader(NamelessBackend(), batch_size=5).upload(_frame(3), make_sheet())

    assert outcome.failed
    assert "without brand names" in outcome.error_message


def test_batch_bounds_and_counts():
    assert batch_bounds(5, 2) == [(0, 2), (2, 4), (4, 5)]
    assert batch_bounds(0, 2) == []
    assert count_batches(0, 10) == 0
    assert count_batches(11, 10) == 2
    with pytest.raises(ValueError):
        batch_bounds(5, 0)
    with pytest.raises(ValueError):
        BatchUploader(StubBackend(), batch_size=0)


def test_frame_to_records_makes_plain_values():
    df = pd.DataFrame({"a": [1, None], "b": ["x", None]}).astype(object)
    df.loc[0, "a"] = pd.Series([5], dtype="int64").iloc[0]

    records = frame_to_records(df)

    assert records == [{"a": 5, "b": "x"}, {"a": None, "b": None}]
    assert type(records[0]["a"]) is int
