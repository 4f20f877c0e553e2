"""Shared fixtures: an in-memory backend with one sales sheet and file builders."""
import csv
import sys
from pathlib import Path

import pytest
from openpyxl import Workbook

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from sheetload.config import ColumnMapping, HeartbeatSettings, PipelineSettings, SheetMapping, UploadSettings  # noqa: E402
from sheetload.memory_backend import BrandType, InMemoryBackend  # noqa: E402
from sheetload.models import SourceFile  # noqa: E402


SALES_HEADER = ["customer_phone", "customer_name", "created_at_date", "brand_name", "product_name", "total"]


def sales_columns(extra=()):
    columns = [
        ColumnMapping(excel_column="customer_phone", table_column="customer_phone"),
        ColumnMapping(excel_column="customer_name", table_column="customer_name"),
        ColumnMapping(excel_column="created_at_date", table_column="created_at_date", data_type="date"),
        ColumnMapping(excel_column="brand_name", table_column="brand_name"),
        ColumnMapping(excel_column="product_name", table_column="product_name"),
        ColumnMapping(excel_column="total", table_column="total", data_type="numeric"),
    ]
    columns.extend(ColumnMapping(excel_column=name, table_column=name) for name in extra)
    return columns


def make_sheet(**overrides):
    values = dict(
        id="sheet-sales",
        sheet_code="SALES",
        sheet_name="Daily sales",
        target_table="sales_transactions",
        check_customer=True,
        check_brand=True,
        check_product=True,
        columns=sales_columns(),
    )
    values.update(overrides)
    return SheetMapping(**values)


def sales_rows(count, brand="Known", start_day=1, total=10):
    rows = []
    for i in range(count):
        day = start_day + (i % 28)
        rows.append([f"05000{i % 50:05d}", f"Customer {i % 50}", f"2024-01-{day:02d}", brand, f"Product {i % 7}", total])
    return rows


def write_xlsx(path, header, rows, title=None):
    wb = Workbook()
    ws = wb.active
    if title is not None:
        ws.append([title])
    ws.append(list(header))
    for row in rows:
        ws.append(list(row))
    wb.save(path)
    return SourceFile.from_path(path)


def write_csv(path, header, rows):
    with open(path, "w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerow(header)
        writer.writerows(rows)
    return SourceFile.from_path(path)


def make_settings(batch_size=1000, **upload):
    return PipelineSettings(
        upload=UploadSettings(batch_size=batch_size, uploader="tester", **upload),
        heartbeat=HeartbeatSettings(enabled=False),
    )


@pytest.fixture
def sheet():
    return make_sheet()


@pytest.fixture
def backend(sheet):
    return InMemoryBackend(
        sheets=[sheet],
        brand_types=[BrandType(id="bt-1", type_code="ELEC", type_name="Electronics")],
        existing_brands={"Known": "ELEC-001"},
    )
