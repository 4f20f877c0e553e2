"""Decode uploaded spreadsheets into row frames."""
from __future__ import annotations

import csv
import io
import logging
import re
import zipfile
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

from .errors import EmptyFileError, UnsupportedFileError
from .models import SourceFile


logger = logging.getLogger(__name__)

EXCEL_EPOCH = datetime(1899, 12, 30)
TEXT_EXTENSIONS = {".csv", ".tsv", ".txt"}
EXCEL_EXTENSIONS = {".xlsx", ".xlsm", ".xls"}
DEFAULT_EXTENSIONS = (".xlsx", ".xlsm", ".xls", ".csv")

_NUMERIC_RE = re.compile(r"^\d+(\.\d+)?$")
# 9999-12-31, the last day Excel can store
EXCEL_MAX_SERIAL = 2958465


def validate_extension(file_name: str, allowed: Iterable[str] = DEFAULT_EXTENSIONS) -> str:
    """Ensure the file extension is allowed and return it lowercased."""

    suffix = Path(file_name).suffix.lower()
    allowed_set = {ext.lower() for ext in allowed}
    if suffix not in allowed_set:
        raise UnsupportedFileError(f"Unsupported file extension: {suffix or '<none>'}. Allowed: {sorted(allowed_set)}")
    return suffix


def is_date_column(name: object) -> bool:
    """True when the header names a calendar date (``date`` or ``..._date``)."""

    token = "_".join(str(name or "").split()).lower()
    return token == "date" or token.endswith("_date")


def excel_serial_to_date(value: float) -> date:
    """Convert an Excel serial day number into a calendar date."""

    return (EXCEL_EPOCH + timedelta(days=float(value))).date()


def _numeric_date(text: str) -> str:
    # Excel serial day number, or a compact YYYYMMDD date
    serial = float(text)
    if 1 <= serial <= EXCEL_MAX_SERIAL:
        return excel_serial_to_date(serial).isoformat()
    if len(text) == 8:
        try:
            return datetime.strptime(text, "%Y%m%d").date().isoformat()
        except ValueError:
            pass
    return text


def normalize_date_value(value: object) -> object:
    """Return ``YYYY-MM-DD`` for anything that looks like a date.

    Unparseable text is returned unchanged so the boundary can report it.
    """

    if value is None or (isinstance(value, float) and np.isnan(value)):
        return None
    if isinstance(value, pd.Timestamp):
        return None if pd.isna(value) else value.date().isoformat()
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, bool):
        number = float(value)
        text = str(int(number)) if number.is_integer() else str(number)
    else:
        text = str(value).strip()
    if not text:
        return None
    if _NUMERIC_RE.match(text):
        return _numeric_date(text)
    parsed = pd.to_datetime(text, errors="coerce", dayfirst=not re.match(r"^\d{4}-", text))
    if pd.isna(parsed):
        return text
    return parsed.date().isoformat()


def _clean_cell(value: object) -> object:
    if value is None or value is pd.NaT or value is pd.NA:
        return None
    if isinstance(value, float) and np.isnan(value):
        return None
    if isinstance(value, str) and not value.strip():
        return None
    if isinstance(value, (pd.Timestamp, datetime)):
        return None if pd.isna(value) else value.isoformat()
    return value


def normalize_headers(raw_headers: Iterable[object]) -> List[str]:
    """Strip header text and make duplicates unique with an index suffix."""

    seen: Dict[str, int] = {}
    fixed: List[str] = []
    for position, col in enumerate(raw_headers):
        if col is None or (isinstance(col, float) and np.isnan(col)) or not str(col).strip():
            base = f"unnamed_{position}"
        else:
            base = str(col).strip()
        if base in seen:
            seen[base] += 1
            fixed.append(f"{base}.{seen[base]}")
        else:
            seen[base] = 0
            fixed.append(base)
    return fixed


def _read_grid(source: SourceFile) -> pd.DataFrame:
    suffix = Path(source.name).suffix.lower()
    if not source.content.strip():
        return pd.DataFrame()
    buffer = io.BytesIO(source.content)
    if suffix in TEXT_EXTENSIONS:
        try:
            return pd.read_csv(buffer, header=None, dtype=str, sep=None, engine="python", keep_default_na=False)
        except pd.errors.EmptyDataError:
            return pd.DataFrame()
        except (pd.errors.ParserError, csv.Error, UnicodeDecodeError, ValueError) as exc:
            raise UnsupportedFileError(f"Failed to read delimited file {source.name}: {exc}") from exc
    if suffix in EXCEL_EXTENSIONS:
        engine = "openpyxl" if suffix in {".xlsx", ".xlsm"} else None
        try:
            # First sheet only, no type coercion beyond what the workbook stores
            return pd.read_excel(buffer, header=None, dtype=object, engine=engine)
        except (ValueError, KeyError, OSError, ImportError, zipfile.BadZipFile) as exc:
            raise UnsupportedFileError(f"Failed to read Excel file {source.name}: {exc}") from exc
    raise UnsupportedFileError(f"Unsupported input file extension for {source.name}")


def read_spreadsheet(source: SourceFile, skip_first_row: bool = False) -> pd.DataFrame:
    """Decode ``source`` into a frame of row records.

    Headers come from the first row, or the second one when ``skip_first_row``
    is set (the first row is then a title line). Fully blank rows are dropped.
    Cells stay untyped, except columns named like dates which are normalized to
    ISO calendar dates.

    Raises:
        EmptyFileError: when no data rows remain.
        UnsupportedFileError: when the content cannot be decoded.
    """

    grid = _read_grid(source)
    header_index = 1 if skip_first_row else 0
    if grid.shape[0] <= header_index:
        raise EmptyFileError(f"{source.name} has no data rows")

    headers = normalize_headers(grid.iloc[header_index].tolist())
    body = grid.iloc[header_index + 1 :].copy()
    if body.empty:
        raise EmptyFileError(f"{source.name} has no data rows")
    body.columns = headers
    body = body.astype(object).map(_clean_cell)
    body = body.dropna(how="all").reset_index(drop=True)
    if body.empty:
        raise EmptyFileError(f"{source.name} has no data rows")

    for col in body.columns:
        if is_date_column(col):
            body[col] = body[col].map(normalize_date_value)

    logger.debug("Read %d rows x %d columns from %s", body.shape[0], body.shape[1], source.name)
    return body


class SpreadsheetReader:
    """Reader bound to the configured allowed extensions."""

    def __init__(self, allowed_extensions: Optional[Iterable[str]] = None) -> None:
        self.allowed_extensions = tuple(allowed_extensions or DEFAULT_EXTENSIONS)

    def read(self, source: SourceFile, skip_first_row: bool = False) -> pd.DataFrame:
        validate_extension(source.name, self.allowed_extensions)
        return read_spreadsheet(source, skip_first_row=skip_first_row)
