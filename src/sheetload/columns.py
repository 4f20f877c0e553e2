"""Compare a file's headers with the active column mapping."""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Sequence

import pandas as pd

from .config import ColumnMapping
from .logging_utils import log_warning
from .models import ColumnDecision


logger = logging.getLogger(__name__)


def normalize_column_name(raw_name: object) -> str:
    """Case-fold a header and collapse internal whitespace.

    ``"  Customer   Phone "`` and ``"customer phone"`` normalize to the same
    token.
    """

    return " ".join(str(raw_name or "").split()).casefold()


def mapped_column_names(mappings: Iterable[ColumnMapping | str]) -> List[str]:
    names: List[str] = []
    seen = set()
    for item in mappings:
        name = item.excel_column if isinstance(item, ColumnMapping) else str(item).strip()
        key = normalize_column_name(name)
        if not key or key in seen:
            continue
        seen.add(key)
        names.append(name)
    return names


def classify_columns(file_columns: Sequence[object], mapped_columns: Sequence[str]) -> ColumnDecision:
    """Split headers into matched, missing and extra.

    ``missing`` keeps the mapping's spelling, ``extra`` keeps the file's
    spelling, and both preserve their source order.
    """

    mapped_index = {normalize_column_name(name): name for name in mapped_columns}

    file_index: Dict[str, str] = {}
    extra: List[str] = []
    for col in file_columns:
        key = normalize_column_name(col)
        if key in file_index:
            # a second header for the same column is never uploaded
            extra.append(str(col))
        else:
            file_index[key] = str(col)
            if key not in mapped_index:
                extra.append(str(col))

    matched = {file_index[key]: name for key, name in mapped_index.items() if key in file_index}
    missing = [name for key, name in mapped_index.items() if key not in file_index]
    return ColumnDecision(missing=missing, extra=extra, matched=matched)


def apply_column_decision(df: pd.DataFrame, decision: ColumnDecision, mapped_columns: Sequence[str]) -> pd.DataFrame:
    """Return a frame holding exactly the mapped columns, in mapping order.

    Matched columns are renamed to the mapping's spelling, missing ones are
    added as nulls and extra columns are dropped.
    """

    renamed = df[list(decision.matched.keys())].rename(columns=decision.matched)
    out = renamed.reindex(columns=list(mapped_columns))
    return out.astype(object).where(out.notna(), None)


class ColumnValidator:
    """Validate file headers against a sheet's column mapping."""

    def __init__(self, mappings: Iterable[ColumnMapping | str]) -> None:
        self.mapped_columns = mapped_column_names(mappings)

    def validate(self, df: pd.DataFrame) -> ColumnDecision:
        decision = classify_columns(list(df.columns), self.mapped_columns)
        if decision.missing:
            log_warning(logger, f"Mapped columns missing from file (values will be null): {decision.missing}")
        if decision.extra:
            logger.info("Unmapped columns present in file: %s", decision.extra)
        return decision

    def apply(self, df: pd.DataFrame, decision: ColumnDecision) -> pd.DataFrame:
        return apply_column_decision(df, decision, self.mapped_columns)
