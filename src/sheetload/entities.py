"""Customer discovery and creation ahead of the batch upload.

Customers are resolved eagerly on the client: phones found in the file but not
in the backend are inserted before any batch is sent. Brands and products are
discovered by the ingestion boundary itself, batch by batch.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

import pandas as pd

from .config import SheetMapping
from .models import CustomerStub


logger = logging.getLogger(__name__)


def normalize_phone(value: object) -> Optional[str]:
    """Canonical text form of a phone cell.

    Spreadsheet numbers such as ``966501234567.0`` lose the float suffix;
    surrounding whitespace is removed.
    """

    if value is None:
        return None
    if isinstance(value, float):
        if pd.isna(value):
            return None
        if value.is_integer():
            return str(int(value))
    text = str(value).strip()
    if text.endswith(".0") and text[:-2].isdigit():
        text = text[:-2]
    return text or None


def collect_customers(
    df: pd.DataFrame,
    phone_column: str = "customer_phone",
    name_column: str = "customer_name",
    date_column: str = "created_at_date",
) -> Dict[str, CustomerStub]:
    """Group rows by phone, keeping the earliest observed date per phone."""

    if phone_column not in df.columns:
        return {}
    customers: Dict[str, CustomerStub] = {}
    has_name = name_column in df.columns
    has_date = date_column in df.columns
    for record in df.to_dict("records"):
        phone = normalize_phone(record.get(phone_column))
        if not phone:
            continue
        name = record.get(name_column) if has_name else None
        observed = record.get(date_column) if has_date else None
        observed = str(observed) if observed else None
        current = customers.get(phone)
        if current is None:
            customers[phone] = CustomerStub(
                customer_phone=phone,
                customer_name=str(name).strip() if name else phone,
                creation_date=observed,
            )
            continue
        if observed and (current.creation_date is None or observed < current.creation_date):
            customers[phone] = CustomerStub(
                customer_phone=phone,
                customer_name=current.customer_name,
                creation_date=observed,
            )
    return customers


def resolve_customers(df: pd.DataFrame, existing_phones: Iterable[str], sheet: Optional[SheetMapping] = None) -> List[CustomerStub]:
    """Customers present in ``df`` whose phone is not in ``existing_phones``."""

    phone_column = sheet.phone_column if sheet else "customer_phone"
    name_column = sheet.customer_name_column if sheet else "customer_name"
    date_column = sheet.date_column if sheet else "created_at_date"
    collected = collect_customers(df, phone_column, name_column, date_column)
    known = {normalize_phone(p) for p in existing_phones}
    return [stub for phone, stub in collected.items() if phone not in known]


@dataclass
class EntityDiscovery:
    """Entities discovered for the file currently being processed."""

    new_customers: List[CustomerStub] = field(default_factory=list)
    new_brands_pending_classification: List[str] = field(default_factory=list)


class EntityResolver:
    """Run-scoped resolver remembering every phone seen or created in the run."""

    def __init__(self, backend) -> None:
        self.backend = backend
        self._known_phones: Set[str] = set()

    def resolve(self, df: pd.DataFrame, sheet: SheetMapping) -> EntityDiscovery:
        """Create customers for ``df`` when the sheet asks for customer checks.

        Raises:
            BoundaryError: when the lookup or insert call fails.
        """

        if not sheet.check_customer:
            return EntityDiscovery()
        collected = collect_customers(df, sheet.phone_column, sheet.customer_name_column, sheet.date_column)
        unseen = [p for p in collected if p not in self._known_phones]
        existing = self.backend.lookup_existing_customers(unseen) if unseen else []
        self._known_phones.update(normalize_phone(p) for p in existing)

        to_insert = [collected[p] for p in unseen if p not in self._known_phones]
        if to_insert:
            self.backend.insert_customers(to_insert)
            logger.info("Created %d new customers", len(to_insert))
        self._known_phones.update(stub.customer_phone for stub in to_insert)
        return EntityDiscovery(new_customers=to_insert)
