"""Local emulation of the backend used for dry runs and tests.

The ingestion call mirrors the server function's contract: rows are mapped
through the sheet's column mapping, new brands are gated behind a brand type
selection, products are upserted and summary counters are returned.
"""
from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set

from .config import ColumnMapping, SheetMapping
from .errors import BoundaryError
from .models import BatchResult, CustomerStub
from .reader import normalize_date_value


logger = logging.getLogger(__name__)


@dataclass
class BrandType:
    id: str
    type_code: str
    type_name: str = ""


@dataclass
class MemoryStore:
    customers: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    brands: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    products: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    tables: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    upload_logs: Dict[str, Dict[str, Any]] = field(default_factory=dict)


def _to_number(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).replace(",", "").replace(" ", "").strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def transform_row(row: Mapping[str, Any], mappings: Sequence[ColumnMapping]) -> Dict[str, Any]:
    """Map one source row onto storage columns with type coercion."""

    out: Dict[str, Any] = {}
    for mapping in mappings:
        target = (mapping.table_column or "").strip().lower()
        if not target:
            continue
        value = row.get(mapping.excel_column)
        if value is None or value == "":
            continue
        if mapping.is_date:
            out[target] = normalize_date_value(value)
        elif mapping.is_numeric:
            out[target] = _to_number(value)
        else:
            out[target] = value if isinstance(value, str) else str(value)
    return out


class InMemoryBackend:
    """Backend held entirely in process memory."""

    def __init__(
        self,
        sheets: Sequence[SheetMapping] = (),
        column_mappings: Optional[Dict[str, Sequence[ColumnMapping]]] = None,
        brand_types: Sequence[BrandType] = (),
        existing_customers: Sequence[str] = (),
        existing_brands: Optional[Mapping[str, Optional[str]]] = None,
    ) -> None:
        self.sheets: Dict[str, SheetMapping] = {s.id: s for s in sheets}
        self.column_mappings: Dict[str, List[ColumnMapping]] = {}
        for sheet in sheets:
            if sheet.columns:
                self.column_mappings[sheet.id] = list(sheet.columns)
        for sheet_id, mappings in (column_mappings or {}).items():
            self.column_mappings[sheet_id] = list(mappings)
        self.brand_types: Dict[str, BrandType] = {bt.id: bt for bt in brand_types}
        self.store = MemoryStore()
        for phone in existing_customers:
            self.store.customers[str(phone)] = {"customer_phone": str(phone), "status": "active"}
        for name, code in (existing_brands or {}).items():
            self.store.brands[name] = {"brand_name": name, "brand_code": code, "status": "active"}

        self.submitted_batches: List[Dict[str, Any]] = []
        self.keep_alive_calls = 0
        self.maintenance_calls = 0
        self.fail_on_batch: Optional[int] = None
        self.fail_message = "Network request failed"
        self.fail_maintenance = False
        self._log_ids = itertools.count(1)

    # -- customers ---------------------------------------------------------

    def lookup_existing_customers(self, phones: Sequence[str]) -> List[str]:
        return [p for p in dict.fromkeys(phones) if p in self.store.customers]

    def insert_customers(self, customers: Sequence[CustomerStub]) -> None:
        for customer in customers:
            if customer.customer_phone in self.store.customers:
                raise BoundaryError(f'duplicate key value violates unique constraint "customers_customer_phone_key" ({customer.customer_phone})')
            self.store.customers[customer.customer_phone] = customer.to_record()

    # -- configuration -----------------------------------------------------

    def lookup_active_sheet_mappings(self) -> List[SheetMapping]:
        return [s for s in self.sheets.values() if s.is_active]

    def lookup_column_mapping(self, sheet_mapping_id: str) -> List[ColumnMapping]:
        mappings = self.column_mappings.get(sheet_mapping_id)
        if not mappings:
            raise BoundaryError("Column mappings not found", status_code=404)
        return list(mappings)

    def list_brand_types(self) -> List[Dict[str, Any]]:
        return [{"id": bt.id, "type_code": bt.type_code, "type_name": bt.type_name} for bt in self.brand_types.values()]

    # -- ingestion ---------------------------------------------------------

    def submit_batch(
        self,
        sheet: SheetMapping,
        rows: List[Dict[str, Any]],
        brand_classifications: Optional[Mapping[str, str]] = None,
    ) -> BatchResult:
        call_index = len(self.submitted_batches)
        self.submitted_batches.append(
            {
                "sheet_id": sheet.id,
                "rows": [dict(r) for r in rows],
                "brand_classifications": dict(brand_classifications or {}),
            }
        )
        if self.fail_on_batch is not None and call_index == self.fail_on_batch:
            raise BoundaryError(self.fail_message)
        if sheet.id not in self.sheets:
            raise BoundaryError("Sheet configuration not found", status_code=404)

        mappings = self.lookup_column_mapping(sheet.id)
        data = [r for r in (transform_row(row, mappings) for row in rows) if r]

        brands_upserted = 0
        products_upserted = 0
        if sheet.check_brand:
            pending = self._new_brand_names(data)
            unclassified = [b for b in pending if b not in (brand_classifications or {})]
            if unclassified:
                return BatchResult(requires_brand_type_selection=True, new_brands=unclassified)
            brands_upserted = self._create_brands(pending, brand_classifications or {})
            self._fill_brand_codes(data)
        if sheet.check_product:
            products_upserted = self._upsert_products(data)

        logger.debug("Batch %d for %s: %d rows mapped, %d brands, %d products", call_index, sheet.id, len(data), brands_upserted, products_upserted)
        table = (sheet.target_table or sheet.id).lower()
        self.store.tables.setdefault(table, []).extend(data)

        total_value = sum(_to_number(r.get("total")) or 0.0 for r in data)
        dates = sorted({str(r["created_at_date"]) for r in data if r.get("created_at_date")})
        return BatchResult(
            count=len(data),
            total_value=total_value,
            products_upserted=products_upserted,
            brands_upserted=brands_upserted,
            date_from=dates[0] if dates else None,
            date_to=dates[-1] if dates else None,
            message=f"Successfully loaded {len(data)} records",
        )

    def _new_brand_names(self, data: Sequence[Dict[str, Any]]) -> List[str]:
        names = []
        for record in data:
            name = str(record.get("brand_name") or "").strip()
            if name and name not in self.store.brands and name not in names:
                names.append(name)
        return names

    def _next_brand_code(self, type_code: str) -> str:
        count = sum(1 for b in self.store.brands.values() if str(b.get("brand_code") or "").startswith(type_code))
        return f"{type_code}-{count + 1:03d}"

    def _create_brands(self, names: Sequence[str], classifications: Mapping[str, str]) -> int:
        for name in names:
            type_id = classifications.get(name)
            brand_type = self.brand_types.get(type_id) if type_id else None
            code = self._next_brand_code(brand_type.type_code) if brand_type else None
            self.store.brands[name] = {
                "brand_name": name,
                "brand_code": code,
                "brand_type_id": type_id,
                "status": "active",
            }
        return len(names)

    def _fill_brand_codes(self, data: Sequence[Dict[str, Any]]) -> None:
        for record in data:
            name = str(record.get("brand_name") or "").strip()
            if name and not record.get("brand_code"):
                code = self.store.brands.get(name, {}).get("brand_code")
                if code:
                    record["brand_code"] = code

    def _upsert_products(self, data: Sequence[Dict[str, Any]]) -> int:
        seen: Set[str] = set()
        new_count = 0
        for record in data:
            name = record.get("product_name")
            if not name:
                continue
            key = str(record.get("product_id") or name)
            if key in seen:
                continue
            seen.add(key)
            if key not in self.store.products:
                new_count += 1
            self.store.products[key] = {
                "product_id": record.get("product_id"),
                "product_name": name,
                "product_price": record.get("unit_price"),
                "product_cost": record.get("cost_price"),
                "brand_name": record.get("brand_name"),
                "brand_code": record.get("brand_code"),
                "status": "active",
            }
        return new_count

    # -- ledger ------------------------------------------------------------

    def open_upload_log(self, payload: Dict[str, Any]) -> str:
        log_id = f"log-{next(self._log_ids)}"
        self.store.upload_logs[log_id] = dict(payload)
        return log_id

    def update_upload_log(self, log_id: str, patch: Dict[str, Any]) -> None:
        if log_id not in self.store.upload_logs:
            raise BoundaryError(f"upload log {log_id} not found", status_code=404)
        self.store.upload_logs[log_id].update(patch)

    # -- housekeeping ------------------------------------------------------

    def run_post_ingest_maintenance(self) -> None:
        self.maintenance_calls += 1
        if self.fail_maintenance:
            raise BoundaryError("maintenance job failed")

    def keep_alive(self) -> None:
        self.keep_alive_calls += 1
