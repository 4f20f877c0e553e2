"""Ingestion boundary: the calls the pipeline makes to the managed backend."""
from __future__ import annotations

import json
import logging
import os
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

import numpy as np
import requests

from .config import BackendSettings, ColumnMapping, SheetMapping, parse_column_mappings, parse_sheet_mapping
from .errors import BoundaryError, ConfigError
from .models import BatchResult, CustomerStub


logger = logging.getLogger(__name__)


class Backend(Protocol):
    """Operations consumed from the backend, all request/response."""

    def lookup_existing_customers(self, phones: Sequence[str]) -> List[str]: ...

    def insert_customers(self, customers: Sequence[CustomerStub]) -> None: ...

    def lookup_active_sheet_mappings(self) -> List[SheetMapping]: ...

    def lookup_column_mapping(self, sheet_mapping_id: str) -> List[ColumnMapping]: ...

    def submit_batch(
        self,
        sheet: SheetMapping,
        rows: List[Dict[str, Any]],
        brand_classifications: Optional[Mapping[str, str]] = None,
    ) -> BatchResult: ...

    def open_upload_log(self, payload: Dict[str, Any]) -> str: ...

    def update_upload_log(self, log_id: str, patch: Dict[str, Any]) -> None: ...

    def list_brand_types(self) -> List[Dict[str, Any]]: ...

    def run_post_ingest_maintenance(self) -> None: ...

    def keep_alive(self) -> None: ...


def chunked(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def json_default(value: Any) -> Any:
    """Serializer for values pandas leaves in row records."""

    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return None if np.isnan(value) else float(value)
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def classification_payload(brand_classifications: Optional[Mapping[str, str]]) -> Optional[List[Dict[str, str]]]:
    if not brand_classifications:
        return None
    return [{"brand_name": name, "brand_type_id": type_id} for name, type_id in brand_classifications.items()]


def _error_text(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("error", "message", "msg", "hint"):
            if body.get(key):
                return str(body[key])
    text = (response.text or "").strip()
    return text or f"HTTP {response.status_code}"


class RestBackend:
    """Backend client speaking the PostgREST / edge-function HTTP API."""

    def __init__(
        self,
        settings: BackendSettings,
        session: Optional[requests.Session] = None,
        keepalive_session: Optional[requests.Session] = None,
    ) -> None:
        if not settings.base_url:
            raise ConfigError("backend.base_url is required for the REST backend")
        self.settings = settings
        self.base_url = settings.base_url.rstrip("/")
        self.session = session or requests.Session()
        # keep_alive runs on the heartbeat thread; sessions are not shared across threads
        self.keepalive_session = keepalive_session or requests.Session()
        api_key = os.environ.get(settings.api_key_env, "")
        token = os.environ.get(settings.access_token_env, "") if settings.access_token_env else ""
        if not api_key:
            logger.warning("[WARNING] %s is not set; backend calls will be unauthenticated", settings.api_key_env)
        auth_headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {token or api_key}",
            "Content-Type": "application/json",
        }
        self.session.headers.update(auth_headers)
        self.keepalive_session.headers.update(auth_headers)

    # -- transport ---------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[requests.Session] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        data = json.dumps(body, default=json_default) if body is not None else None
        try:
            response = (session or self.session).request(
                method,
                url,
                params=params,
                data=data,
                headers=headers,
                timeout=self.settings.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise BoundaryError(f"{method} {path} failed: {exc}") from exc
        if not response.ok:
            raise BoundaryError(_error_text(response), status_code=response.status_code)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise BoundaryError(f"{method} {path} returned a non-JSON body") from exc

    @staticmethod
    def _in_filter(values: Sequence[str]) -> str:
        quoted = ",".join('"' + str(v).replace('"', '\\"') + '"' for v in values)
        return f"in.({quoted})"

    # -- customers ---------------------------------------------------------

    def lookup_existing_customers(self, phones: Sequence[str]) -> List[str]:
        found: List[str] = []
        unique = list(dict.fromkeys(p for p in phones if p))
        for chunk in chunked(unique, self.settings.lookup_chunk_size):
            rows = self._request(
                "GET",
                "/rest/v1/customers",
                params={"select": "customer_phone", "customer_phone": self._in_filter(chunk)},
            )
            found.extend(str(r["customer_phone"]) for r in rows or [] if r.get("customer_phone"))
        return found

    def insert_customers(self, customers: Sequence[CustomerStub]) -> None:
        records = [c.to_record() for c in customers]
        for chunk in chunked(records, self.settings.lookup_chunk_size):
            self._request("POST", "/rest/v1/customers", body=list(chunk), headers={"Prefer": "return=minimal"})

    # -- configuration -----------------------------------------------------

    def lookup_active_sheet_mappings(self) -> List[SheetMapping]:
        rows = self._request("GET", "/rest/v1/excel_sheets", params={"select": "*", "status": "eq.active"})
        return [parse_sheet_mapping(r) for r in rows or []]

    def lookup_column_mapping(self, sheet_mapping_id: str) -> List[ColumnMapping]:
        rows = self._request(
            "GET",
            "/rest/v1/excel_column_mappings",
            params={"select": "excel_column,table_column,data_type,is_pk", "sheet_id": f"eq.{sheet_mapping_id}"},
        )
        return parse_column_mappings(rows or [])

    def list_brand_types(self) -> List[Dict[str, Any]]:
        rows = self._request("GET", "/rest/v1/brand_types", params={"select": "id,type_code,type_name", "order": "type_name"})
        return [dict(r) for r in rows or []]

    # -- ingestion ---------------------------------------------------------

    def submit_batch(
        self,
        sheet: SheetMapping,
        rows: List[Dict[str, Any]],
        brand_classifications: Optional[Mapping[str, str]] = None,
    ) -> BatchResult:
        body: Dict[str, Any] = {
            "sheetId": sheet.id,
            "data": rows,
            "checkBrand": sheet.check_brand,
            "checkProduct": sheet.check_product,
        }
        selections = classification_payload(brand_classifications)
        if selections:
            body["brandTypeSelections"] = selections
        payload = self._request("POST", f"/functions/v1/{self.settings.ingest_function}", body=body)
        if isinstance(payload, dict) and payload.get("error"):
            raise BoundaryError(str(payload["error"]))
        return BatchResult.from_response(payload or {})

    # -- ledger ------------------------------------------------------------

    def open_upload_log(self, payload: Dict[str, Any]) -> str:
        rows = self._request(
            "POST",
            "/rest/v1/upload_logs",
            body=payload,
            headers={"Prefer": "return=representation"},
        )
        row = rows[0] if isinstance(rows, list) and rows else rows
        if not isinstance(row, dict) or not row.get("id"):
            raise BoundaryError("upload_logs insert did not return an id")
        return str(row["id"])

    def update_upload_log(self, log_id: str, patch: Dict[str, Any]) -> None:
        self._request(
            "PATCH",
            "/rest/v1/upload_logs",
            params={"id": f"eq.{log_id}"},
            body=patch,
            headers={"Prefer": "return=minimal"},
        )

    # -- housekeeping ------------------------------------------------------

    def run_post_ingest_maintenance(self) -> None:
        if not self.settings.maintenance_rpc:
            return
        self._request("POST", f"/rest/v1/rpc/{self.settings.maintenance_rpc}", body={})

    def keep_alive(self) -> None:
        self._request("GET", "/auth/v1/user", session=self.keepalive_session)
