"""RestBackend tests against a stub requests session."""
import json

import numpy as np
import pytest
import requests

from conftest import make_sheet
from sheetload.backend import RestBackend, classification_payload, json_default
from sheetload.config import BackendSettings
from sheetload.errors import BoundaryError
from sheetload.models import CustomerStub


class StubResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else (json.dumps(payload) if payload is not None else "")
        self.content = self.text.encode("utf-8")

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class StubSession:
    def __init__(self, responses=None, error=None):
        self.headers = {}
        self.calls = []
        self.responses = list(responses or [])
        self.error = error

    def request(self, method, url, params=None, data=None, headers=None, timeout=None):
        self.calls.append(
            {
                "method": method,
                "url": url,
                "params": params,
                "body": json.loads(data) if data else None,
                "headers": headers,
                "timeout": timeout,
            }
        )
        if self.error is not None:
            raise self.error
        return self.responses.pop(0) if self.responses else StubResponse(200, [])


def _backend(session, keepalive_session=None, **overrides):
    values = dict(kind="rest", base_url="https://example.supabase.co/", lookup_chunk_size=2)
    values.update(overrides)
    return RestBackend(BackendSettings(**values), session=session, keepalive_session=keepalive_session or StubSession())


def test_auth_headers_from_environment(monkeypatch):
    monkeypatch.setenv("SHEETLOAD_API_KEY", "anon-key")
    monkeypatch.setenv("SHEETLOAD_TOKEN", "user-jwt")
    session = StubSession()

    _backend(session, access_token_env="SHEETLOAD_TOKEN")

    assert session.headers["apikey"] == "anon-key"
    assert session.headers["Authorization"] == "Bearer user-jwt"


def test_submit_batch_posts_to_ingest_function():
    session = StubSession(
        [
            StubResponse(
                200,
                {
                    "success": True,
                    "count": 2,
                    "totalValue": 150.5,
                    "dateRange": {"from": "2024-01-01", "to": "2024-01-02"},
                    "productsUpserted": 1,
                    "brandsUpserted": 0,
                    "message": "Successfully loaded 2 records",
                },
            )
        ]
    )
    backend = _backend(session)

    result = backend.submit_batch(make_sheet(), [{"total": 100}, {"total": 50.5}], {"Acme": "bt-1"})

    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["url"] == "https://example.supabase.co/functions/v1/load-excel-data"
    assert call["body"]["sheetId"] == "sheet-sales"
    assert call["body"]["checkBrand"] is True
    assert call["body"]["brandTypeSelections"] == [{"brand_name": "Acme", "brand_type_id": "bt-1"}]
    assert call["timeout"] == 60.0
    assert result.count == 2
    assert result.total_value == 150.5
    assert result.date_from == "2024-01-01"


def test_submit_batch_parses_classification_request():
    session = StubSession([StubResponse(200, {"requiresBrandTypeSelection": True, "newBrands": [{"brand_name": "Acme"}]})])

    result = _backend(session).submit_batch(make_sheet(), [{"brand_name": "Acme"}])

    assert result.requires_brand_type_selection
    assert result.new_brands == ["Acme"]
    assert "brandTypeSelections" not in session.calls[0]["body"]


def test_http_error_becomes_boundary_error():
    session = StubSession([StubResponse(500, {"error": "relation does not exist"})])

    with pytest.raises(BoundaryError) as exc:
        _backend(session).submit_batch(make_sheet(), [{"total": 1}])

    assert exc.value.status_code == 500
    assert exc.value.message == "relation does not exist"


def test_error_payload_with_200_is_boundary_error():
    session = StubSession([StubResponse(200, {"error": "Sheet configuration not found"})])

    with pytest.raises(BoundaryError, match="Sheet configuration not found"):
        _backend(session).submit_batch(make_sheet(), [{"total": 1}])


def test_transport_error_becomes_boundary_error():
    session = StubSession(error=requests.ConnectionError("connection reset"))

    with pytest.raises(BoundaryError, match="connection reset"):
        _backend(session).lookup_active_sheet_mappings()


def test_non_json_body_is_boundary_error():
    session = StubSession([StubResponse(200, None, text="<html>gateway</html>")])

    with pytest.raises(BoundaryError):
        _backend(session).lookup_active_sheet_mappings()


def test_customer_lookup_is_chunked():
    session = StubSession(
        [
            StubResponse(200, [{"customer_phone": "0501"}]),
            StubResponse(200, []),
        ]
    )

    found = _backend(session).lookup_existing_customers(["0501", "0502", "0503", "0501"])

    assert found == ["0501"]
    assert len(session.calls) == 2
    assert session.calls[0]["params"]["customer_phone"] == 'in.("0501","0502")'
    assert session.calls[1]["params"]["customer_phone"] == 'in.("0503")'


def test_insert_customers_posts_records():
    session = StubSession([StubResponse(201, None, text="")])

    _backend(session).insert_customers([CustomerStub("0501", "Ali", "2024-01-01")])

    assert session.calls[0]["body"] == [
        {"customer_phone": "0501", "customer_name": "Ali", "creation_date": "2024-01-01", "status": "active"}
    ]


def test_sheet_and_column_mappings():
    session = StubSession(
        [
            StubResponse(200, [{"id": "s1", "sheet_code": "SALES", "sheet_name": None, "check_customer": True}]),
            StubResponse(200, [{"excel_column": "Total", "table_column": "total", "data_type": "numeric", "is_pk": False}]),
        ]
    )
    backend = _backend(session)

    sheets = backend.lookup_active_sheet_mappings()
    columns = backend.lookup_column_mapping("s1")

    assert sheets[0].sheet_code == "SALES"
    assert sheets[0].check_customer
    assert columns[0].is_numeric
    assert session.calls[1]["params"]["sheet_id"] == "eq.s1"


def test_upload_log_round_trip():
    session = StubSession([StubResponse(201, [{"id": 42}]), StubResponse(204, None, text="")])
    backend = _backend(session)

    log_id = backend.open_upload_log({"file_name": "a.xlsx", "status": "processing"})
    backend.update_upload_log(log_id, {"status": "completed"})

    assert log_id == "42"
    assert session.calls[0]["headers"] == {"Prefer": "return=representation"}
    assert session.calls[1]["method"] == "PATCH"
    assert session.calls[1]["params"] == {"id": "eq.42"}


def test_maintenance_rpc_only_when_configured():
    session = StubSession([StubResponse(200, None, text="")])

    _backend(session).run_post_ingest_maintenance()
    assert session.calls == []

    _backend(session, maintenance_rpc="refresh_sales_summary").run_post_ingest_maintenance()
    assert session.calls[0]["url"].endswith("/rest/v1/rpc/refresh_sales_summary")


def test_json_helpers():
    assert json_default(np.int64(3)) == 3
    assert json_default(np.float64("nan")) is None
    assert classification_payload({}) is None


def test_keep_alive_uses_its_own_session(monkeypatch):
    monkeypatch.setenv("SHEETLOAD_API_KEY", "anon-key")
    session = StubSession()
    keepalive_session = StubSession()
    backend = _backend(session, keepalive_session=keepalive_session)

    backend.keep_alive()

    assert session.calls == []
    assert keepalive_session.calls[0]["method"] == "GET"
    assert keepalive_session.calls[0]["url"] == "https://example.supabase.co/auth/v1/user"
    assert keepalive_session.headers["apikey"] == "anon-key"
