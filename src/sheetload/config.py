"""Configuration models and loaders using Pydantic."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError


NUMERIC_TYPE_TOKENS = ("numeric", "integer", "decimal", "float", "double", "bigint", "real")
DATE_TYPE_TOKENS = ("timestamp", "date")


class ColumnMapping(BaseModel):
    """One spreadsheet column and where the backend stores it."""

    excel_column: str = Field(..., min_length=1, description="Header text as it appears in the file")
    table_column: str = Field("", description="Target column in the storage table")
    data_type: str = Field("text", description="Storage data type, used for coercion")
    is_pk: bool = Field(False, description="Part of the upsert key")

    @field_validator("excel_column")
    @classmethod
    def strip_header(cls, v: str) -> str:
        cleaned = str(v).strip()
        if not cleaned:
            raise ValueError("excel_column must not be blank")
        return cleaned

    @property
    def is_numeric(self) -> bool:
        dtype = (self.data_type or "").lower()
        return any(token in dtype for token in NUMERIC_TYPE_TOKENS)

    @property
    def is_date(self) -> bool:
        dtype = (self.data_type or "").lower()
        target = (self.table_column or "").lower()
        return any(token in dtype for token in DATE_TYPE_TOKENS) or target.endswith("date")


class SheetMapping(BaseModel):
    """Per file-category configuration, read-only during a run."""

    id: str = Field(..., min_length=1)
    sheet_code: str = Field("", description="Short code used to pick the mapping on the CLI")
    sheet_name: str = Field("")
    target_table: str = Field("", description="Storage location rows are loaded into")
    check_customer: bool = Field(False, description="Create unknown customers before upload")
    check_brand: bool = Field(True, description="Let the boundary detect new brands")
    check_product: bool = Field(True, description="Let the boundary upsert products")
    skip_first_row: bool = Field(False, description="First row is a title, headers are on row two")
    status: str = Field("active")
    phone_column: str = Field("customer_phone")
    customer_name_column: str = Field("customer_name")
    date_column: str = Field("created_at_date")
    value_column: str = Field("total")
    columns: List[ColumnMapping] = Field(default_factory=list, description="Inline column mapping")

    @property
    def is_active(self) -> bool:
        return str(self.status or "").strip().lower() == "active"

    @property
    def label(self) -> str:
        return self.sheet_name or self.sheet_code or self.id


class BackendSettings(BaseModel):
    kind: Literal["rest", "memory"] = Field("rest")
    base_url: Optional[str] = Field(None, description="Backend project URL")
    api_key_env: str = Field("SHEETLOAD_API_KEY", description="Env var with the API key")
    access_token_env: Optional[str] = Field(None, description="Env var with the user access token")
    timeout_seconds: float = Field(60.0, gt=0)
    ingest_function: str = Field("load-excel-data")
    maintenance_rpc: Optional[str] = Field(None)
    lookup_chunk_size: int = Field(500, ge=1)

    @model_validator(mode="after")
    def require_url_for_rest(self):
        if self.kind == "rest" and not self.base_url:
            raise ValueError("backend.base_url is required when backend.kind is 'rest'")
        return self


class UploadSettings(BaseModel):
    batch_size: int = Field(1000, ge=1, description="Rows per ingestion call")
    uploader: str = Field("sheetload", description="Identity written to the upload ledger")
    allowed_extensions: List[str] = Field(default_factory=lambda: [".xlsx", ".xlsm", ".xls", ".csv"])

    @field_validator("allowed_extensions")
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        out = []
        for ext in v:
            ext = str(ext).strip().lower()
            if not ext:
                continue
            out.append(ext if ext.startswith(".") else f".{ext}")
        if not out:
            raise ValueError("allowed_extensions must not be empty")
        return out


class HeartbeatSettings(BaseModel):
    enabled: bool = Field(True)
    interval_seconds: float = Field(240.0, gt=0)


class LoggingSettings(BaseModel):
    level: str = Field("INFO")
    logs_dir: Optional[str] = Field(None)
    file_name: str = Field("system.log")


class PipelineSettings(BaseModel):
    """Complete run configuration."""

    backend: BackendSettings = Field(default_factory=lambda: BackendSettings(kind="memory"))
    upload: UploadSettings = Field(default_factory=UploadSettings)
    heartbeat: HeartbeatSettings = Field(default_factory=HeartbeatSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    sheets: List[SheetMapping] = Field(default_factory=list)

    @model_validator(mode="after")
    def unique_sheet_ids(self):
        ids = [s.id for s in self.sheets]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"Duplicate sheet ids: {duplicates}")
        return self


def load_config(path: str | Path) -> Dict[str, Any]:
    """Load a YAML configuration file into a dict."""
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Configuration file not found: {p}")
    with open(p, "r", encoding="utf-8") as stream:
        data = yaml.safe_load(stream)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration root must be a mapping: {p}")
    return data


def validate_settings(config: Dict[str, Any]) -> PipelineSettings:
    """Validate a configuration dict.

    Raises:
        ConfigError: naming every offending key path.
    """
    try:
        return PipelineSettings(**(config or {}))
    except ValidationError as exc:
        problems = []
        for err in exc.errors():
            loc = ".".join(str(part) for part in err.get("loc", ()))
            problems.append(f"{loc or '<root>'}: {err.get('msg')}")
        raise ConfigError("Invalid configuration: " + "; ".join(problems)) from exc


def load_settings(path: str | Path) -> PipelineSettings:
    return validate_settings(load_config(path))


def parse_sheet_mapping(record: Dict[str, Any]) -> SheetMapping:
    """Build a SheetMapping from a backend row, tolerating nulls."""
    cleaned = {k: v for k, v in (record or {}).items() if v is not None}
    try:
        return SheetMapping(**cleaned)
    except ValidationError as exc:
        raise ConfigError(f"Invalid sheet mapping {record.get('id') if record else None}: {exc}") from exc


def parse_column_mappings(records: List[Dict[str, Any]]) -> List[ColumnMapping]:
    out: List[ColumnMapping] = []
    for record in records or []:
        cleaned = {k: v for k, v in record.items() if v is not None and k in ColumnMapping.model_fields}
        try:
            out.append(ColumnMapping(**cleaned))
        except ValidationError as exc:
            raise ConfigError(f"Invalid column mapping {record}: {exc}") from exc
    return out
