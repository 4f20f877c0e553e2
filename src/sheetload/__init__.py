"""Spreadsheet ingestion pipeline: queue files, validate columns, upload in batches."""

from .config import ColumnMapping, PipelineSettings, SheetMapping, load_settings
from .errors import (
    BoundaryError,
    ConfigError,
    EmptyFileError,
    InvalidTransitionError,
    LedgerError,
    SheetLoadError,
    UnsupportedFileError,
)
from .memory_backend import InMemoryBackend
from .models import FileStatus, FileTask, RunSummary, SourceFile
from .orchestrator import PipelineOrchestrator

__version__ = "0.3.0"

__all__ = [
    "BoundaryError",
    "ColumnMapping",
    "ConfigError",
    "EmptyFileError",
    "FileStatus",
    "FileTask",
    "InMemoryBackend",
    "InvalidTransitionError",
    "LedgerError",
    "PipelineOrchestrator",
    "PipelineSettings",
    "RunSummary",
    "SheetLoadError",
    "SheetMapping",
    "SourceFile",
    "UnsupportedFileError",
    "load_settings",
]
