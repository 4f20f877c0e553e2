"""Exception types raised by the ingestion pipeline."""
from __future__ import annotations

from typing import Optional


class SheetLoadError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(SheetLoadError, ValueError):
    """Configuration file or backend-provided mapping is invalid."""


class EmptyFileError(SheetLoadError, ValueError):
    """The spreadsheet has no data rows after header handling."""


class UnsupportedFileError(SheetLoadError, ValueError):
    """The spreadsheet extension or content cannot be decoded."""


class BoundaryError(SheetLoadError):
    """A backend call failed (transport error or error reported by the server)."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class LedgerError(SheetLoadError):
    """Upload ledger used outside its open -> finalize lifecycle."""


class InvalidTransitionError(SheetLoadError):
    """A decision or queue mutation is not allowed in the current state."""
