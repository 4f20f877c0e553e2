"""Unified logging utilities for sheetload.

Two loggers are used throughout the pipeline:
  - a system logger (``system.log``) with timestamps and levels
  - a user-readable logger (``user_readable.log``) for progress lines and the
    final run summary

If a file handler cannot be attached the logger keeps its console handler.
"""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Dict, Optional


SYSTEM_FMT = "[%(asctime)s] [%(levelname)s] %(message)s"
HUMAN_FMT = "%(message)s"

LOGGER_ROOT = "sheetload"
USER_LOGGER_NAME = "sheetload.user"


def _logging_block(config: Optional[dict]) -> dict:
    return (config or {}).get("logging", {}) or {}


def _ensure_logs_dir(config: Optional[dict]) -> Optional[Path]:
    logs_dir = _logging_block(config).get("logs_dir")
    if not logs_dir:
        return None
    path = Path(logs_dir).expanduser().resolve()
    path.mkdir(parents=True, exist_ok=True)
    return path


def _safe_add_file_handler(logger: logging.Logger, path: Path, fmt: str, level: int) -> None:
    try:
        fh = logging.FileHandler(path, encoding="utf-8")
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(fmt))
        logger.addHandler(fh)
    except OSError as exc:  # pragma: no cover - depends on filesystem state
        logger.warning("[WARNING] Failed to attach file handler %s (%s)", str(path), exc)


def _level(config: Optional[dict]) -> int:
    name = str(_logging_block(config).get("level", "INFO")).upper()
    return getattr(logging, name, logging.INFO)


def get_logger(name: str, config: Optional[dict] = None) -> logging.Logger:
    """Return a system logger with console + optional ``system.log`` handlers.

    Handlers are reset on every call so repeated initialisation does not
    duplicate output.
    """
    logger = logging.getLogger(name if name.startswith(LOGGER_ROOT) else f"{LOGGER_ROOT}.{name}")
    level = _level(config)
    logger.setLevel(level)
    logger.handlers = []

    sh = logging.StreamHandler()
    sh.setLevel(level)
    sh.setFormatter(logging.Formatter(SYSTEM_FMT))
    logger.addHandler(sh)

    logs_dir = _ensure_logs_dir(config)
    if logs_dir is not None:
        file_name = _logging_block(config).get("file_name", "system.log")
        _safe_add_file_handler(logger, logs_dir / file_name, SYSTEM_FMT, level)
    return logger


def get_user_logger(config: Optional[dict] = None) -> logging.Logger:
    """Return the user-facing logger (message-only format)."""
    logger = logging.getLogger(USER_LOGGER_NAME)
    logger.setLevel(logging.INFO)
    logger.handlers = []
    # Keep user lines out of the system handlers on the parent logger
    logger.propagate = False

    sh = logging.StreamHandler()
    sh.setLevel(logging.INFO)
    sh.setFormatter(logging.Formatter(HUMAN_FMT))
    logger.addHandler(sh)

    logs_dir = _ensure_logs_dir(config)
    if logs_dir is not None:
        _safe_add_file_handler(logger, logs_dir / "user_readable.log", HUMAN_FMT, logging.INFO)
    return logger


def start_timer(label: str) -> float:
    """Start a timer for ``label`` and return the perf counter."""
    return time.perf_counter()


def end_timer(label: str, start_time: float, timing_dict: Dict[str, float], user_logger: Optional[logging.Logger] = None) -> float:
    """Record the elapsed time for ``label`` into ``timing_dict`` and return it."""
    elapsed = time.perf_counter() - float(start_time)
    timing_dict[label] = timing_dict.get(label, 0.0) + elapsed
    if user_logger is not None:
        user_logger.info(f"{label} finished in {elapsed:.2f} seconds")
    return elapsed


def log_system_event(logger: logging.Logger, message: str) -> None:
    logger.info("[SYSTEM] %s", message)


def log_warning(logger: logging.Logger, message: str) -> None:
    logger.warning("[WARNING] %s", message)


def log_error(logger: logging.Logger, message: str) -> None:
    logger.error("[ERROR] %s", message)
