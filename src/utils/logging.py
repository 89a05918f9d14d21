"""Shared logging configuration and logger factory."""

from __future__ import annotations

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict


_PROJECT_ROOT = Path(__file__).resolve().parents[2]
_LOG_ROOT = Path(os.getenv("MEDIA_MANAGER_LOG_DIR") or _PROJECT_ROOT / "log")
_LOG_FILE_NAME = "media_manager.log"


def _record_extras(record: logging.LogRecord, ignore: set[str]) -> Dict[str, Any]:
    """Return attributes attached to ``record`` through ``extra=``."""

    standard_keys = set(logging.makeLogRecord({}).__dict__.keys()) | ignore
    return {key: value for key, value in record.__dict__.items() if key not in standard_keys}


class _StructuredFormatter(logging.Formatter):
    """Formatter that renders records as single-line JSON objects (JSONL-friendly)."""

    def format(self, record: logging.LogRecord) -> str:
        extras = _record_extras(record, {"stack_info"})

        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if extras:
            payload.update(extras)

        try:
            return json.dumps(payload, ensure_ascii=False, sort_keys=True)
        except TypeError:
            # Extra fields such as enums or exceptions are not JSON-serializable.
            safe_payload: Dict[str, Any] = {
                key: (str(value) if not isinstance(value, (str, int, float, bool, type(None))) else value)
                for key, value in payload.items()
            }
            return json.dumps(safe_payload, ensure_ascii=False, sort_keys=True)


class _ConsoleFormatter(logging.Formatter):
    """Formatter for console output that renders ``extra`` fields as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extras = _record_extras(record, {"stack_info", "asctime", "message"})

        if not extras:
            return base

        parts = [f"{key}={value!r}" for key, value in sorted(extras.items())]
        return f"{base} | " + " ".join(parts)


def _configure_root_logger() -> None:
    """Configure the root logger with console and file handlers if needed."""

    root = logging.getLogger()
    if root.handlers:
        return

    root.setLevel(os.getenv("MEDIA_MANAGER_LOG_LEVEL", "INFO").upper())

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(_ConsoleFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(console_handler)

    try:
        _LOG_ROOT.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            _LOG_ROOT / _LOG_FILE_NAME,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(_StructuredFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        root.addHandler(file_handler)
    except OSError:
        # Read-only checkouts and containers still get console logging.
        root.warning("log_file_unavailable", extra={"log_root": str(_LOG_ROOT)})


class _StructuredAdapter(logging.LoggerAdapter):
    """Adapter that merges call-site ``extra`` with the adapter's base fields."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        merged = dict(self.extra or {})
        merged.update(kwargs.get("extra") or {})
        kwargs["extra"] = merged
        return msg, kwargs


def get_logger(name: str, extra: Dict[str, Any] | None = None) -> logging.LoggerAdapter:
    """Return a structured logger adapter for the given name.

    The first call configures the root handlers. Callers can pass a base
    ``extra`` mapping (for example ``{"component": "pipeline"}``) that is
    attached to every record emitted through the returned adapter.
    """

    _configure_root_logger()
    logger = logging.getLogger(name)
    return _StructuredAdapter(logger, extra or {})


__all__ = ["get_logger"]
