# src/logging/logger.py — v2
"""Logger factory with JSON and text formatters.

Both formatters read the current run context (run_id, fingerprint, stage)
through ContextFilter, which copies it onto every record.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, TextIO

from geocopy.logging.context import get_context

if TYPE_CHECKING:
    from geocopy.config.settings import Settings

ROOT_LOGGER = "geocopy"
_CONTEXT_FIELDS = ("run_id", "fingerprint", "stage")


class ContextFilter(logging.Filter):
    """Copy the current run context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = get_context()
        for name in _CONTEXT_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, getattr(ctx, name))
        return True


def _record_context(record: logging.LogRecord) -> dict[str, Any]:
    return {
        name: getattr(record, name)
        for name in _CONTEXT_FIELDS
        if getattr(record, name, None) is not None
    }


def _record_time(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": _record_time(record).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = _record_context(record) or get_context().as_dict()
        if context:
            log_entry["context"] = context

        # Extra data passed via logger.info(..., extra={"data": ...})
        data = getattr(record, "data", None)
        if data:
            log_entry["data"] = data

        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class TextFormatter(logging.Formatter):
    """Human-readable text formatter for development."""

    def format(self, record: logging.LogRecord) -> str:
        context = _record_context(record) or get_context().as_dict()
        parts = [
            _record_time(record).strftime("%Y-%m-%d %H:%M:%S"),
            f"[{record.levelname:8s}]",
            record.name,
        ]
        if context.get("run_id"):
            parts.append(f"[{context['run_id'][:8]}]")
        if context.get("stage"):
            parts.append(f"({context['stage']})")
        parts.append(f"- {record.getMessage()}")
        line = " ".join(parts)
        if record.exc_info and record.exc_info[1] is not None:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the package root. Configuration is applied by setup_logging()."""
    if name == ROOT_LOGGER or name.startswith(f"{ROOT_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def setup_logging(
    level: str = "INFO",
    log_format: str = "json",
    log_file: str | None = None,
    rotation: str = "10MB",
    retention: int = 30,
    stream: TextIO | None = None,
) -> logging.Logger:
    """Configure the package root logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format ("json" or "text").
        log_file: Path to log file (None = console only).
        rotation: Max file size before rotation (e.g. "10MB").
        retention: Number of rotated files to keep.
        stream: Console stream; stderr by default so stdout stays clean
            for command output and SSE frames.
    """
    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Remove existing handlers to avoid duplicates on re-init
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    formatter: logging.Formatter
    if log_format == "json":
        formatter = JsonFormatter()
    else:
        formatter = TextFormatter()
    context_filter = ContextFilter()

    console_handler = logging.StreamHandler(stream or sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(context_filter)
    root_logger.addHandler(console_handler)

    if log_file:
        from geocopy.logging.handlers import create_rotating_handler

        file_handler = create_rotating_handler(
            str(log_file), rotation=rotation, retention=retention
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(context_filter)
        root_logger.addHandler(file_handler)

    return root_logger


def setup_logging_from_settings(
    settings: Settings, level: str | None = None
) -> logging.Logger:
    """setup_logging() driven by Settings; level overrides settings.log_level."""
    return setup_logging(
        level=level or settings.log_level,
        log_format=settings.log_format,
        log_file=str(settings.log_file) if settings.log_file else None,
        rotation=settings.log_rotation,
        retention=settings.log_retention,
    )
