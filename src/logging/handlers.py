# src/logging/handlers.py — v2
"""Size-based rotating file handler for log files."""

from __future__ import annotations

import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path

_SIZE_UNITS = {"B": 1, "KB": 1024, "MB": 1024**2, "GB": 1024**3}
_SIZE_RE = re.compile(r"^(\d+)\s*(B|KB|MB|GB)?$", re.IGNORECASE)


def parse_size(size_str: str) -> int:
    """Parse a size like '10MB' or '512KB' into bytes.

    A bare number is taken as bytes.
    """
    match = _SIZE_RE.match(size_str.strip())
    if not match:
        raise ValueError(f"Invalid size format: {size_str!r}. Use e.g. '10MB'.")
    value = int(match.group(1))
    if value <= 0:
        raise ValueError(f"Log rotation size must be > 0: {size_str!r}")
    unit = (match.group(2) or "B").upper()
    return value * _SIZE_UNITS[unit]


def create_rotating_handler(
    log_file: str,
    rotation: str = "10MB",
    retention: int = 30,
    level: int = logging.NOTSET,
) -> RotatingFileHandler:
    """Create a rotating file handler, creating the parent directory.

    Args:
        log_file: Path to log file.
        rotation: Max file size before rotation (e.g. "10MB").
        retention: Number of backup files to keep.
        level: Handler level.
    """
    if retention < 0:
        raise ValueError("retention must be >= 0")
    path = Path(log_file).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    handler = RotatingFileHandler(
        filename=str(path),
        maxBytes=parse_size(rotation),
        backupCount=retention,
        encoding="utf-8",
    )
    handler.setLevel(level)
    return handler
