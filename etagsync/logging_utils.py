"""Logging helpers for etagsync.

Sync passes log their outcome with structured fields (``source_id``,
``token``, ``state``, ``outcome``...) passed through ``extra=``. The text log
keeps the human-readable message; the JSON-lines log carries those fields
under ``"extra"`` so a pass can be traced per source.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys
from typing import Union

LOG_SUBPATH = Path("logs") / "etagsync.log"
STRUCTURED_LOG_SUBPATH = Path("logs") / "etagsync.jsonl"
MAX_BYTES = 5 * 1024 * 1024  # 5 MB per log segment
BACKUP_COUNT = 3
REPO_ROOT = Path(__file__).resolve().parent.parent
FALLBACK_ROOT = REPO_ROOT / ".etagsync_runtime"
TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Attributes every LogRecord carries; anything else came in through ``extra=``.
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def _extra_fields(record: logging.LogRecord) -> dict:
    """Return the ``extra=`` fields attached to ``record``."""
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with ``extra=`` fields under ``"extra"``."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        fields = _extra_fields(record)
        if fields:
            payload["extra"] = fields
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(
    home_dir: Path,
    level: Union[str, int] = logging.WARNING,
    structured: bool = True,
) -> Path:
    """Route the ``etagsync`` logger to the console and to files under ``home_dir``.

    Calling it again replaces the previous handlers. Returns the text log path.
    """
    text_formatter = logging.Formatter(TEXT_FORMAT)
    log_path = _writable_path(home_dir, LOG_SUBPATH)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(text_formatter)
    handlers = [_rotating_handler(log_path, text_formatter), console_handler]
    if structured:
        json_path = _writable_path(home_dir, STRUCTURED_LOG_SUBPATH)
        handlers.append(_rotating_handler(json_path, JSONFormatter()))

    logger = logging.getLogger("etagsync")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(_resolve_level(level))
    for handler in handlers:
        logger.addHandler(handler)
    logger.propagate = False
    return log_path


def _resolve_level(level: Union[str, int]) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.WARNING)
    return int(level)


def _rotating_handler(path: Path, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8")
    handler.setFormatter(formatter)
    return handler


def _writable_path(home_dir: Path, subpath: Path) -> Path:
    """Place ``subpath`` under ``home_dir``, or under FALLBACK_ROOT if that is not writable."""
    target = home_dir / subpath
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        return target
    except PermissionError:
        fallback = FALLBACK_ROOT / subpath
        fallback.parent.mkdir(parents=True, exist_ok=True)
        print(
            f"Unable to write logs under '{home_dir}'; falling back to '{fallback.parent}'.",
            file=sys.stderr,
        )
        return fallback


__all__ = [
    "FALLBACK_ROOT",
    "JSONFormatter",
    "LOG_SUBPATH",
    "STRUCTURED_LOG_SUBPATH",
    "setup_logging",
]
