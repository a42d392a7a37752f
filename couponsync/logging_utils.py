"""Logging for CouponSync: a text log, an optional JSON-lines log and stderr.

Sync code attaches per-cycle context through ``extra=sync_context(...)``;
the JSON formatter lifts those fields to top-level keys so a user's cycles
can be followed with ``jq 'select(.user_id == "...")'``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys
from typing import Any, Dict, List, Optional, Union

LOG_DIR = Path("logs")
LOG_SUBPATH = LOG_DIR / "couponsync.log"
STRUCTURED_LOG_SUBPATH = LOG_DIR / "couponsync.jsonl"
MAX_BYTES = 5 * 1024 * 1024
BACKUP_COUNT = 3
REPO_ROOT = Path(__file__).resolve().parent.parent
FALLBACK_ROOT = REPO_ROOT / ".couponsync_runtime"
TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s"

CONTEXT_FIELDS = ("user_id", "entity_type", "reason", "attempt")
_OWNED = "_couponsync_owned"


def sync_context(
    user_id: Optional[str] = None,
    entity_type: Any = None,
    reason: Optional[str] = None,
    attempt: Optional[int] = None,
) -> Dict[str, Any]:
    """``extra`` mapping for a log call made on behalf of a sync cycle."""
    if isinstance(entity_type, Enum):
        entity_type = entity_type.value
    values = {"user_id": user_id, "entity_type": entity_type, "reason": reason, "attempt": attempt}
    return {key: value for key, value in values.items() if value is not None}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with sync context fields at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(
    data_dir: Path,
    level: Union[str, int] = logging.INFO,
    structured: bool = True,
    console: bool = True,
) -> Path:
    """Install CouponSync's handlers on the ``couponsync`` logger.

    Calling it again replaces the handlers it installed before, so the
    level or the structured flag can change at runtime. Returns the text
    log path, which sits under ``FALLBACK_ROOT`` when ``data_dir`` cannot
    hold a ``logs`` directory.
    """
    log_root = _writable_root(data_dir)
    log_path = log_root / LOG_SUBPATH
    text_formatter = logging.Formatter(TEXT_FORMAT)

    handlers: List[logging.Handler] = [_rotating(log_path, text_formatter)]
    if console:
        stream = logging.StreamHandler()
        stream.setFormatter(text_formatter)
        handlers.append(stream)
    if structured:
        handlers.append(_rotating(log_root / STRUCTURED_LOG_SUBPATH, JSONFormatter()))

    logger = logging.getLogger("couponsync")
    for handler in list(logger.handlers):
        if getattr(handler, _OWNED, False):
            logger.removeHandler(handler)
            handler.close()
    for handler in handlers:
        setattr(handler, _OWNED, True)
        logger.addHandler(handler)
    logger.setLevel(_resolve_level(level))
    logger.propagate = False

    # Request lines from the control API are noise next to sync logs.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    return log_path


def _rotating(path: Path, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8")
    handler.setFormatter(formatter)
    return handler


def _resolve_level(level: Union[str, int]) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return int(level)


def _writable_root(data_dir: Path) -> Path:
    try:
        (data_dir / LOG_DIR).mkdir(parents=True, exist_ok=True)
        return data_dir
    except PermissionError:
        (FALLBACK_ROOT / LOG_DIR).mkdir(parents=True, exist_ok=True)
        print(
            f"[config] Unable to write logs under '{data_dir}'; "
            f"falling back to '{FALLBACK_ROOT / LOG_DIR}'.",
            file=sys.stderr,
        )
        return FALLBACK_ROOT


__all__ = [
    "CONTEXT_FIELDS",
    "FALLBACK_ROOT",
    "JSONFormatter",
    "LOG_SUBPATH",
    "STRUCTURED_LOG_SUBPATH",
    "setup_logging",
    "sync_context",
]
