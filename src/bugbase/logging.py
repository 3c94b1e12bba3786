"""Structured JSON logging for bugbase.

Every record under the ``bugbase`` logger lands as one JSON line in
``.bugbase/bugbase.log`` (rotated at 5MB, 3 backups). Realtime and
dispatch code attach context either through ``extra=`` or through a
``ContextLogger`` bound to an event or a live session; the formatter
lifts the known context keys to the top level and groups the numeric
ones under ``metrics``.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import MutableMapping
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

LOG_FILENAME = "bugbase.log"
_MAX_BYTES = 5 * 1024 * 1024
_BACKUP_COUNT = 3
_setup_lock = threading.Lock()

# Who and what a record is about.
CONTEXT_FIELDS = ("event_id", "event", "actor", "bug_id", "project_id", "session", "subject", "room")
# Counters and timings, nested under "metrics".
METRIC_FIELDS = ("recipients", "delivered", "dropped", "duration_ms")


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        metrics = {key: getattr(record, key) for key in METRIC_FIELDS if getattr(record, key, None) is not None}
        if metrics:
            entry["metrics"] = metrics
        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            entry["exception"] = {"type": type(exc).__name__, "message": str(exc)}
        return json.dumps(entry, default=str)


class ContextLogger(logging.LoggerAdapter[logging.Logger]):
    """Adapter that stamps bound context onto every record it emits.

    Per-call ``extra=`` values win over bound ones, so a session-bound
    logger can still name the room a single message concerns.
    """

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**(self.extra or {}), **(kwargs.get("extra") or {})}
        return msg, kwargs

    def bind(self, **context: Any) -> ContextLogger:
        return ContextLogger(self.logger, {**(self.extra or {}), **context})


def context_logger(name: str, **context: Any) -> ContextLogger:
    """Return a logger for *name* carrying *context* on every record."""
    return ContextLogger(logging.getLogger(name), context)


def _file_handlers(logger: logging.Logger) -> list[RotatingFileHandler]:
    return [h for h in logger.handlers if isinstance(h, RotatingFileHandler)]


def setup_logging(bugbase_dir: Path, *, level: int = logging.INFO) -> logging.Logger:
    """Attach the JSONL file handler for *bugbase_dir* to the ``bugbase`` logger.

    Repeat calls for the same directory (symlinks resolved by path) are
    no-ops; a call for a different directory moves the log there.
    """
    logger = logging.getLogger("bugbase")
    log_path = bugbase_dir / LOG_FILENAME
    target = os.path.abspath(str(log_path))

    with _setup_lock:
        stale = [h for h in _file_handlers(logger) if h.baseFilename != target]
        for handler in stale:
            logger.removeHandler(handler)
            handler.close()
        if not _file_handlers(logger):
            handler = RotatingFileHandler(str(log_path), maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT)
            handler.setFormatter(JsonLineFormatter())
            logger.addHandler(handler)
        logger.setLevel(level)
    return logger
