"""JSON-lines logging for the queue, with per-request trace ids."""
from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import IO, Any, Dict, Optional

_TRACE_ID: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("veo_batch_trace_id", default=None)
_HANDLER: Optional[logging.Handler] = None

# attributes every LogRecord carries; anything else came in through ``extra``
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))) | {
    "message",
    "asctime",
}


class JsonFormatter(logging.Formatter):
    """One JSON object per record: event name, level, trace id and extras."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: Dict[str, Any] = {
            "ts": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        trace_id = getattr(record, "trace_id", None) or _TRACE_ID.get()
        if trace_id:
            entry["trace_id"] = trace_id
        entry.update(_extra_fields(record))
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _STANDARD_ATTRS and not key.startswith("_") and key != "trace_id"
    }


def configure_logging(level: Optional[str] = None, *, stream: Optional[IO[str]] = None) -> logging.Handler:
    """Install the JSON handler on the root logger and apply ``level``.

    Safe to call repeatedly: the handler is installed once and later calls
    only adjust the level (explicit argument, then ``LOG_LEVEL``, then INFO).
    """

    global _HANDLER
    root = logging.getLogger()
    if _HANDLER is None:
        _HANDLER = logging.StreamHandler(stream or sys.stdout)
        _HANDLER.setFormatter(JsonFormatter())
        root.handlers.clear()
        root.addHandler(_HANDLER)
    resolved = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    root.setLevel(getattr(logging, resolved, logging.INFO))
    return _HANDLER


def get_logger(name: str) -> logging.Logger:
    if _HANDLER is None:
        configure_logging()
    return logging.getLogger(name)


def bind_trace_id(trace_id: str) -> contextvars.Token:
    return _TRACE_ID.set(trace_id)


def clear_trace_id() -> None:
    _TRACE_ID.set(None)


def log_transition(logger: logging.Logger, *, job_id: str, status: str, **details: Any) -> None:
    details = {key: value for key, value in details.items() if value is not None}
    logger.info(
        "job_transition",
        extra={"job_id": job_id, "job_status": status, "details": details or None},
    )
