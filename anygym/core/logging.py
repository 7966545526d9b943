"""
Logging for the API and workers.

Everything logs under the "anygym" logger tree. Production emits one JSON
object per line; other environments get a single readable line. The current
request id lives in a ContextVar set by RequestIdMiddleware and is stamped
onto every record, so service code never has to pass it around.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

ROOT_LOGGER = "anygym"
MAX_FIELD_CHARS = 500

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Upper bound (exclusive) in ms -> label
_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))

# Attributes every LogRecord carries; anything else came in through `extra`
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return default if rid is None else rid


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for bound, label in _LATENCY_BUCKETS:
        if latency_ms < bound:
            return label
    return ">=1000ms"


def _clip(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    return text if len(text) <= MAX_FIELD_CHARS else text[:MAX_FIELD_CHARS] + "...<truncated>"


class _ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class AnygymFormatter(logging.Formatter):
    """JSON lines when `as_json`, otherwise `ts LEVEL [logger] [rid=..] msg k=v`."""

    def __init__(self, as_json: bool):
        super().__init__()
        self.as_json = as_json

    def _fields(self, record: logging.LogRecord) -> Dict[str, Any]:
        return {
            key: value
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and key != "request_id" and value is not None
        }

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        rid = getattr(record, "request_id", None)
        fields = self._fields(record)

        if self.as_json:
            doc = {
                "timestamp": ts,
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
                "request_id": rid,
                **fields,
            }
            if record.exc_info:
                doc["exc_info"] = self.formatException(record.exc_info)
            return json.dumps(doc, default=str)

        parts = [ts, record.levelname, f"[{record.name}]"]
        if rid:
            parts.append(f"[rid={rid}]")
        parts.append(record.getMessage())
        parts.extend(f"{key}={value}" for key, value in fields.items())
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(env: str = "development") -> None:
    """Install a single stdout handler on the "anygym" logger. Safe to call repeatedly."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(AnygymFormatter(as_json=env.lower() == "production"))
    handler.addFilter(_ContextFilter())

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(logging.INFO)
    root.handlers = [handler]
    # pytest's caplog hooks the stdlib root logger
    root.propagate = True

    for noisy in ("uvicorn", "uvicorn.error"):
        logging.getLogger(noisy).propagate = False


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[int] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    exc_info: bool = False,
    extra: Optional[Dict[str, object]] = None,
) -> None:
    """Log `msg` on the "anygym" logger with clipped structured fields."""
    logger = logging.getLogger(ROOT_LOGGER)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    fields: Dict[str, Any] = {
        "request_id": request_id or get_request_id(),
        "user_id": user_id,
        "event_type": event_type,
        "error_code": error_code,
    }
    for key, value in (extra or {}).items():
        fields[key] = _clip(value)

    getattr(logger, level, logger.info)(msg, exc_info=exc_info, extra=fields)
