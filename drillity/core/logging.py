"""
Structured logging for the entitlements service.

Every record under the "drillity" logger carries the request_id of the
request being served plus whatever the caller passed as `extra=`
(actor_id, counter_key, plan_id, ...). Production renders one JSON object
per line; development renders `key=value` pairs after the message.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOGGER_NAME = "drillity"
MAX_FIELD_LENGTH = 500

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Attributes every LogRecord carries; anything else arrived via `extra=`.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    """Request id bound to the current context, if any."""
    rid = request_id_ctx_var.get()
    return default if rid is None else rid


class RequestIdFilter(logging.Filter):
    """Stamp records with the context request_id unless one was passed explicitly."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class _FieldsFormatter(logging.Formatter):
    """Shared pieces: UTC timestamp and the caller-supplied fields."""

    @staticmethod
    def timestamp(record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, timezone.utc)
        return ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    @staticmethod
    def fields(record: logging.LogRecord) -> Dict[str, Any]:
        return {
            key: value
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and key != "request_id" and value is not None
        }


class JsonFormatter(_FieldsFormatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": self.timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
            **self.fields(record),
        }
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class PrettyFormatter(_FieldsFormatter):
    def format(self, record: logging.LogRecord) -> str:
        parts = [self.timestamp(record), record.levelname, f"[{LOGGER_NAME}]"]
        rid = getattr(record, "request_id", None)
        if rid:
            parts.append(f"[rid={rid}]")
        parts.append(record.getMessage())
        parts.extend(f"{key}={value}" for key, value in self.fields(record).items())
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development", level: int = logging.INFO) -> None:
    """Install the drillity handler: JSON in production, pretty elsewhere."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers = [handler]
    logger.propagate = True

    # uvicorn keeps its own handlers; stop them double-printing through root
    for name in ("uvicorn", "uvicorn.error"):
        logging.getLogger(name).propagate = False


def _clip(value: Any, limit: int = MAX_FIELD_LENGTH) -> str:
    text = str(value)
    return text if len(text) <= limit else f"{text[:limit]}...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    counter_key: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Emit one structured event on the drillity logger.

    Free-form `extra` values are stringified and clipped so provider
    payloads and exception text cannot flood the log line.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    fields: Dict[str, Any] = {
        "request_id": request_id or get_request_id(),
        "actor_id": actor_id,
        "counter_key": counter_key,
        "event_type": event_type,
        "error_code": error_code,
    }
    for key, value in (extra or {}).items():
        fields[key] = _clip(value)

    logger.log(logging.getLevelName(level.upper()), msg, extra=fields)
