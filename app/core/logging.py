"""Structured JSON logging with request / identity correlation."""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
identity_id_var: ContextVar[str] = ContextVar("identity_id", default="")


def generate_request_id() -> str:
    return uuid.uuid4().hex[:16]


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None) or request_id_var.get(""),
            "identity_id": identity_id_var.get(""),
        }
        if hasattr(record, "action"):
            log_entry["action"] = record.action
        if hasattr(record, "duration_ms"):
            log_entry["duration_ms"] = record.duration_ms
        if hasattr(record, "context"):
            log_entry["context"] = record.context
        if record.exc_info and record.exc_info[1]:
            log_entry["error"] = str(record.exc_info[1])
            log_entry["error_type"] = type(record.exc_info[1]).__name__
        return json.dumps(log_entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("kafka").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_degraded(
    logger: logging.Logger,
    component: str,
    reason: str,
    error: BaseException | None = None,
    **context: Any,
) -> None:
    """Emit a DegradedModeEvent: a non-fatal failure absorbed by the service."""
    payload: dict[str, Any] = {"component": component, "reason": reason, **context}
    if error is not None:
        payload["error"] = str(error)
        payload["error_type"] = type(error).__name__
    logger.warning(
        "degraded mode: %s (%s)",
        component,
        reason,
        extra={"action": "degraded_mode", "context": payload},
    )
