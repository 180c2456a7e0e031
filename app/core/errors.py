"""
Custom exception hierarchy for MoodPulse.

Rule: every HTTP error has a machine-readable `code` string so clients
can branch on it without parsing English messages.

Only validation, rate-limiting and durable-commit failures ever reach the
caller. Everything downstream of the durable commit is absorbed and logged
as a degraded-mode event.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette import status

from app.core.logging import get_logger, request_id_var

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Exception classes
# ---------------------------------------------------------------------------

class MoodPulseException(Exception):
    """Base class for all application-level errors."""
    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.message = message
        self.details = details or {}
        self.headers = headers or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class CheckInValidationError(MoodPulseException):
    """Malformed check-in input. Never retried."""
    http_status = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"

    def __init__(self, field: str, message: str):
        super().__init__(
            message=message,
            details={"errors": [{"field": field, "message": message, "type": "value_error"}]},
        )
        self.field = field


class RateLimitedError(MoodPulseException):
    http_status = status.HTTP_429_TOO_MANY_REQUESTS
    code = "RATE_LIMITED"

    def __init__(self, next_allowed_at: datetime, retry_after_seconds: int | None = None):
        headers = {}
        if retry_after_seconds is not None:
            headers["Retry-After"] = str(max(retry_after_seconds, 0))
        super().__init__(
            message="You can only check in once per day.",
            details={"nextAllowedAt": next_allowed_at.isoformat()},
            headers=headers,
        )
        self.next_allowed_at = next_allowed_at

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["nextAllowedAt"] = self.next_allowed_at.isoformat()
        return payload


class TransientStoreError(MoodPulseException):
    """Timeout / connection loss on a backing store. Retry-worthy."""
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "STORE_UNAVAILABLE"

    def __init__(self, message: str, store: str | None = None):
        super().__init__(message=message, details={"store": store} if store else {})
        self.store = store


class CircuitOpenError(TransientStoreError):
    code = "CIRCUIT_OPEN"

    def __init__(
        self,
        circuit: str,
        next_attempt_at: datetime | None = None,
        retry_in_seconds: float | None = None,
    ):
        super().__init__(message=f"Circuit '{circuit}' is open.", store=circuit)
        self.circuit = circuit
        self.next_attempt_at = next_attempt_at
        self.retry_in_seconds = retry_in_seconds
        if next_attempt_at is not None:
            self.details["nextAttemptAt"] = next_attempt_at.isoformat()


class ServiceUnavailableError(MoodPulseException):
    """The primary durable store cannot be reached; the client should retry later."""
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "SERVICE_UNAVAILABLE"

    def __init__(self, message: str, retry_after_seconds: int):
        super().__init__(
            message=message,
            details={"retry_after_seconds": retry_after_seconds, "transient": True},
            headers={"Retry-After": str(retry_after_seconds)},
        )
        self.retry_after_seconds = retry_after_seconds


class PersistenceFailedError(MoodPulseException):
    """The durable commit failed for a reason retrying will not fix."""
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "PERSISTENCE_FAILED"

    def __init__(self, message: str):
        super().__init__(message=message, details={"transient": False})


class AdminAuthError(MoodPulseException):
    http_status = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"

    def __init__(self):
        super().__init__(message="A valid X-Admin-Token header is required.")


class CircuitNotFoundError(MoodPulseException):
    http_status = status.HTTP_404_NOT_FOUND
    code = "CIRCUIT_NOT_FOUND"

    def __init__(self, name: str):
        super().__init__(message=f"No circuit named '{name}'.", details={"circuit": name})


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------

async def moodpulse_exception_handler(request: Request, exc: MoodPulseException) -> JSONResponse:
    content = exc.to_dict()
    if exc.http_status >= 500:
        content["request_id"] = request_id_var.get("")
    return JSONResponse(
        status_code=exc.http_status,
        content=content,
        headers=exc.headers or None,
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Return structured 400 with machine-readable field errors."""
    field_errors = []
    for error in exc.errors():
        field_errors.append({
            "field": ".".join(str(loc) for loc in error["loc"] if loc != "body"),
            "message": error["msg"],
            "type": error["type"],
        })
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "code": "VALIDATION_ERROR",
            "message": "Request validation failed.",
            "details": {"errors": field_errors},
        },
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled exception on %s %s",
        request.method,
        request.url.path,
        exc_info=exc,
        extra={"action": "request_error"},
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "code": "INTERNAL_ERROR",
            "message": "An unexpected error occurred.",
            "request_id": request_id_var.get(""),
        },
    )
