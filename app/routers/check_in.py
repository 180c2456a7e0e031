"""
Check-in router.

POST /check-in           submit today's check-in
GET  /check-in/streak    consecutive-day streak for the calling device
GET  /check-in/history   recent check-ins, newest first, cursor-paginated

The caller is identified by the `X-Device-ID` header. A missing or malformed
id on submit gets a freshly minted one, returned in the same header.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Response, status

from app.core.errors import CheckInValidationError
from app.schemas.check_in import (
    CheckInRequest,
    CheckInResponse,
    HistoryItemOut,
    HistoryResponse,
    StreakResponse,
)
from app.schemas.common import ERROR_RESPONSES, ErrorResponse, RateLimitedResponse
from app.services.check_in import CheckInSubmission
from app.services.container import ServiceContainer, get_container
from app.services.identity import is_valid_identity

router = APIRouter(prefix="/check-in", tags=["check-in"])


def _require_identity(device_id: Optional[str]) -> str:
    if not is_valid_identity(device_id):
        raise CheckInValidationError(
            "X-Device-ID", "X-Device-ID header must be 8-128 characters of letters, digits, '-' or '_'."
        )
    return device_id


@router.post(
    "",
    response_model=CheckInResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit today's check-in",
    responses={
        **ERROR_RESPONSES,
        429: {"model": RateLimitedResponse, "description": "Already checked in within the window"},
        503: {"model": ErrorResponse, "description": "Durable store unavailable; see Retry-After"},
    },
)
def submit_check_in(
    body: CheckInRequest,
    response: Response,
    container: ServiceContainer = Depends(get_container),
    x_device_id: Optional[str] = Header(default=None),
    x_timezone: Optional[str] = Header(default=None),
    accept_language: Optional[str] = Header(default=None),
    user_agent: Optional[str] = Header(default=None),
):
    result = container.check_in_service.submit(CheckInSubmission(
        emotion=body.emotion,
        intensity=body.intensity,
        note=body.note,
        latitude=body.latitude,
        longitude=body.longitude,
        region=body.region,
        timestamp=body.timestamp,
        device_id=x_device_id,
        timezone=x_timezone,
        accept_language=accept_language,
        user_agent=user_agent,
    ))
    response.headers["X-Device-ID"] = result.identity_id
    return CheckInResponse(
        id=result.id,
        emotion=result.emotion,
        intensity=result.intensity,
        timestamp=result.timestamp,
        streak=result.streak,
        next_allowed_at=result.next_allowed_at,
        region=result.region,
    )


@router.get("/streak", response_model=StreakResponse, summary="Current streak")
def get_streak(
    container: ServiceContainer = Depends(get_container),
    x_device_id: Optional[str] = Header(default=None),
):
    identity_id = _require_identity(x_device_id)
    service = container.check_in_service
    return StreakResponse(
        streak=service.get_streak(identity_id),
        today=service.streaks.today_key(),
    )


@router.get("/history", response_model=HistoryResponse, summary="Recent check-ins")
def get_history(
    limit: int = Query(default=30, ge=1, le=100),
    before: Optional[int] = Query(default=None, ge=1, description="Cursor from a previous page."),
    container: ServiceContainer = Depends(get_container),
    x_device_id: Optional[str] = Header(default=None),
):
    identity_id = _require_identity(x_device_id)
    page = container.check_in_service.get_history(identity_id, limit=limit, before=before)
    items = [HistoryItemOut.model_validate(item) for item in page.items]
    return HistoryResponse(items=items, count=len(items), next_cursor=page.next_cursor)
