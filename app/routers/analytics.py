"""
Analytics router.

GET /analytics/emotions?period=day|week|month|all&region=&date=YYYY-MM-DD
GET /analytics/regions?period=&date=&limit=
GET /analytics/realtime?region=
"""
from __future__ import annotations

from datetime import date as date_type, datetime, time, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.core.errors import CheckInValidationError
from app.schemas.analytics import (
    EmotionSummaryResponse,
    RealtimeStatsResponse,
    RegionSummaryOut,
    RegionSummaryResponse,
)
from app.schemas.common import ERROR_RESPONSES
from app.services import geo
from app.services.analytics import Period, period_bounds
from app.services.container import ServiceContainer, get_container

router = APIRouter(prefix="/analytics", tags=["analytics"])


def _region(region: Optional[str]) -> Optional[str]:
    if region is None:
        return None
    bucket = geo.normalize_region_code(region)
    if bucket is None:
        raise CheckInValidationError("region", "region must look like 'US' or 'US-CA'.")
    return bucket


def _at(day: Optional[date_type]) -> Optional[datetime]:
    if day is None:
        return None
    return datetime.combine(day, time(12, 0), tzinfo=timezone.utc)


@router.get(
    "/emotions",
    response_model=EmotionSummaryResponse,
    responses=ERROR_RESPONSES,
    summary="Emotion counts and average intensity for a period",
)
def get_emotion_summary(
    period: Period = Query(default=Period.day),
    region: Optional[str] = Query(default=None),
    date: Optional[date_type] = Query(default=None, description="Any day inside the period (UTC); defaults to today."),
    container: ServiceContainer = Depends(get_container),
):
    summary = container.analytics.emotion_summary(period, _region(region), _at(date))
    return EmotionSummaryResponse.model_validate(summary)


@router.get(
    "/regions",
    response_model=RegionSummaryResponse,
    responses=ERROR_RESPONSES,
    summary="Dominant emotion per region for a period",
)
def get_region_summaries(
    period: Period = Query(default=Period.day),
    date: Optional[date_type] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    container: ServiceContainer = Depends(get_container),
):
    at = _at(date) or container.clock()
    regions = container.analytics.region_summaries(period, at, limit)
    _, _, key = period_bounds(period, at)
    return RegionSummaryResponse(
        period=period.value,
        key=key,
        regions=[RegionSummaryOut.model_validate(r) for r in regions],
        count=len(regions),
    )


@router.get(
    "/realtime",
    response_model=RealtimeStatsResponse,
    responses=ERROR_RESPONSES,
    summary="Check-ins in the current hour",
)
def get_realtime_stats(
    region: Optional[str] = Query(default=None),
    container: ServiceContainer = Depends(get_container),
):
    return RealtimeStatsResponse.model_validate(container.analytics.realtime(_region(region)))
