"""
Trending router.

GET /trending?type=global|emotion|region|hourly&emotion=&region=&hour=&limit=
GET /trending/all?limit=
GET /trending/emotions/distribution?region=
"""
from __future__ import annotations

import re
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.core.errors import CheckInValidationError
from app.core.logging import get_logger, log_degraded
from app.schemas.common import ERROR_RESPONSES
from app.schemas.trending import (
    AllEmotionsTrendingResponse,
    EmotionDistributionResponse,
    TrendingKeywordOut,
    TrendingResponse,
)
from app.services import geo
from app.services.container import ServiceContainer, get_container
from app.services.emotions import VALID_EMOTIONS, normalize_emotion
from app.services.trending import TrendingDimension

logger = get_logger(__name__)

router = APIRouter(prefix="/trending", tags=["trending"])

HOUR_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}$")


def _out(keywords) -> list[TrendingKeywordOut]:
    return [TrendingKeywordOut.model_validate(k) for k in keywords]


@router.get("", response_model=TrendingResponse, responses=ERROR_RESPONSES, summary="Top keywords")
def get_trending(
    type: TrendingDimension = Query(default=TrendingDimension.global_),
    emotion: Optional[str] = Query(default=None, description="Required for type=emotion."),
    region: Optional[str] = Query(default=None, description="Required for type=region."),
    hour: Optional[str] = Query(default=None, description="YYYY-MM-DDTHH (UTC); defaults to the current hour."),
    limit: int = Query(default=20, ge=1, le=100),
    container: ServiceContainer = Depends(get_container),
):
    key: Optional[str] = None
    label: Optional[str] = None

    if type is TrendingDimension.emotion:
        normalized = normalize_emotion(emotion)
        if normalized is None:
            raise CheckInValidationError(
                "emotion", f"emotion must be one of: {', '.join(VALID_EMOTIONS)}."
            )
        key = label = normalized.value
    elif type is TrendingDimension.region:
        key = geo.normalize_region_code(region)
        if key is None:
            raise CheckInValidationError("region", "region must look like 'US' or 'US-CA'.")
        label = geo.region_display_name(key)
    elif type is TrendingDimension.hourly:
        if hour is not None and not HOUR_RE.match(hour):
            raise CheckInValidationError("hour", "hour must be formatted YYYY-MM-DDTHH.")
        key = hour

    keywords = container.trending.get_top(type, key, limit)
    if type is TrendingDimension.hourly and key is None:
        key = container.clock().strftime("%Y-%m-%dT%H")
    return TrendingResponse(
        type=type.value,
        key=key,
        label=label,
        keywords=_out(keywords),
        count=len(keywords),
        timestamp=container.clock(),
    )


@router.get("/all", response_model=AllEmotionsTrendingResponse, summary="Top keywords for every emotion")
def get_all_trending(
    limit: int = Query(default=10, ge=1, le=50),
    container: ServiceContainer = Depends(get_container),
):
    per_emotion = container.trending.get_all_emotions(limit)
    return AllEmotionsTrendingResponse(
        emotions={emotion: _out(keywords) for emotion, keywords in per_emotion.items()},
        timestamp=container.clock(),
    )


@router.get(
    "/emotions/distribution",
    response_model=EmotionDistributionResponse,
    responses=ERROR_RESPONSES,
    summary="Check-ins per emotion over the last 24 hours",
)
def get_emotion_distribution(
    region: Optional[str] = Query(default=None),
    container: ServiceContainer = Depends(get_container),
):
    bucket = None
    if region is not None:
        bucket = geo.normalize_region_code(region)
        if bucket is None:
            raise CheckInValidationError("region", "region must look like 'US' or 'US-CA'.")

    since = container.clock() - timedelta(hours=24)
    counts = {emotion: 0 for emotion in VALID_EMOTIONS}
    service = container.check_in_service
    try:
        counts.update(
            container.breakers.get("timeseries").call(service.timeseries.emotion_counts, since, bucket)
        )
    except Exception as exc:
        log_degraded(logger, "timeseries", "read_failed", error=exc)
    return EmotionDistributionResponse(
        region=bucket,
        since=since,
        total=sum(counts.values()),
        counts=counts,
    )
