"""
Check-in analytics over the emotion_events time series.

Public API
----------
AnalyticsService.emotion_summary(period, region_bucket, at)  → PeriodSummary
AnalyticsService.region_summaries(period, at, limit)          → list[RegionSummary]
AnalyticsService.realtime(region_bucket)                      → RealtimeStats

Periods are calendar buckets in UTC around `at` (default: now): `day`
(YYYY-MM-DD), `week` (ISO week, Monday start, YYYY-Www), `month` (YYYY-MM)
or `all`. Events are bucketed by their check-in timestamp.

Reads are best-effort: a failing store is logged and yields an empty result.
"""
from __future__ import annotations

import enum
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from app.core.clock import Clock, as_utc, utcnow
from app.core.logging import get_logger, log_degraded
from app.core.resilience import CircuitBreaker
from app.services import geo
from app.services.timeseries import SqlTimeSeriesStore

logger = get_logger(__name__)


class Period(str, enum.Enum):
    day = "day"
    week = "week"
    month = "month"
    all = "all"


def period_bounds(period: Period, at: datetime) -> tuple[Optional[datetime], Optional[datetime], str]:
    """[start, end) and display key of the `period` bucket containing `at`."""
    at = as_utc(at)
    midnight = at.replace(hour=0, minute=0, second=0, microsecond=0)
    if period is Period.day:
        return midnight, midnight + timedelta(days=1), midnight.strftime("%Y-%m-%d")
    if period is Period.week:
        year, week, weekday = at.isocalendar()
        start = midnight - timedelta(days=weekday - 1)
        return start, start + timedelta(days=7), f"{year}-W{week:02d}"
    if period is Period.month:
        start = midnight.replace(day=1)
        end = start.replace(year=start.year + 1, month=1) if start.month == 12 else start.replace(month=start.month + 1)
        return start, end, start.strftime("%Y-%m")
    return None, None, "all"


def percentage(part: int, total: int) -> int:
    if total <= 0:
        return 0
    return int(math.floor(part * 100 / total + 0.5))


@dataclass(frozen=True)
class EmotionSummary:
    emotion: str
    count: int
    percentage: int
    average_intensity: float


@dataclass(frozen=True)
class PeriodSummary:
    period: str
    key: str
    region: Optional[str]
    total: int = 0
    average_intensity: Optional[float] = None
    emotions: list[EmotionSummary] = field(default_factory=list)


@dataclass(frozen=True)
class RegionSummary:
    region: str
    label: str
    dominant_emotion: str
    dominant_count: int
    total: int
    percentage: int


@dataclass(frozen=True)
class RealtimeStats:
    hour: str
    region: Optional[str]
    total: int = 0
    emotions: dict[str, int] = field(default_factory=dict)
    last_update: Optional[datetime] = None


class AnalyticsService:
    def __init__(
        self,
        store: SqlTimeSeriesStore,
        breaker: CircuitBreaker,
        clock: Clock = utcnow,
    ):
        self._store = store
        self._breaker = breaker
        self._clock = clock

    def emotion_summary(
        self,
        period: Period = Period.day,
        region_bucket: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> PeriodSummary:
        start, end, key = period_bounds(period, at or self._clock())
        try:
            rows = self._breaker.call(self._store.emotion_stats, start, end, region_bucket)
        except Exception as exc:
            log_degraded(logger, "analytics", "emotion_summary_failed", error=exc, period=period.value)
            rows = []

        total = sum(count for _, count, _ in rows)
        intensity_sum = sum(s for _, _, s in rows)
        emotions = [
            EmotionSummary(
                emotion=emotion,
                count=count,
                percentage=percentage(count, total),
                average_intensity=round(s / count, 2),
            )
            for emotion, count, s in rows
            if count > 0
        ]
        emotions.sort(key=lambda e: (-e.count, e.emotion))
        return PeriodSummary(
            period=period.value,
            key=key,
            region=region_bucket,
            total=total,
            average_intensity=round(intensity_sum / total, 2) if total else None,
            emotions=emotions,
        )

    def region_summaries(
        self,
        period: Period = Period.day,
        at: Optional[datetime] = None,
        limit: int = 20,
    ) -> list[RegionSummary]:
        """Dominant emotion per region, busiest regions first."""
        start, end, _ = period_bounds(period, at or self._clock())
        try:
            rows = self._breaker.call(self._store.region_emotion_counts, start, end)
        except Exception as exc:
            log_degraded(logger, "analytics", "region_summary_failed", error=exc, period=period.value)
            return []

        per_region: dict[str, dict[str, int]] = defaultdict(dict)
        for region, emotion, count in rows:
            per_region[region][emotion] = count

        summaries = []
        for region, counts in per_region.items():
            total = sum(counts.values())
            dominant, dominant_count = min(counts.items(), key=lambda kv: (-kv[1], kv[0]))
            summaries.append(RegionSummary(
                region=region,
                label=geo.region_display_name(region),
                dominant_emotion=dominant,
                dominant_count=dominant_count,
                total=total,
                percentage=percentage(dominant_count, total),
            ))
        summaries.sort(key=lambda s: (-s.total, s.region))
        return summaries[:limit]

    def realtime(self, region_bucket: Optional[str] = None) -> RealtimeStats:
        """Counts for the current UTC hour."""
        now = as_utc(self._clock())
        start = now.replace(minute=0, second=0, microsecond=0)
        end = start + timedelta(hours=1)
        hour = start.strftime("%Y-%m-%dT%H")
        try:
            rows = self._breaker.call(self._store.emotion_stats, start, end, region_bucket)
            last = self._breaker.call(self._store.last_event_time, start, end, region_bucket)
        except Exception as exc:
            log_degraded(logger, "analytics", "realtime_failed", error=exc)
            return RealtimeStats(hour=hour, region=region_bucket)

        emotions = {emotion: count for emotion, count, _ in rows if count > 0}
        return RealtimeStats(
            hour=hour,
            region=region_bucket,
            total=sum(emotions.values()),
            emotions=emotions,
            last_update=as_utc(last) if last is not None else None,
        )
