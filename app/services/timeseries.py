"""Append-only analytics copy of accepted check-ins (emotion_events)."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from app.models.emotion_event import EmotionEvent


@dataclass(frozen=True)
class EmotionEventRow:
    check_in_id: str
    identity_id: str
    emotion: str
    intensity: int
    region_bucket: str
    time: datetime


class SqlTimeSeriesStore:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def insert_batch(self, rows: Sequence[EmotionEventRow]) -> int:
        if not rows:
            return 0
        with self._session_factory() as db:
            db.add_all([EmotionEvent(**asdict(row)) for row in rows])
            db.commit()
        return len(rows)

    def emotion_counts(self, since: datetime, region_bucket: str | None = None) -> dict[str, int]:
        """Check-ins per emotion since `since`, optionally for one region."""
        with self._session_factory() as db:
            q = (
                select(EmotionEvent.emotion, func.count(EmotionEvent.id))
                .where(EmotionEvent.time >= since)
                .group_by(EmotionEvent.emotion)
            )
            if region_bucket:
                q = q.where(EmotionEvent.region_bucket == region_bucket)
            return {emotion: count for emotion, count in db.execute(q)}

    def _ranged(self, q, start: datetime | None, end: datetime | None, region_bucket: str | None):
        if start is not None:
            q = q.where(EmotionEvent.time >= start)
        if end is not None:
            q = q.where(EmotionEvent.time < end)
        if region_bucket:
            q = q.where(EmotionEvent.region_bucket == region_bucket)
        return q

    def emotion_stats(
        self,
        start: datetime | None,
        end: datetime | None,
        region_bucket: str | None = None,
    ) -> list[tuple[str, int, int]]:
        """(emotion, count, intensity sum) for events in [start, end)."""
        with self._session_factory() as db:
            q = select(
                EmotionEvent.emotion,
                func.count(EmotionEvent.id),
                func.coalesce(func.sum(EmotionEvent.intensity), 0),
            ).group_by(EmotionEvent.emotion)
            q = self._ranged(q, start, end, region_bucket)
            return [(emotion, int(count), int(total)) for emotion, count, total in db.execute(q)]

    def region_emotion_counts(
        self, start: datetime | None, end: datetime | None
    ) -> list[tuple[str, str, int]]:
        """(region, emotion, count) for events in [start, end)."""
        with self._session_factory() as db:
            q = select(
                EmotionEvent.region_bucket, EmotionEvent.emotion, func.count(EmotionEvent.id)
            ).group_by(EmotionEvent.region_bucket, EmotionEvent.emotion)
            q = self._ranged(q, start, end, None)
            return [(region, emotion, int(count)) for region, emotion, count in db.execute(q)]

    def last_event_time(
        self,
        start: datetime | None,
        end: datetime | None,
        region_bucket: str | None = None,
    ) -> datetime | None:
        with self._session_factory() as db:
            q = self._ranged(select(func.max(EmotionEvent.time)), start, end, region_bucket)
            return db.scalar(q)
