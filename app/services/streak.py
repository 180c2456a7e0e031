"""
Streak & history tracker.

Public API
----------
StreakTracker.record(identity_id, emotion, at, check_in_id)  → int (streak after record)
StreakTracker.get_streak(identity_id)                        → int >= 1
StreakTracker.get_history(identity_id, limit, before)        → HistoryPage

Day keys are `YYYY-MM-DD` in the configured reference timezone. A streak is
counted only when today has an entry: walk backward one calendar day at a
time, stopping at the first gap (bounded lookback).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session, sessionmaker

from app.core.clock import Clock, as_utc, utcnow
from app.db.upsert import insert_for
from app.models.streak import HistoryEntry, StreakDay


def day_key(at: datetime, tz: ZoneInfo) -> str:
    return as_utc(at).astimezone(tz).strftime("%Y-%m-%d")


@dataclass
class HistoryItem:
    id: int
    emotion: str
    day: str
    recorded_at: datetime
    check_in_id: Optional[str] = None


@dataclass
class HistoryPage:
    items: list[HistoryItem] = field(default_factory=list)
    next_cursor: Optional[int] = None


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class SqlStreakStore:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        ttl_days: int = 90,
        history_max_items: int = 100,
    ):
        self._session_factory = session_factory
        self._ttl = timedelta(days=ttl_days)
        self.history_max_items = history_max_items

    def record(
        self,
        identity_id: str,
        key: str,
        emotion: str,
        now: datetime,
        check_in_id: Optional[str] = None,
    ) -> None:
        """Upsert the day, append history and refresh TTLs in one transaction."""
        expires_at = now + self._ttl
        with self._session_factory() as db:
            db.execute(delete(StreakDay).where(
                StreakDay.identity_id == identity_id, StreakDay.expires_at <= now
            ))
            db.execute(delete(HistoryEntry).where(
                HistoryEntry.identity_id == identity_id, HistoryEntry.expires_at <= now
            ))

            stmt = insert_for(db, StreakDay).values(
                identity_id=identity_id, day_key=key, emotion=emotion, expires_at=expires_at,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[StreakDay.identity_id, StreakDay.day_key],
                set_={"emotion": stmt.excluded.emotion, "expires_at": stmt.excluded.expires_at},
            )
            db.execute(stmt)
            db.execute(
                update(StreakDay)
                .where(StreakDay.identity_id == identity_id)
                .values(expires_at=expires_at)
            )

            db.add(HistoryEntry(
                identity_id=identity_id,
                check_in_id=check_in_id,
                day_key=key,
                emotion=emotion,
                recorded_at=now,
                expires_at=expires_at,
            ))
            db.flush()
            db.execute(
                update(HistoryEntry)
                .where(HistoryEntry.identity_id == identity_id)
                .values(expires_at=expires_at)
            )

            cutoff = db.scalar(
                select(HistoryEntry.id)
                .where(HistoryEntry.identity_id == identity_id)
                .order_by(HistoryEntry.id.desc())
                .offset(self.history_max_items)
                .limit(1)
            )
            if cutoff is not None:
                db.execute(delete(HistoryEntry).where(
                    HistoryEntry.identity_id == identity_id, HistoryEntry.id <= cutoff
                ))
            db.commit()

    def active_days(self, identity_id: str, now: datetime, since_key: str) -> set[str]:
        with self._session_factory() as db:
            rows = db.scalars(
                select(StreakDay.day_key).where(
                    StreakDay.identity_id == identity_id,
                    StreakDay.expires_at > now,
                    StreakDay.day_key >= since_key,
                )
            )
            return set(rows)

    def history(
        self,
        identity_id: str,
        now: datetime,
        limit: int,
        before: Optional[int] = None,
    ) -> list[HistoryEntry]:
        with self._session_factory() as db:
            q = select(HistoryEntry).where(
                HistoryEntry.identity_id == identity_id,
                HistoryEntry.expires_at > now,
            )
            if before is not None:
                q = q.where(HistoryEntry.id < before)
            q = q.order_by(HistoryEntry.id.desc()).limit(limit)
            return list(db.scalars(q))


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------

class StreakTracker:
    def __init__(
        self,
        store: SqlStreakStore,
        clock: Clock = utcnow,
        timezone: str = "UTC",
        max_lookback_days: int = 365,
    ):
        self._store = store
        self._clock = clock
        self._tz = ZoneInfo(timezone)
        self._max_lookback = max_lookback_days

    def today_key(self) -> str:
        return day_key(self._clock(), self._tz)

    def record(
        self,
        identity_id: str,
        emotion: str,
        at: Optional[datetime] = None,
        check_in_id: Optional[str] = None,
    ) -> int:
        now = self._clock()
        key = day_key(at or now, self._tz)
        self._store.record(identity_id, key, emotion, now, check_in_id=check_in_id)
        return self.get_streak(identity_id)

    def get_streak(self, identity_id: str) -> int:
        now = self._clock()
        today = date.fromisoformat(day_key(now, self._tz))
        earliest = today - timedelta(days=self._max_lookback)
        days = self._store.active_days(identity_id, now, earliest.isoformat())

        if today.isoformat() not in days:
            return 1

        streak = 0
        cursor = today
        for _ in range(self._max_lookback):
            if cursor.isoformat() not in days:
                break
            streak += 1
            cursor -= timedelta(days=1)
        return max(streak, 1)

    def get_history(
        self,
        identity_id: str,
        limit: int = 30,
        before: Optional[int] = None,
    ) -> HistoryPage:
        limit = max(1, min(limit, self._store.history_max_items))
        rows = self._store.history(identity_id, self._clock(), limit + 1, before=before)
        items = [
            HistoryItem(
                id=row.id,
                emotion=row.emotion,
                day=row.day_key,
                recorded_at=as_utc(row.recorded_at),
                check_in_id=row.check_in_id,
            )
            for row in rows[:limit]
        ]
        next_cursor = items[-1].id if len(rows) > limit else None
        return HistoryPage(items=items, next_cursor=next_cursor)
