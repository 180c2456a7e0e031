"""
One accepted check-in per identity per rolling window.

Public API
----------
RateLimiter.check_and_reserve(identity_id)     → RateDecision
RateLimiter.commit(identity_id, accepted_at)   → datetime (next allowed)
RateLimiter.release(identity_id, token)

Reservation is atomic at the storage layer: a conditional INSERT, or an
UPDATE guarded by `expires_at <= now` when a stale row exists. Exactly one of
several concurrent callers for the same identity gets the slot.

When the durable store (or its circuit) fails, the bounded in-process
`BoundedWindowCache` becomes the authority. If that fails too the limiter
fails open. Both degradations are logged.
"""
from __future__ import annotations

import math
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.core.clock import Clock, as_utc, utcnow
from app.core.logging import get_logger, log_degraded
from app.core.resilience import CircuitBreaker
from app.models.rate_limit import RateLimit

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    next_allowed_at: datetime
    degraded: bool = False
    token: Optional[str] = None

    def retry_after_seconds(self, now: datetime) -> int:
        return max(int(math.ceil((self.next_allowed_at - now).total_seconds())), 0)


# ---------------------------------------------------------------------------
# Durable store
# ---------------------------------------------------------------------------

class SqlRateLimitStore:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def reserve(
        self,
        identity_id: str,
        now: datetime,
        window: timedelta,
        token: Optional[str] = None,
        _retry: bool = True,
    ) -> Optional[datetime]:
        """Claim the window for `identity_id`.

        Returns None when the slot was claimed, otherwise the `expires_at` of
        the window that is still running. Calling again with the same `token`
        after an attempt whose outcome was lost returns None if that attempt
        did claim the slot.
        """
        expires_at = now + window
        with self._session_factory() as db:
            db.add(RateLimit(
                identity_id=identity_id,
                accepted_count=1,
                window_start=now,
                expires_at=expires_at,
                reservation_id=token,
            ))
            try:
                db.commit()
                return None
            except IntegrityError:
                db.rollback()

            result = db.execute(
                update(RateLimit)
                .where(RateLimit.identity_id == identity_id, RateLimit.expires_at <= now)
                .values(
                    accepted_count=RateLimit.accepted_count + 1,
                    window_start=now,
                    expires_at=expires_at,
                    reservation_id=token,
                )
            )
            db.commit()
            if result.rowcount == 1:
                return None

            current = db.execute(
                select(RateLimit.expires_at, RateLimit.reservation_id)
                .where(RateLimit.identity_id == identity_id)
            ).first()
            if current is None:
                # Released between statements; claim it again.
                if _retry:
                    return self.reserve(identity_id, now, window, token, _retry=False)
                return expires_at
            if token is not None and current.reservation_id == token:
                return None
            return as_utc(current.expires_at)

    def commit(self, identity_id: str, accepted_at: datetime, window: timedelta) -> None:
        with self._session_factory() as db:
            db.execute(
                update(RateLimit)
                .where(RateLimit.identity_id == identity_id)
                .values(window_start=accepted_at, expires_at=accepted_at + window)
            )
            db.commit()

    def release(self, identity_id: str, token: Optional[str] = None) -> None:
        """Drop the window. With a `token`, only a window that token claimed."""
        stmt = delete(RateLimit).where(RateLimit.identity_id == identity_id)
        if token is not None:
            stmt = stmt.where(RateLimit.reservation_id == token)
        with self._session_factory() as db:
            db.execute(stmt)
            db.commit()

    def get(self, identity_id: str) -> Optional[RateLimit]:
        with self._session_factory() as db:
            return db.get(RateLimit, identity_id)


# ---------------------------------------------------------------------------
# In-process fallback
# ---------------------------------------------------------------------------

class BoundedWindowCache:
    """identity → window expiry, capped at `capacity` entries (oldest evicted)."""

    def __init__(self, capacity: int = 10_000):
        self.capacity = capacity
        self._entries: OrderedDict[str, datetime] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _active(self, identity_id: str, now: datetime) -> Optional[datetime]:
        expires_at = self._entries.get(identity_id)
        if expires_at is None:
            return None
        if expires_at <= now:
            del self._entries[identity_id]
            return None
        return expires_at

    def _put(self, identity_id: str, expires_at: datetime) -> None:
        self._entries[identity_id] = expires_at
        self._entries.move_to_end(identity_id)
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)

    def get(self, identity_id: str, now: datetime) -> Optional[datetime]:
        with self._lock:
            return self._active(identity_id, now)

    def set(self, identity_id: str, expires_at: datetime) -> None:
        with self._lock:
            self._put(identity_id, expires_at)

    def reserve(self, identity_id: str, now: datetime, window: timedelta) -> Optional[datetime]:
        with self._lock:
            current = self._active(identity_id, now)
            if current is not None:
                return current
            self._put(identity_id, now + window)
            return None

    def discard(self, identity_id: str) -> None:
        with self._lock:
            self._entries.pop(identity_id, None)


# ---------------------------------------------------------------------------
# Limiter
# ---------------------------------------------------------------------------

class RateLimiter:
    def __init__(
        self,
        store: SqlRateLimitStore,
        breaker: CircuitBreaker,
        local: Optional[BoundedWindowCache] = None,
        window_seconds: int = 86_400,
        clock: Clock = utcnow,
    ):
        self._store = store
        self._breaker = breaker
        self._local = local if local is not None else BoundedWindowCache()
        self._window = timedelta(seconds=window_seconds)
        self._clock = clock

    @property
    def local_cache(self) -> BoundedWindowCache:
        return self._local

    def check_and_reserve(self, identity_id: str) -> RateDecision:
        now = self._clock()
        cached = self._local.get(identity_id, now)
        if cached is not None:
            return RateDecision(allowed=False, next_allowed_at=cached)

        token = str(uuid.uuid4())
        try:
            blocking = self._breaker.call(
                self._store.reserve, identity_id, now, self._window, token
            )
        except Exception as exc:
            log_degraded(logger, "rate_limit", "durable_store_unavailable", error=exc)
            return self._reserve_locally(identity_id, now)

        if blocking is not None:
            self._local.set(identity_id, blocking)
            return RateDecision(allowed=False, next_allowed_at=blocking)
        self._local.set(identity_id, now + self._window)
        return RateDecision(allowed=True, next_allowed_at=now + self._window, token=token)

    def _reserve_locally(self, identity_id: str, now: datetime) -> RateDecision:
        try:
            blocking = self._local.reserve(identity_id, now, self._window)
        except Exception as exc:
            log_degraded(logger, "rate_limit", "fallback_cache_failed_open", error=exc)
            return RateDecision(allowed=True, next_allowed_at=now + self._window, degraded=True)
        if blocking is not None:
            return RateDecision(allowed=False, next_allowed_at=blocking, degraded=True)
        return RateDecision(allowed=True, next_allowed_at=now + self._window, degraded=True)

    def commit(self, identity_id: str, accepted_at: datetime) -> datetime:
        """Start the window at the durable commit time. Returns the next allowed time."""
        next_allowed_at = accepted_at + self._window
        self._local.set(identity_id, next_allowed_at)
        try:
            self._breaker.call(self._store.commit, identity_id, accepted_at, self._window)
        except Exception as exc:
            log_degraded(logger, "rate_limit", "commit_failed", error=exc)
        return next_allowed_at

    def release(self, identity_id: str, token: Optional[str] = None) -> None:
        """Give the slot back after a durable commit that certainly did not happen."""
        self._local.discard(identity_id)
        try:
            self._breaker.call(self._store.release, identity_id, token)
        except Exception as exc:
            log_degraded(logger, "rate_limit", "release_failed", error=exc)
