"""
Check-in persistence orchestrator.

Public API
----------
CheckInService.submit(submission)                        → CheckInResult
CheckInService.get_streak(identity_id)                   → int (1 when unknown)
CheckInService.get_history(identity_id, limit, before)   → HistoryPage
CheckInService.drain(timeout)                            → bool (all fan-outs settled)

Per submission:
  Validate → Resolve → RateCheck → Probe → DurableCommit → commit reservation
  → Fan-out (timeseries, streak, event_bus, broadcast, trending?,
    region_preference?) → Respond

Only Validate, RateCheck, Probe and DurableCommit can fail the request. A
failed probe, or a commit that certainly did not land, releases the
rate-limit reservation; nothing is fanned out. Fan-out branches are
best-effort and never delay the response beyond a short wait for the streak
value.

A commit attempt that timed out may still land. If one of the attempts did
land the check-in is accepted. If one is still running when the breaker gives
up, the outcome is unknown: the request fails with 503 but the reservation is
kept, so the identity cannot end up with two records for one window.
"""
from __future__ import annotations

import math
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.clock import Clock, as_utc, utcnow
from app.core.config import Settings
from app.core.errors import (
    CheckInValidationError,
    CircuitOpenError,
    PersistenceFailedError,
    RateLimitedError,
    ServiceUnavailableError,
)
from app.core.logging import get_logger, identity_id_var, log_degraded
from app.core.resilience import BreakerRegistry, is_transient
from app.db.upsert import insert_for
from app.models.check_in import CheckIn
from app.services import geo
from app.services.emotions import VALID_EMOTIONS, Emotion, normalize_emotion
from app.services.events import EventBus, LiveBroadcaster, stream_payload
from app.services.fanout import FanOutGroup
from app.services.identity import (
    PERSISTABLE_SOURCES,
    IdentityHints,
    IdentityResolver,
    RegionPreferenceStore,
    ResolvedIdentity,
    detect_device_type,
)
from app.services.rate_limiter import RateLimiter
from app.services.streak import HistoryPage, StreakTracker
from app.services.timeseries import EmotionEventRow, SqlTimeSeriesStore
from app.services.trending import TrendingEngine

logger = get_logger(__name__)

DATA_RETENTION = timedelta(days=365)
LIVE_TOPIC = "check-ins"


# ---------------------------------------------------------------------------
# Input / output types
# ---------------------------------------------------------------------------

@dataclass
class CheckInSubmission:
    """Raw submission as received, before validation."""
    emotion: Optional[str]
    intensity: Optional[int] = None
    note: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    region: Optional[str] = None
    timestamp: Optional[datetime] = None
    device_id: Optional[str] = None
    timezone: Optional[str] = None
    accept_language: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class ValidatedCheckIn:
    emotion: Emotion
    intensity: int
    note: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]
    region_code: Optional[str]
    occurred_at: datetime


@dataclass(frozen=True)
class CheckInResult:
    id: str
    identity_id: str
    emotion: str
    intensity: int
    timestamp: datetime
    accepted_at: datetime
    streak: int
    next_allowed_at: datetime
    region: str
    region_source: str
    identity_minted: bool = False
    rate_limit_degraded: bool = False


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_submission(
    sub: CheckInSubmission,
    now: datetime,
    note_max_length: int = 280,
    default_intensity: int = 3,
    max_future_seconds: int = 300,
    max_age_days: int = 7,
) -> ValidatedCheckIn:
    if sub.emotion is None or not str(sub.emotion).strip():
        raise CheckInValidationError("emotion", "Emotion is required.")
    emotion = normalize_emotion(sub.emotion)
    if emotion is None:
        raise CheckInValidationError(
            "emotion",
            f"Unrecognized emotion '{sub.emotion}'. Expected one of: {', '.join(VALID_EMOTIONS)}.",
        )

    intensity = default_intensity if sub.intensity is None else sub.intensity
    if isinstance(intensity, bool) or not isinstance(intensity, int):
        raise CheckInValidationError("intensity", "Intensity must be an integer.")
    if not 1 <= intensity <= 5:
        raise CheckInValidationError("intensity", "Intensity must be between 1 and 5.")

    note = sub.note.strip() if isinstance(sub.note, str) else None
    if not note:
        note = None
    elif len(note) > note_max_length:
        raise CheckInValidationError(
            "note", f"Note must be at most {note_max_length} characters."
        )

    lat, lng = sub.latitude, sub.longitude
    if (lat is None) != (lng is None):
        raise CheckInValidationError("coordinates", "Both latitude and longitude are required.")
    if lat is not None and lng is not None:
        if not (-90 <= lat <= 90) or not (-180 <= lng <= 180):
            raise CheckInValidationError("coordinates", "Coordinates are out of range.")
        if lat == 0 and lng == 0:
            raise CheckInValidationError("coordinates", "Coordinates (0, 0) are not a valid location.")
        if lat < -60 or lat > 80:
            raise CheckInValidationError("coordinates", "Polar coordinates are not supported.")

    region_code = None
    if sub.region is not None and sub.region.strip():
        region_code = geo.normalize_region_code(sub.region)
        if region_code is None:
            raise CheckInValidationError("region", "Region must look like 'US', 'US-CA' or 'GLOBAL'.")

    occurred_at = now
    if sub.timestamp is not None:
        occurred_at = as_utc(sub.timestamp)
        if occurred_at > now + timedelta(seconds=max_future_seconds):
            raise CheckInValidationError("timestamp", "Timestamp cannot be in the future.")
        if occurred_at < now - timedelta(days=max_age_days):
            raise CheckInValidationError(
                "timestamp", f"Timestamp cannot be more than {max_age_days} days old."
            )

    return ValidatedCheckIn(
        emotion=emotion,
        intensity=intensity,
        note=note,
        latitude=lat,
        longitude=lng,
        region_code=region_code,
        occurred_at=occurred_at,
    )


# ---------------------------------------------------------------------------
# Durable store
# ---------------------------------------------------------------------------

class SqlCheckInStore:
    def __init__(self, engine: Engine, session_factory: sessionmaker[Session]):
        self._engine = engine
        self._session_factory = session_factory

    def ping(self) -> None:
        with self._engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def create(self, record: CheckIn) -> str:
        """Insert `record`. Idempotent on `id`: a row an earlier attempt already
        wrote for the same record counts as success."""
        values = {
            column.key: getattr(record, column.key)
            for column in CheckIn.__table__.columns
            if getattr(record, column.key) is not None
        }
        with self._session_factory() as db:
            db.execute(
                insert_for(db, CheckIn)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["id"])
            )
            db.commit()
        return record.id

    def get(self, check_in_id: str) -> Optional[CheckIn]:
        with self._session_factory() as db:
            return db.get(CheckIn, check_in_id)

    def list_for_identity(self, identity_id: str) -> list[CheckIn]:
        with self._session_factory() as db:
            q = (
                select(CheckIn)
                .where(CheckIn.identity_id == identity_id)
                .order_by(CheckIn.accepted_at.desc())
            )
            return list(db.scalars(q))


class CommitAttempts:
    """Wraps the store's `create` and records how each attempt ended.

    The breaker abandons an attempt on timeout without stopping it, so
    "the call raised" is not the same as "nothing was written".
    """

    def __init__(self, create):
        self._create = create
        self._lock = threading.Lock()
        self._started = 0
        self._finished = 0
        self._succeeded = False

    def __call__(self, record: CheckIn) -> str:
        with self._lock:
            self._started += 1
        try:
            result = self._create(record)
        except BaseException:
            with self._lock:
                self._finished += 1
            raise
        with self._lock:
            self._finished += 1
            self._succeeded = True
        return result

    @property
    def succeeded(self) -> bool:
        with self._lock:
            return self._succeeded

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._started - self._finished


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class CheckInService:
    def __init__(
        self,
        *,
        settings: Settings,
        resolver: IdentityResolver,
        limiter: RateLimiter,
        check_ins: SqlCheckInStore,
        streaks: StreakTracker,
        trending: TrendingEngine,
        timeseries: SqlTimeSeriesStore,
        event_bus: EventBus,
        broadcaster: LiveBroadcaster,
        region_preferences: RegionPreferenceStore,
        breakers: BreakerRegistry,
        executor: ThreadPoolExecutor,
        clock: Clock = utcnow,
    ):
        self.settings = settings
        self.resolver = resolver
        self.limiter = limiter
        self.check_ins = check_ins
        self.streaks = streaks
        self.trending = trending
        self.timeseries = timeseries
        self.event_bus = event_bus
        self.broadcaster = broadcaster
        self.region_preferences = region_preferences
        self.breakers = breakers
        self._executor = executor
        self._clock = clock
        self._inflight: set[FanOutGroup] = set()
        self._inflight_lock = threading.Lock()

    # -- write path ----------------------------------------------------------

    def submit(self, sub: CheckInSubmission) -> CheckInResult:
        s = self.settings
        validated = validate_submission(
            sub,
            self._clock(),
            note_max_length=s.NOTE_MAX_LENGTH,
            default_intensity=s.DEFAULT_INTENSITY,
            max_future_seconds=s.TIMESTAMP_MAX_FUTURE_SECONDS,
            max_age_days=s.TIMESTAMP_MAX_AGE_DAYS,
        )
        identity = self.resolver.resolve(IdentityHints(
            device_id=sub.device_id,
            latitude=validated.latitude,
            longitude=validated.longitude,
            region_code=validated.region_code,
            timezone=sub.timezone,
            accept_language=sub.accept_language,
        ))
        token = identity_id_var.set(identity.identity_id)
        try:
            return self._submit(sub, validated, identity)
        finally:
            identity_id_var.reset(token)

    def _submit(
        self,
        sub: CheckInSubmission,
        validated: ValidatedCheckIn,
        identity: ResolvedIdentity,
    ) -> CheckInResult:
        identity_id = identity.identity_id
        decision = self.limiter.check_and_reserve(identity_id)
        if not decision.allowed:
            logger.info(
                "Check-in rate limited",
                extra={
                    "action": "rate_limited",
                    "context": {
                        "next_allowed_at": decision.next_allowed_at.isoformat(),
                        "degraded": decision.degraded,
                    },
                },
            )
            raise RateLimitedError(
                decision.next_allowed_at,
                retry_after_seconds=decision.retry_after_seconds(self._clock()),
            )

        database = self.breakers.get("database")
        try:
            database.call(self.check_ins.ping)
        except Exception as exc:
            self.limiter.release(identity_id, decision.token)
            logger.warning(
                "Durable store probe failed",
                exc_info=exc,
                extra={"action": "store_unavailable", "context": {"stage": "probe"}},
            )
            raise ServiceUnavailableError(
                "Check-in storage is temporarily unavailable. Please try again shortly.",
                retry_after_seconds=self._retry_after(exc),
            ) from exc

        accepted_at = self._clock()
        record = CheckIn(
            id=str(uuid.uuid4()),
            identity_id=identity_id,
            emotion=validated.emotion.value,
            intensity=validated.intensity,
            note=validated.note,
            region_bucket=identity.region_bucket,
            latitude=round(validated.latitude, 2) if validated.latitude is not None else None,
            longitude=round(validated.longitude, 2) if validated.longitude is not None else None,
            device_type=detect_device_type(sub.user_agent),
            occurred_at=validated.occurred_at,
            accepted_at=accepted_at,
            data_retention_until=accepted_at + DATA_RETENTION,
        )
        attempts = CommitAttempts(self.check_ins.create)
        try:
            database.call(attempts, record)
        except Exception as exc:
            if attempts.succeeded:
                logger.info(
                    "Timed-out commit attempt landed",
                    extra={"action": "commit_landed_late", "context": {"check_in_id": record.id}},
                )
            else:
                self._commit_failed(exc, identity_id, decision.token, attempts.in_flight)

        next_allowed_at = self.limiter.commit(identity_id, accepted_at)
        logger.info(
            "Check-in accepted",
            extra={
                "action": "check_in_accepted",
                "context": {
                    "check_in_id": record.id,
                    "emotion": record.emotion,
                    "region": record.region_bucket,
                    "region_source": identity.region_source,
                    "has_note": record.note is not None,
                },
            },
        )

        group = self._fan_out(record, identity)
        streak = group.result("streak", timeout=self.settings.STREAK_RESPONSE_WAIT_SECONDS)
        if not isinstance(streak, int):
            streak = self.get_streak(identity_id)

        return CheckInResult(
            id=record.id,
            identity_id=identity_id,
            emotion=record.emotion,
            intensity=record.intensity,
            timestamp=record.occurred_at,
            accepted_at=accepted_at,
            streak=streak,
            next_allowed_at=next_allowed_at,
            region=record.region_bucket,
            region_source=identity.region_source,
            identity_minted=identity.minted,
            rate_limit_degraded=decision.degraded,
        )

    def _commit_failed(
        self, exc: Exception, identity_id: str, token: Optional[str], in_flight: int
    ) -> None:
        if in_flight:
            # An abandoned attempt may still commit; keep the window held.
            logger.warning(
                "Durable commit outcome unknown",
                exc_info=exc,
                extra={
                    "action": "commit_outcome_unknown",
                    "context": {"stage": "commit", "attempts_in_flight": in_flight},
                },
            )
            raise ServiceUnavailableError(
                "Check-in storage is responding slowly. Your check-in may not have been saved.",
                retry_after_seconds=self._retry_after(exc),
            ) from exc

        self.limiter.release(identity_id, token)
        if is_transient(exc):
            logger.warning(
                "Durable commit failed transiently",
                exc_info=exc,
                extra={"action": "store_unavailable", "context": {"stage": "commit"}},
            )
            raise ServiceUnavailableError(
                "Check-in storage is temporarily unavailable. Please try again shortly.",
                retry_after_seconds=self._retry_after(exc),
            ) from exc
        logger.error(
            "Durable commit failed",
            exc_info=exc,
            extra={"action": "persistence_failed", "context": {"stage": "commit"}},
        )
        raise PersistenceFailedError("The check-in could not be saved.") from exc

    def _retry_after(self, exc: BaseException) -> int:
        if isinstance(exc, CircuitOpenError) and exc.retry_in_seconds is not None:
            return max(int(math.ceil(exc.retry_in_seconds)), 1)
        return self.settings.RETRY_AFTER_SECONDS

    # -- fan-out -------------------------------------------------------------

    def _fan_out(self, record: CheckIn, identity: ResolvedIdentity) -> FanOutGroup:
        group = FanOutGroup(
            self._executor,
            label=f"check-in {record.id}",
            context={"check_in_id": record.id},
            on_settled=self._forget,
        )
        with self._inflight_lock:
            self._inflight.add(group)

        payload = stream_payload(
            record.id, record.emotion, record.intensity, record.region_bucket, record.occurred_at
        )
        group.spawn("timeseries", self._write_timeseries, record)
        group.spawn("streak", self._record_streak, record)
        group.spawn("event_bus", self._publish_event, payload)
        group.spawn("broadcast", self._broadcast, payload)
        if record.note:
            group.spawn("trending", self._score_note, record)
        if identity.region_source in PERSISTABLE_SOURCES:
            group.spawn("region_preference", self._remember_region, record)
        group.seal()
        return group

    def _forget(self, group: FanOutGroup) -> None:
        with self._inflight_lock:
            self._inflight.discard(group)

    def _write_timeseries(self, record: CheckIn) -> int:
        row = EmotionEventRow(
            check_in_id=record.id,
            identity_id=record.identity_id,
            emotion=record.emotion,
            intensity=record.intensity,
            region_bucket=record.region_bucket,
            time=record.occurred_at,
        )
        return self.breakers.get("timeseries").call(self.timeseries.insert_batch, [row])

    def _record_streak(self, record: CheckIn) -> int:
        return self.breakers.get("streak").call(
            self.streaks.record,
            record.identity_id,
            record.emotion,
            record.accepted_at,
            record.id,
        )

    def _publish_event(self, payload: dict) -> None:
        self.breakers.get("event_bus").call(self.event_bus.publish, self.settings.KAFKA_TOPIC, payload)

    def _broadcast(self, payload: dict) -> int:
        return self.breakers.get("broadcast").call(self.broadcaster.publish, LIVE_TOPIC, payload)

    def _score_note(self, record: CheckIn) -> int:
        return self.trending.process_note(
            record.note, record.emotion, record.region_bucket, record.occurred_at
        )

    def _remember_region(self, record: CheckIn) -> None:
        self.breakers.get("region_preference").call(
            self.region_preferences.save, record.identity_id, record.region_bucket
        )

    def drain(self, timeout: float = 5.0) -> bool:
        """Wait for in-flight fan-outs. Returns False if any were still running at the deadline."""
        deadline = time.monotonic() + timeout
        with self._inflight_lock:
            groups = list(self._inflight)
        for group in groups:
            remaining = max(deadline - time.monotonic(), 0.0)
            if not group.wait(remaining):
                return False
        return True

    # -- read path -----------------------------------------------------------

    def get_streak(self, identity_id: str) -> int:
        try:
            return self.breakers.get("streak").call(self.streaks.get_streak, identity_id)
        except Exception as exc:
            log_degraded(logger, "streak", "read_failed", error=exc)
            return 1

    def get_history(self, identity_id: str, limit: int = 30, before: Optional[int] = None) -> HistoryPage:
        try:
            return self.breakers.get("streak").call(
                self.streaks.get_history, identity_id, limit, before
            )
        except Exception as exc:
            log_degraded(logger, "streak", "history_read_failed", error=exc)
            return HistoryPage()
