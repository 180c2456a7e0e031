"""
Identity & region resolver.

Public API
----------
IdentityResolver.resolve(hints)          → ResolvedIdentity   (never raises)
RegionPreferenceStore.get(identity_id)   → str | None
RegionPreferenceStore.save(identity_id, bucket)
detect_device_type(user_agent)           → "mobile" | "tablet" | "desktop" | "unknown"

Region precedence, highest confidence first:
  coordinates (0.9) → declared code (0.8) → stored preference (0.6)
  → timezone (0.4) → locale (0.2) → GLOBAL (0.0)
"""
from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session, sessionmaker

from app.core.clock import Clock, as_utc, utcnow
from app.core.logging import get_logger, log_degraded
from app.core.resilience import CircuitBreaker
from app.db.upsert import insert_for
from app.models.region_preference import IdentityRegion
from app.services import geo

logger = get_logger(__name__)

IDENTITY_RE = re.compile(r"^[A-Za-z0-9_-]{8,128}$")


class RegionSource:
    coordinates = "coordinates"
    declared = "declared"
    preference = "preference"
    timezone = "timezone"
    locale = "locale"
    fallback = "fallback"


REGION_CONFIDENCE: dict[str, float] = {
    RegionSource.coordinates: 0.9,
    RegionSource.declared: 0.8,
    RegionSource.preference: 0.6,
    RegionSource.timezone: 0.4,
    RegionSource.locale: 0.2,
    RegionSource.fallback: 0.0,
}

# Regions from these tiers are worth remembering for later submissions.
PERSISTABLE_SOURCES = frozenset({RegionSource.coordinates, RegionSource.declared})


@dataclass
class IdentityHints:
    device_id: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    region_code: Optional[str] = None
    timezone: Optional[str] = None
    accept_language: Optional[str] = None


@dataclass(frozen=True)
class ResolvedIdentity:
    identity_id: str
    region_bucket: str
    region_source: str
    confidence: float
    minted: bool = False


def is_valid_identity(value: Optional[str]) -> bool:
    return isinstance(value, str) and bool(IDENTITY_RE.match(value))


def mint_identity() -> str:
    return str(uuid.uuid4())


def detect_device_type(user_agent: Optional[str]) -> str:
    if not user_agent:
        return "unknown"
    ua = user_agent.lower()
    if re.search(r"ipad|tablet|playbook|silk|(android(?!.*mobile))", ua):
        return "tablet"
    if re.search(r"mobile|iphone|ipod|android|blackberry|opera mini|iemobile", ua):
        return "mobile"
    return "desktop"


# ---------------------------------------------------------------------------
# Stored preference
# ---------------------------------------------------------------------------

class RegionPreferenceStore:
    def __init__(self, session_factory: sessionmaker[Session], clock: Clock = utcnow, ttl_days: int = 365):
        self._session_factory = session_factory
        self._clock = clock
        self._ttl = timedelta(days=ttl_days)

    def get(self, identity_id: str) -> Optional[str]:
        with self._session_factory() as db:
            row = db.get(IdentityRegion, identity_id)
            if row is None:
                return None
            if as_utc(row.expires_at) <= self._clock():
                return None
            return row.region_bucket

    def save(self, identity_id: str, region_bucket: str) -> None:
        now = self._clock()
        with self._session_factory() as db:
            stmt = insert_for(db, IdentityRegion).values(
                identity_id=identity_id,
                region_bucket=region_bucket,
                updated_at=now,
                expires_at=now + self._ttl,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[IdentityRegion.identity_id],
                set_={
                    "region_bucket": stmt.excluded.region_bucket,
                    "updated_at": stmt.excluded.updated_at,
                    "expires_at": stmt.excluded.expires_at,
                },
            )
            db.execute(stmt)
            db.commit()


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class IdentityResolver:
    def __init__(
        self,
        preferences: Optional[RegionPreferenceStore] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self._preferences = preferences
        self._breaker = breaker

    def resolve(self, hints: IdentityHints) -> ResolvedIdentity:
        minted = False
        if is_valid_identity(hints.device_id):
            identity_id = hints.device_id
        else:
            identity_id = mint_identity()
            minted = True

        bucket, source = self._resolve_region(identity_id, hints, minted)
        return ResolvedIdentity(
            identity_id=identity_id,
            region_bucket=bucket,
            region_source=source,
            confidence=REGION_CONFIDENCE[source],
            minted=minted,
        )

    def _resolve_region(self, identity_id: str, hints: IdentityHints, minted: bool) -> tuple[str, str]:
        if hints.latitude is not None and hints.longitude is not None:
            bucket = geo.region_for_coordinates(hints.latitude, hints.longitude)
            if bucket:
                return bucket, RegionSource.coordinates

        declared = geo.normalize_region_code(hints.region_code)
        if declared:
            return declared, RegionSource.declared

        if not minted:
            stored = self._stored_preference(identity_id)
            if stored:
                return stored, RegionSource.preference

        bucket = geo.region_for_timezone(hints.timezone)
        if bucket:
            return bucket, RegionSource.timezone

        bucket = geo.region_for_locale(hints.accept_language)
        if bucket:
            return bucket, RegionSource.locale

        return geo.GLOBAL_REGION, RegionSource.fallback

    def _stored_preference(self, identity_id: str) -> Optional[str]:
        if self._preferences is None:
            return None
        try:
            if self._breaker is not None:
                return self._breaker.call(self._preferences.get, identity_id)
            return self._preferences.get(identity_id)
        except Exception as exc:
            log_degraded(logger, "region_preference", "read_failed", error=exc)
            return None
