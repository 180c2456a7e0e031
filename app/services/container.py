"""
Service container: the one place that builds engines, breakers, stores and
services, and hands them to FastAPI through `get_container`.

Nothing is a process-global singleton; tests build their own container with
a controllable clock and override the dependency.
"""
from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable

from fastapi import Request
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.clock import Clock, utcnow
from app.core.config import Settings
from app.core.logging import get_logger
from app.core.resilience import BreakerConfig, BreakerRegistry
from app.db.base import Base, make_engine, make_session_factory
from app.services.analytics import AnalyticsService
from app.services.check_in import CheckInService, SqlCheckInStore
from app.services.events import EventBus, KafkaEventBus, LiveBroadcaster, LocalEventBus
from app.services.identity import IdentityResolver, RegionPreferenceStore
from app.services.rate_limiter import BoundedWindowCache, RateLimiter, SqlRateLimitStore
from app.services.streak import SqlStreakStore, StreakTracker
from app.services.timeseries import SqlTimeSeriesStore
from app.services.trending import SqlTrendingStore, TrendingEngine

logger = get_logger(__name__)


def default_breaker_configs(settings: Settings) -> dict[str, BreakerConfig]:
    db_timeout = settings.DB_TIMEOUT_SECONDS
    cache_timeout = settings.CACHE_TIMEOUT_SECONDS
    fanout_timeout = settings.FANOUT_TIMEOUT_SECONDS
    return {
        "database": BreakerConfig(
            failure_threshold=3, reset_timeout=30, max_retries=2, timeout=db_timeout,
            max_concurrent=settings.DB_MAX_CONCURRENT,
        ),
        "rate_limit": BreakerConfig(
            failure_threshold=3, reset_timeout=30, max_retries=1, timeout=cache_timeout,
            max_concurrent=settings.CACHE_MAX_CONCURRENT,
        ),
        "streak": BreakerConfig(
            failure_threshold=3, reset_timeout=30, max_retries=1, timeout=fanout_timeout,
            max_concurrent=settings.FANOUT_MAX_CONCURRENT,
        ),
        "trending": BreakerConfig(
            failure_threshold=3, reset_timeout=30, max_retries=1, timeout=fanout_timeout,
            max_concurrent=settings.FANOUT_MAX_CONCURRENT,
        ),
        "region_preference": BreakerConfig(
            failure_threshold=3, reset_timeout=30, max_retries=1, timeout=cache_timeout,
            max_concurrent=settings.CACHE_MAX_CONCURRENT,
        ),
        "timeseries": BreakerConfig(
            failure_threshold=2, reset_timeout=60, max_retries=1, timeout=fanout_timeout,
            max_concurrent=settings.FANOUT_MAX_CONCURRENT,
        ),
        "event_bus": BreakerConfig(
            failure_threshold=2, reset_timeout=60, max_retries=1, timeout=fanout_timeout,
            max_concurrent=settings.FANOUT_MAX_CONCURRENT,
        ),
        "broadcast": BreakerConfig(
            failure_threshold=2, reset_timeout=60, max_retries=0, timeout=fanout_timeout,
            max_concurrent=settings.FANOUT_MAX_CONCURRENT,
        ),
        "analytics": BreakerConfig(
            failure_threshold=3, reset_timeout=30, max_retries=1, timeout=fanout_timeout,
            max_concurrent=settings.CACHE_MAX_CONCURRENT,
        ),
    }


@dataclass
class ServiceContainer:
    settings: Settings
    engine: Engine
    cache_engine: Engine
    timeseries_engine: Engine
    session_factory: sessionmaker[Session]
    breakers: BreakerRegistry
    executor: ThreadPoolExecutor
    check_in_service: CheckInService
    trending: TrendingEngine
    analytics: AnalyticsService
    event_bus: EventBus
    broadcaster: LiveBroadcaster
    clock: Clock = field(default=utcnow)

    def engines(self) -> list[Engine]:
        seen: dict[int, Engine] = {}
        for eng in (self.engine, self.cache_engine, self.timeseries_engine):
            seen.setdefault(id(eng), eng)
        return list(seen.values())

    def create_all(self) -> None:
        for eng in self.engines():
            Base.metadata.create_all(bind=eng)

    def shutdown(self, timeout: float = 5.0) -> None:
        if not self.check_in_service.drain(timeout):
            logger.warning(
                "Shutting down with fan-out still in flight",
                extra={"action": "shutdown_incomplete"},
            )
        self.executor.shutdown(wait=False)
        self.breakers.shutdown()
        self.event_bus.close()
        for eng in self.engines():
            eng.dispose()


def build_container(
    settings: Settings,
    clock: Clock = utcnow,
    sleep: Callable[[float], None] = time.sleep,
    monotonic: Callable[[], float] = time.monotonic,
) -> ServiceContainer:
    engine = make_engine(settings.DATABASE_URL, statement_timeout=settings.DB_TIMEOUT_SECONDS)
    cache_engine = (
        engine if settings.cache_database_url == settings.DATABASE_URL
        else make_engine(settings.cache_database_url, statement_timeout=settings.CACHE_TIMEOUT_SECONDS)
    )
    timeseries_engine = (
        engine if settings.timeseries_database_url == settings.DATABASE_URL
        else make_engine(
            settings.timeseries_database_url, statement_timeout=settings.FANOUT_TIMEOUT_SECONDS
        )
    )
    session_factory = make_session_factory(engine)
    cache_sessions = make_session_factory(cache_engine)
    timeseries_sessions = make_session_factory(timeseries_engine)

    breakers = BreakerRegistry(
        configs=default_breaker_configs(settings), monotonic=monotonic, sleep=sleep,
    )
    executor = ThreadPoolExecutor(max_workers=settings.FANOUT_WORKERS, thread_name_prefix="fanout")

    region_preferences = RegionPreferenceStore(
        cache_sessions, clock=clock, ttl_days=settings.REGION_PREFERENCE_TTL_DAYS,
    )
    resolver = IdentityResolver(region_preferences, breaker=breakers.get("region_preference"))
    limiter = RateLimiter(
        SqlRateLimitStore(cache_sessions),
        breaker=breakers.get("rate_limit"),
        local=BoundedWindowCache(settings.RATE_LIMIT_FALLBACK_CAPACITY),
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
        clock=clock,
    )
    streaks = StreakTracker(
        SqlStreakStore(
            cache_sessions,
            ttl_days=settings.STREAK_TTL_DAYS,
            history_max_items=settings.HISTORY_MAX_ITEMS,
        ),
        clock=clock,
        timezone=settings.STREAK_TIMEZONE,
        max_lookback_days=settings.STREAK_MAX_LOOKBACK_DAYS,
    )
    trending = TrendingEngine(
        SqlTrendingStore(cache_sessions),
        breaker=breakers.get("trending"),
        clock=clock,
        ttl_seconds=settings.TRENDING_TTL_SECONDS,
        hourly_ttl_seconds=settings.HOURLY_TRENDING_TTL_SECONDS,
        decay_hours=settings.TRENDING_DECAY_HOURS,
        min_note_length=settings.TRENDING_MIN_NOTE_LENGTH,
        include_phrases=settings.TRENDING_INCLUDE_PHRASES,
        max_limit=settings.TRENDING_MAX_LIMIT,
    )

    event_bus: EventBus
    if settings.EVENT_BUS_BACKEND == "kafka":
        event_bus = KafkaEventBus(settings.KAFKA_BOOTSTRAP_SERVERS)
    else:
        event_bus = LocalEventBus(maxsize=settings.EVENT_QUEUE_MAXSIZE)
    broadcaster = LiveBroadcaster()

    timeseries = SqlTimeSeriesStore(timeseries_sessions)
    analytics = AnalyticsService(timeseries, breaker=breakers.get("analytics"), clock=clock)

    service = CheckInService(
        settings=settings,
        resolver=resolver,
        limiter=limiter,
        check_ins=SqlCheckInStore(engine, session_factory),
        streaks=streaks,
        trending=trending,
        timeseries=timeseries,
        event_bus=event_bus,
        broadcaster=broadcaster,
        region_preferences=region_preferences,
        breakers=breakers,
        executor=executor,
        clock=clock,
    )
    logger.info(
        "Service container built",
        extra={
            "action": "container_built",
            "context": {"event_bus": settings.EVENT_BUS_BACKEND, "app_env": settings.APP_ENV},
        },
    )
    return ServiceContainer(
        settings=settings,
        engine=engine,
        cache_engine=cache_engine,
        timeseries_engine=timeseries_engine,
        session_factory=session_factory,
        breakers=breakers,
        executor=executor,
        check_in_service=service,
        trending=trending,
        analytics=analytics,
        event_bus=event_bus,
        broadcaster=broadcaster,
        clock=clock,
    )


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container
