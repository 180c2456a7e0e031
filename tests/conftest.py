"""
Shared pytest fixtures.

Uses a SQLite file database so no Postgres is required for tests. Every test
gets a fresh service container with a frozen, manually advanced clock and
empty tables.
"""
import os
import threading
import uuid
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_moodpulse.db")

import pytest
from fastapi.testclient import TestClient

from app.core.config import Settings
from app.db.base import Base, make_engine
from app.main import app
from app import models  # noqa: F401  registers every table
from app.services.container import build_container, get_container

SQLITE_URL = "sqlite:///./test_moodpulse.db"

engine = make_engine(SQLITE_URL)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self._now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **delta) -> datetime:
        with self._lock:
            self._now += timedelta(**delta)
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = value


def new_device_id() -> str:
    return f"device-{uuid.uuid4().hex[:12]}"


def make_settings(**overrides) -> Settings:
    values = dict(
        DATABASE_URL=SQLITE_URL,
        CACHE_DATABASE_URL="",
        TIMESERIES_DATABASE_URL="",
        EVENT_BUS_BACKEND="local",
        SECRET_KEY="test-admin-token",
        # SQLite serialises writers; generous timeouts keep tests deterministic.
        DB_TIMEOUT_SECONDS=10.0,
        CACHE_TIMEOUT_SECONDS=10.0,
        FANOUT_TIMEOUT_SECONDS=10.0,
        STREAK_RESPONSE_WAIT_SECONDS=10.0,
        FANOUT_WORKERS=4,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(scope="session", autouse=True)
def create_tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(autouse=True)
def clean_tables():
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    yield


@pytest.fixture()
def clock():
    return FrozenClock(datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc))


@pytest.fixture()
def settings():
    return make_settings()


@pytest.fixture()
def container(settings, clock):
    c = build_container(settings, clock=clock, sleep=lambda _: None)
    yield c
    c.shutdown()


@pytest.fixture()
def container_factory(clock):
    """Build extra containers with setting overrides; all are shut down after the test."""
    built = []

    def build(**overrides):
        c = build_container(make_settings(**overrides), clock=clock, sleep=lambda _: None)
        built.append(c)
        return c

    yield build
    for c in built:
        c.shutdown()


@pytest.fixture()
def service(container):
    return container.check_in_service


@pytest.fixture()
def client(container):
    app.state.container = container
    app.dependency_overrides[get_container] = lambda: container
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    app.state.container = None


@pytest.fixture()
def device_id():
    return new_device_id()
