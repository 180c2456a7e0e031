"""
Tests for the check-in orchestrator: validation, the durable commit
boundary, reservation release and best-effort fan-out.
"""
import logging
import threading
from datetime import datetime, timedelta, timezone

import pytest

from app.core.errors import (
    CheckInValidationError,
    PersistenceFailedError,
    RateLimitedError,
    ServiceUnavailableError,
)
from app.models.check_in import CheckIn
from app.services.check_in import CheckInSubmission, validate_submission
from app.services.trending import TrendingDimension

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def submission(device_id="device-abc123", **overrides):
    values = dict(emotion="Joy", device_id=device_id)
    values.update(overrides)
    return CheckInSubmission(**values)


class CapturingHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture()
def fanout_records():
    handler = CapturingHandler()
    log = logging.getLogger("app.services.fanout")
    previous = log.level
    log.addHandler(handler)
    log.setLevel(logging.INFO)
    yield handler.records
    log.removeHandler(handler)
    log.setLevel(previous)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidateSubmission:
    def test_defaults(self):
        v = validate_submission(CheckInSubmission(emotion="happy"), NOW)
        assert v.emotion.value == "Joy"
        assert v.intensity == 3
        assert v.note is None
        assert v.occurred_at == NOW

    @pytest.mark.parametrize("emotion", [None, "", "   ", "bored"])
    def test_bad_emotion(self, emotion):
        with pytest.raises(CheckInValidationError) as exc_info:
            validate_submission(CheckInSubmission(emotion=emotion), NOW)
        assert exc_info.value.field == "emotion"

    @pytest.mark.parametrize("intensity", [0, 6, -1, True, 2.5])
    def test_bad_intensity(self, intensity):
        with pytest.raises(CheckInValidationError) as exc_info:
            validate_submission(CheckInSubmission(emotion="Joy", intensity=intensity), NOW)
        assert exc_info.value.field == "intensity"

    def test_note_is_trimmed_and_bounded(self):
        v = validate_submission(CheckInSubmission(emotion="Joy", note="  hello  "), NOW)
        assert v.note == "hello"
        assert validate_submission(CheckInSubmission(emotion="Joy", note="   "), NOW).note is None
        assert validate_submission(CheckInSubmission(emotion="Joy", note="x" * 280), NOW).note == "x" * 280
        with pytest.raises(CheckInValidationError) as exc_info:
            validate_submission(CheckInSubmission(emotion="Joy", note="x" * 281), NOW)
        assert exc_info.value.field == "note"

    @pytest.mark.parametrize("lat,lng", [
        (91, 0), (0, 181), (0, 0), (85, 10), (-70, 10), (10, None),
    ])
    def test_bad_coordinates(self, lat, lng):
        with pytest.raises(CheckInValidationError) as exc_info:
            validate_submission(CheckInSubmission(emotion="Joy", latitude=lat, longitude=lng), NOW)
        assert exc_info.value.field == "coordinates"

    def test_bad_region(self):
        with pytest.raises(CheckInValidationError) as exc_info:
            validate_submission(CheckInSubmission(emotion="Joy", region="California"), NOW)
        assert exc_info.value.field == "region"

    def test_timestamp_bounds(self):
        ok = validate_submission(
            CheckInSubmission(emotion="Joy", timestamp=NOW - timedelta(days=6)), NOW,
        )
        assert ok.occurred_at == NOW - timedelta(days=6)
        for bad in (NOW + timedelta(minutes=10), NOW - timedelta(days=8)):
            with pytest.raises(CheckInValidationError) as exc_info:
                validate_submission(CheckInSubmission(emotion="Joy", timestamp=bad), NOW)
            assert exc_info.value.field == "timestamp"

    def test_naive_timestamp_is_utc(self):
        v = validate_submission(
            CheckInSubmission(emotion="Joy", timestamp=datetime(2026, 10, 19, 11, 0)), NOW,
        )
        assert v.occurred_at == datetime(2026, 10, 19, 11, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Submit: happy path
# ---------------------------------------------------------------------------

class TestSubmit:
    def test_accepts_and_persists(self, service):
        result = service.submit(submission(intensity=4, note="sunny afternoon in the park"))
        assert result.emotion == "Joy"
        assert result.intensity == 4
        assert result.streak == 1
        assert result.next_allowed_at == NOW + timedelta(hours=24)
        assert result.accepted_at == NOW

        stored = service.check_ins.get(result.id)
        assert stored is not None
        assert stored.identity_id == "device-abc123"
        assert stored.note == "sunny afternoon in the park"

    def test_invalid_submission_has_no_side_effects(self, service):
        with pytest.raises(CheckInValidationError):
            service.submit(submission(intensity=9))
        assert service.check_ins.list_for_identity("device-abc123") == []
        assert service.submit(submission()).emotion == "Joy"

    def test_second_submission_is_rate_limited(self, service, clock):
        service.submit(submission())
        clock.advance(hours=3)
        with pytest.raises(RateLimitedError) as exc_info:
            service.submit(submission(emotion="Calm"))
        assert exc_info.value.next_allowed_at == NOW + timedelta(hours=24)
        assert exc_info.value.headers["Retry-After"] == str(21 * 3600)
        assert len(service.check_ins.list_for_identity("device-abc123")) == 1

    def test_streak_grows_over_days(self, service, clock):
        for day in range(3):
            result = service.submit(submission())
            assert result.streak == day + 1
            clock.advance(days=1)

    def test_coordinates_are_rounded_and_bucketed(self, service):
        result = service.submit(submission(latitude=37.774929, longitude=-122.419416))
        assert result.region == "US-CA"
        assert result.region_source == "coordinates"
        stored = service.check_ins.get(result.id)
        assert (stored.latitude, stored.longitude) == (37.77, -122.42)

    def test_minted_identity_when_device_id_missing(self, service):
        result = service.submit(submission(device_id=None))
        assert result.identity_minted is True
        assert result.identity_id != ""

    def test_device_type_recorded(self, service):
        result = service.submit(submission(user_agent="Mozilla/5.0 (iPhone; CPU iPhone OS 17_0) Mobile"))
        assert service.check_ins.get(result.id).device_type == "mobile"


# ---------------------------------------------------------------------------
# Submit: durable commit boundary
# ---------------------------------------------------------------------------

class DownStore:
    def ping(self):
        raise ConnectionError("primary store unreachable")

    def create(self, record):
        raise ConnectionError("primary store unreachable")


class TestDurableCommit:
    def test_probe_failure_returns_503_and_releases_reservation(self, service):
        real = service.check_ins
        service.check_ins = DownStore()
        with pytest.raises(ServiceUnavailableError) as exc_info:
            service.submit(submission())
        assert exc_info.value.retry_after_seconds >= 1

        service.check_ins = real
        service.breakers.get("database").force_close()
        assert service.submit(submission()).emotion == "Joy"

    def test_commit_failure_leaves_no_trace(self, service):
        real = service.check_ins

        class CommitFails:
            def ping(self):
                return real.ping()

            def create(self, record):
                raise ConnectionError("connection dropped mid-commit")

        service.check_ins = CommitFails()
        with pytest.raises(ServiceUnavailableError):
            service.submit(submission(note="should never be indexed"))
        service.drain()

        assert service.trending.get_top(TrendingDimension.global_) == []
        assert service.streaks.get_history("device-abc123").items == []
        assert service.event_bus.stats()["published"] == 0

    def test_non_transient_commit_failure_is_500(self, service):
        class Broken:
            def ping(self):
                return None

            def create(self, record):
                raise ValueError("constraint violated")

        service.check_ins = Broken()
        with pytest.raises(PersistenceFailedError):
            service.submit(submission())
        assert service.limiter.local_cache.get("device-abc123", NOW) is None

    def test_open_database_circuit_reports_remaining_time(self, service):
        service.breakers.get("database").force_open()
        with pytest.raises(ServiceUnavailableError) as exc_info:
            service.submit(submission())
        assert exc_info.value.retry_after_seconds == 30

    def test_create_is_idempotent_on_id(self, service):
        result = service.submit(submission())
        stored = service.check_ins.get(result.id)
        assert service.check_ins.create(stored) == result.id
        assert len(service.check_ins.list_for_identity("device-abc123")) == 1


class GatedStore:
    """Real store whose `create` waits on `gate` before writing.

    With `first_only`, only the first attempt waits.
    """

    def __init__(self, real, gate, first_only=False):
        self.real = real
        self.gate = gate
        self.first_only = first_only
        self.calls = 0
        self._lock = threading.Lock()
        self._finished = threading.Semaphore(0)

    def ping(self):
        return self.real.ping()

    def create(self, record):
        with self._lock:
            self.calls += 1
            call = self.calls
        try:
            if not self.first_only or call == 1:
                self.gate.wait(5)
            return self.real.create(record)
        finally:
            self._finished.release()

    def wait_finished(self, count):
        for _ in range(count):
            assert self._finished.acquire(timeout=5)


class TestSlowCommit:
    def test_unknown_outcome_keeps_the_window(self, container_factory):
        service = container_factory(DB_TIMEOUT_SECONDS=0.2).check_in_service
        real = service.check_ins
        gate = threading.Event()
        slow = GatedStore(real, gate)
        service.check_ins = slow
        try:
            with pytest.raises(ServiceUnavailableError):
                service.submit(submission())
            # The abandoned writes may still land, so the same day stays taken.
            with pytest.raises(RateLimitedError):
                service.submit(submission(emotion="Calm"))
        finally:
            gate.set()
        slow.wait_finished(slow.calls)

        assert slow.calls == 3
        assert len(real.list_for_identity("device-abc123")) == 1
        with pytest.raises(RateLimitedError):
            service.submit(submission(emotion="Calm"))

    def test_retry_after_timeout_writes_one_record(self, container_factory):
        service = container_factory(DB_TIMEOUT_SECONDS=0.2).check_in_service
        real = service.check_ins
        gate = threading.Event()
        slow = GatedStore(real, gate, first_only=True)
        service.check_ins = slow

        result = service.submit(submission())
        gate.set()
        slow.wait_finished(slow.calls)

        assert [c.id for c in real.list_for_identity("device-abc123")] == [result.id]
        assert service.breakers.get("database").snapshot()["timeouts"] == 1
        with pytest.raises(RateLimitedError):
            service.submit(submission(emotion="Calm"))


class TestConcurrentSubmit:
    def test_same_identity_race_accepts_exactly_one(self, service):
        outcomes = []
        lock = threading.Lock()
        barrier = threading.Barrier(6)

        def worker(emotion):
            barrier.wait()
            try:
                service.submit(submission(emotion=emotion))
                outcome = "accepted"
            except RateLimitedError:
                outcome = "rate_limited"
            except Exception as exc:
                outcome = repr(exc)
            with lock:
                outcomes.append(outcome)

        emotions = ["Joy", "Calm", "Stress", "Sadness", "Anticipation", "Joy"]
        threads = [threading.Thread(target=worker, args=(e,)) for e in emotions]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        service.drain()

        assert sorted(outcomes) == ["accepted"] + ["rate_limited"] * 5
        assert len(service.check_ins.list_for_identity("device-abc123")) == 1
        assert len(service.get_history("device-abc123").items) == 1


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------

class TestFanOut:
    def test_all_branches_run(self, service, container, fanout_records):
        result = service.submit(submission(note="coffee with friends", region="US-CA"))
        assert service.drain()

        assert container.event_bus.stats()["published"] == 1
        topic, payload = container.event_bus.drain()[0]
        assert topic == "check-ins"
        assert payload == {
            "id": result.id,
            "emotion": "Joy",
            "intensity": 3,
            "region": "US-CA",
            "timestamp": NOW.isoformat(),
        }
        counts = service.timeseries.emotion_counts(NOW - timedelta(hours=1))
        assert counts == {"Joy": 1}
        assert "coffee" in [k.keyword for k in service.trending.get_top(TrendingDimension.region, "US-CA")]
        assert service.region_preferences.get("device-abc123") == "US-CA"

        complete = [r for r in fanout_records if getattr(r, "action", None) == "fanout_complete"]
        assert len(complete) == 1
        ctx = complete[0].context
        assert ctx["check_in_id"] == result.id
        assert ctx["degraded"] is False
        assert ctx["succeeded"] == sorted(
            ["broadcast", "event_bus", "region_preference", "streak", "timeseries", "trending"]
        )

    def test_optional_branches_skipped(self, service, fanout_records):
        service.submit(submission(timezone="Europe/Paris"))
        assert service.drain()
        complete = [r for r in fanout_records if getattr(r, "action", None) == "fanout_complete"]
        assert complete[0].context["succeeded"] == ["broadcast", "event_bus", "streak", "timeseries"]
        assert service.region_preferences.get("device-abc123") is None

    def test_payload_never_carries_identity_or_note(self, service, container):
        service.submit(submission(note="my secret diary entry"))
        service.drain()
        _, payload = container.event_bus.drain()[0]
        assert "device-abc123" not in str(payload)
        assert "secret" not in str(payload)

    def test_branch_failures_do_not_fail_the_request(self, service, fanout_records):
        class Down:
            def __getattr__(self, name):
                def fail(*args, **kwargs):
                    raise ConnectionError(f"{name} unavailable")
                return fail

        service.timeseries = Down()
        service.event_bus = Down()
        result = service.submit(submission())
        assert result.streak == 1
        assert service.drain()

        complete = [r for r in fanout_records if getattr(r, "action", None) == "fanout_complete"]
        ctx = complete[0].context
        assert ctx["degraded"] is True
        assert set(ctx["failed"]) == {"timeseries", "event_bus"}
        assert complete[0].levelno == logging.WARNING

    def test_streak_falls_back_when_branch_fails(self, service):
        class DownTracker:
            def record(self, *args, **kwargs):
                raise ConnectionError("streak store down")

            def get_streak(self, identity_id):
                raise ConnectionError("streak store down")

        service.streaks = DownTracker()
        assert service.submit(submission()).streak == 1

    def test_history_read_failure_returns_empty_page(self, service):
        class DownTracker:
            def get_history(self, *args):
                raise ConnectionError("streak store down")

        service.streaks = DownTracker()
        page = service.get_history("device-abc123")
        assert page.items == []
        assert page.next_cursor is None

    def test_stored_region_reused_next_day(self, service, clock):
        service.submit(submission(region="GB"))
        service.drain()
        clock.advance(days=1)
        result = service.submit(submission(timezone="Asia/Tokyo"))
        assert result.region == "GB"
        assert result.region_source == "preference"

    def test_check_in_row_is_the_source_of_truth(self, service):
        result = service.submit(submission(emotion="anxious", intensity=5))
        service.drain()
        stored = service.check_ins.get(result.id)
        assert isinstance(stored, CheckIn)
        assert stored.emotion == "Stress"
        assert stored.data_retention_until.replace(tzinfo=timezone.utc) == NOW + timedelta(days=365)
