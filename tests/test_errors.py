"""
Tests for error handling: structured error responses, HTTP status codes,
and the custom exception classes.
"""
from datetime import datetime, timezone

from app.core.errors import (
    AdminAuthError,
    CheckInValidationError,
    CircuitNotFoundError,
    CircuitOpenError,
    PersistenceFailedError,
    RateLimitedError,
    ServiceUnavailableError,
    TransientStoreError,
)


# ---------------------------------------------------------------------------
# Unit tests on exception classes
# ---------------------------------------------------------------------------

class TestExceptionClasses:
    def test_validation_error_names_field(self):
        err = CheckInValidationError("intensity", "Intensity must be between 1 and 5.")
        assert err.http_status == 400
        assert err.code == "VALIDATION_ERROR"
        d = err.to_dict()
        assert d["details"]["errors"][0]["field"] == "intensity"
        assert d["details"]["errors"][0]["message"] == "Intensity must be between 1 and 5."

    def test_rate_limited_error_carries_next_allowed_at(self):
        at = datetime(2026, 10, 20, 12, 0, tzinfo=timezone.utc)
        err = RateLimitedError(at, retry_after_seconds=3600)
        assert err.http_status == 429
        assert err.code == "RATE_LIMITED"
        assert err.headers["Retry-After"] == "3600"
        d = err.to_dict()
        assert d["nextAllowedAt"] == at.isoformat()
        assert d["details"]["nextAllowedAt"] == at.isoformat()

    def test_rate_limited_error_never_negative_retry_after(self):
        err = RateLimitedError(datetime(2026, 1, 1, tzinfo=timezone.utc), retry_after_seconds=-5)
        assert err.headers["Retry-After"] == "0"

    def test_circuit_open_is_transient_store_error(self):
        at = datetime(2026, 10, 19, 12, 0, 30, tzinfo=timezone.utc)
        err = CircuitOpenError("database", next_attempt_at=at)
        assert isinstance(err, TransientStoreError)
        assert err.code == "CIRCUIT_OPEN"
        assert err.details["store"] == "database"
        assert err.details["nextAttemptAt"] == at.isoformat()

    def test_service_unavailable_sets_retry_after(self):
        err = ServiceUnavailableError("down", retry_after_seconds=30)
        assert err.http_status == 503
        assert err.headers == {"Retry-After": "30"}
        assert err.details["transient"] is True

    def test_persistence_failed_is_not_transient(self):
        err = PersistenceFailedError("could not save")
        assert err.http_status == 500
        assert err.code == "PERSISTENCE_FAILED"
        assert err.details == {"transient": False}

    def test_admin_and_circuit_lookup_errors(self):
        assert AdminAuthError().http_status == 403
        err = CircuitNotFoundError("nope")
        assert err.http_status == 404
        assert err.details == {"circuit": "nope"}

    def test_to_dict_without_details(self):
        err = AdminAuthError()
        d = err.to_dict()
        assert "code" in d
        assert "message" in d
        # details should not be in dict when empty
        assert "details" not in d


# ---------------------------------------------------------------------------
# Integration tests on HTTP error responses
# ---------------------------------------------------------------------------

class TestValidationErrors:
    def test_missing_emotion_returns_structured_400(self, client):
        r = client.post("/check-in", json={"intensity": 3})
        assert r.status_code == 400
        body = r.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert isinstance(body["details"]["errors"], list)
        assert body["details"]["errors"][0]["field"] == "emotion"

    def test_unknown_emotion_returns_400(self, client, device_id):
        r = client.post("/check-in", json={"emotion": "Ennui"}, headers={"X-Device-ID": device_id})
        assert r.status_code == 400
        body = r.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["details"]["errors"][0]["field"] == "emotion"

    def test_string_intensity_rejected(self, client, device_id):
        r = client.post(
            "/check-in",
            json={"emotion": "Joy", "intensity": "4"},
            headers={"X-Device-ID": device_id},
        )
        assert r.status_code == 400
        assert r.json()["details"]["errors"][0]["field"] == "intensity"

    def test_malformed_json_returns_400(self, client):
        r = client.post(
            "/check-in",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert r.status_code == 400
        assert r.json()["code"] == "VALIDATION_ERROR"


class TestErrorEnvelope:
    def test_rate_limited_body_and_header(self, client, device_id):
        headers = {"X-Device-ID": device_id}
        assert client.post("/check-in", json={"emotion": "Joy"}, headers=headers).status_code == 201
        r = client.post("/check-in", json={"emotion": "Calm"}, headers=headers)
        assert r.status_code == 429
        body = r.json()
        assert body["code"] == "RATE_LIMITED"
        assert body["nextAllowedAt"].startswith("2026-10-20T12:00:00")
        assert int(r.headers["Retry-After"]) == 86400

    def test_server_errors_carry_request_id(self, client, service, device_id):
        class BrokenStore:
            def ping(self):
                raise ConnectionError("connection refused")

        service.check_ins = BrokenStore()
        r = client.post(
            "/check-in",
            json={"emotion": "Joy"},
            headers={"X-Device-ID": device_id, "X-Request-ID": "req-abc123"},
        )
        assert r.status_code == 503
        body = r.json()
        assert body["code"] == "SERVICE_UNAVAILABLE"
        assert body["request_id"] == "req-abc123"
        assert r.headers["X-Request-ID"] == "req-abc123"
