"""
Integration tests for API endpoints using a SQLite test database.
"""
import asyncio
import uuid
from types import SimpleNamespace

import pytest

from app.routers.live import live_check_ins


def new_device_id():
    return f"device-{uuid.uuid4().hex[:12]}"


def post_check_in(client, device_id=None, **body):
    body.setdefault("emotion", "Joy")
    headers = {"X-Device-ID": device_id} if device_id else {}
    return client.post("/check-in", json=body, headers=headers)


class TestHealth:
    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "ok"
        assert body["db"] == "ok"
        assert body["circuits"]["database"] == "CLOSED"
        assert body["event_bus"]["backend"] == "local"

    def test_health_reports_store_outage(self, client, service):
        class DownStore:
            def ping(self):
                raise ConnectionError("primary store unreachable")

        service.check_ins = DownStore()
        r = client.get("/health")
        assert r.status_code == 503
        assert r.json()["db"] == "unreachable"
        assert r.headers["Retry-After"] == "30"

    def test_request_id_is_echoed_or_generated(self, client):
        assert client.get("/health", headers={"X-Request-ID": "abc-123"}).headers["X-Request-ID"] == "abc-123"
        assert client.get("/health").headers["X-Request-ID"]


# ---------------------------------------------------------------------------
# Check-in
# ---------------------------------------------------------------------------

class TestCheckIn:
    def test_first_check_in(self, client, device_id):
        r = post_check_in(
            client, device_id, emotion="joy", intensity=4, note="finally got the job offer today",
        )
        assert r.status_code == 201
        body = r.json()
        assert body["streak"] == 1
        assert body["emotion"] == "Joy"
        assert body["intensity"] == 4
        assert body["nextAllowedAt"].startswith("2026-10-20T12:00:00")
        assert body["region"] == "GLOBAL"
        assert r.headers["X-Device-ID"] == device_id

    def test_immediate_resubmit_is_rate_limited(self, client, device_id):
        assert post_check_in(client, device_id).status_code == 201
        r = post_check_in(client, device_id, emotion="Calm")
        assert r.status_code == 429
        body = r.json()
        assert body["code"] == "RATE_LIMITED"
        assert body["nextAllowedAt"].startswith("2026-10-20T12:00:00")
        assert r.headers["Retry-After"] == "86400"

    def test_alias_is_normalized(self, client, device_id):
        r = post_check_in(client, device_id, emotion="happy")
        assert r.status_code == 201
        assert r.json()["emotion"] == "Joy"

    def test_out_of_range_intensity(self, client, device_id):
        r = post_check_in(client, device_id, intensity=7)
        assert r.status_code == 400
        assert r.json()["details"]["errors"][0]["field"] == "intensity"

    def test_rejected_submission_does_not_consume_the_day(self, client, device_id):
        assert post_check_in(client, device_id, intensity=7).status_code == 400
        assert post_check_in(client, device_id).status_code == 201

    def test_missing_device_id_mints_one(self, client):
        r = post_check_in(client)
        assert r.status_code == 201
        minted = r.headers["X-Device-ID"]
        assert len(minted) >= 8
        assert post_check_in(client, minted).status_code == 429

    def test_nested_coordinates(self, client, device_id):
        r = post_check_in(client, device_id, coordinates={"lat": 40.71, "lng": -74.0})
        assert r.status_code == 201
        assert r.json()["region"] == "US-NY"

    def test_declared_region(self, client, device_id):
        r = post_check_in(client, device_id, region="gb")
        assert r.json()["region"] == "GB"

    def test_timezone_header_sets_region(self, client, device_id):
        r = client.post(
            "/check-in",
            json={"emotion": "Calm"},
            headers={"X-Device-ID": device_id, "X-Timezone": "Europe/Berlin"},
        )
        assert r.json()["region"] == "DE"

    def test_future_timestamp_rejected(self, client, device_id):
        r = post_check_in(client, device_id, timestamp="2026-10-19T13:00:00Z")
        assert r.status_code == 400
        assert r.json()["details"]["errors"][0]["field"] == "timestamp"

    def test_store_outage_is_503_and_retryable(self, client, service, device_id):
        real = service.check_ins

        class DownStore:
            def ping(self):
                raise ConnectionError("primary store unreachable")

        service.check_ins = DownStore()
        r = post_check_in(client, device_id)
        assert r.status_code == 503
        assert r.json()["code"] == "SERVICE_UNAVAILABLE"
        assert int(r.headers["Retry-After"]) >= 1

        service.check_ins = real
        service.breakers.get("database").force_close()
        assert post_check_in(client, device_id).status_code == 201


class TestStreakAndHistory:
    def test_streak_requires_device_id(self, client):
        r = client.get("/check-in/streak")
        assert r.status_code == 400
        assert r.json()["details"]["errors"][0]["field"] == "X-Device-ID"

    def test_streak_across_days(self, client, clock, device_id):
        for _ in range(3):
            assert post_check_in(client, device_id).status_code == 201
            clock.advance(days=1)
        clock.advance(days=-1)
        r = client.get("/check-in/streak", headers={"X-Device-ID": device_id})
        assert r.json() == {"streak": 3, "today": "2026-10-21"}

    def test_unknown_device_streak_is_one(self, client, device_id):
        r = client.get("/check-in/streak", headers={"X-Device-ID": device_id})
        assert r.json()["streak"] == 1

    def test_history_paginates(self, client, clock, service, device_id):
        for emotion in ("Joy", "Calm", "Stress"):
            assert post_check_in(client, device_id, emotion=emotion).status_code == 201
            clock.advance(days=1)
        service.drain()

        headers = {"X-Device-ID": device_id}
        first = client.get("/check-in/history?limit=2", headers=headers).json()
        assert [i["emotion"] for i in first["items"]] == ["Stress", "Calm"]
        assert first["count"] == 2
        assert first["next_cursor"] is not None

        second = client.get(f"/check-in/history?limit=2&before={first['next_cursor']}", headers=headers).json()
        assert [i["emotion"] for i in second["items"]] == ["Joy"]
        assert second["next_cursor"] is None

    def test_history_limit_bounds(self, client, device_id):
        r = client.get("/check-in/history?limit=101", headers={"X-Device-ID": device_id})
        assert r.status_code == 400


# ---------------------------------------------------------------------------
# Trending
# ---------------------------------------------------------------------------

class TestTrending:
    def test_job_trends_for_joy(self, client, service):
        notes = [
            "finally got the job offer today",
            "new job starts monday",
            "celebrating the job with family",
            "sunny walk by the river",
        ]
        for note in notes:
            assert post_check_in(client, new_device_id(), emotion="joy", note=note).status_code == 201
        service.drain()

        r = client.get("/trending?type=emotion&emotion=joy&limit=5")
        assert r.status_code == 200
        body = r.json()
        assert body["key"] == "Joy"
        assert body["label"] == "Joy"
        assert body["keywords"][0]["keyword"] == "job"
        assert body["keywords"][0]["score"] > 0
        assert body["count"] <= 5

    def test_global_default(self, client, service):
        post_check_in(client, new_device_id(), emotion="Stress", note="exam tomorrow morning")
        service.drain()
        body = client.get("/trending").json()
        assert body["type"] == "global"
        assert {k["keyword"] for k in body["keywords"]} == {"exam", "tomorrow", "morning"}

    def test_region_dimension_with_label(self, client, service):
        post_check_in(client, new_device_id(), region="US-CA", note="beach bonfire tonight")
        service.drain()
        body = client.get("/trending?type=region&region=us-ca").json()
        assert body["key"] == "US-CA"
        assert body["label"] == "California, USA"
        assert "bonfire" in [k["keyword"] for k in body["keywords"]]

    def test_hourly_defaults_to_current_hour(self, client, service):
        post_check_in(client, new_device_id(), note="midday coffee break")
        service.drain()
        body = client.get("/trending?type=hourly").json()
        assert body["key"] == "2026-10-19T12"
        assert "coffee" in [k["keyword"] for k in body["keywords"]]

    @pytest.mark.parametrize("query", [
        "type=emotion",
        "type=emotion&emotion=ennui",
        "type=region&region=California",
        "type=hourly&hour=2026-10-19",
        "type=weekly",
        "limit=0",
    ])
    def test_bad_queries(self, client, query):
        r = client.get(f"/trending?{query}")
        assert r.status_code == 400
        assert r.json()["code"] == "VALIDATION_ERROR"

    def test_all_emotions(self, client, service):
        post_check_in(client, new_device_id(), emotion="Sadness", note="rainy lonely evening")
        service.drain()
        body = client.get("/trending/all?limit=3").json()
        assert set(body["emotions"]) == {"Joy", "Calm", "Stress", "Anticipation", "Sadness"}
        assert len(body["emotions"]["Sadness"]) == 3
        assert body["emotions"]["Joy"] == []

    def test_distribution(self, client, service):
        post_check_in(client, new_device_id(), emotion="Joy", region="FR")
        post_check_in(client, new_device_id(), emotion="Calm", region="FR")
        post_check_in(client, new_device_id(), emotion="Joy", region="DE")
        service.drain()

        body = client.get("/trending/emotions/distribution").json()
        assert body["total"] == 3
        assert body["counts"]["Joy"] == 2
        assert body["counts"]["Sadness"] == 0

        fr = client.get("/trending/emotions/distribution?region=fr").json()
        assert fr["region"] == "FR"
        assert fr["counts"] == {"Joy": 1, "Calm": 1, "Stress": 0, "Anticipation": 0, "Sadness": 0}


# ---------------------------------------------------------------------------
# Circuits (admin)
# ---------------------------------------------------------------------------

class TestCircuits:
    ADMIN = {"X-Admin-Token": "test-admin-token"}

    def test_list_circuits(self, client):
        circuits = client.get("/health/circuits").json()["circuits"]
        assert set(circuits) >= {"database", "rate_limit", "streak", "trending", "timeseries", "event_bus"}
        assert circuits["database"]["state"] == "CLOSED"

    def test_force_open_requires_token(self, client):
        assert client.post("/health/circuits/database/open").status_code == 403
        r = client.post("/health/circuits/database/open", headers={"X-Admin-Token": "wrong"})
        assert r.status_code == 403
        assert r.json()["code"] == "FORBIDDEN"

    def test_unknown_circuit(self, client):
        r = client.post("/health/circuits/nope/open", headers=self.ADMIN)
        assert r.status_code == 404
        assert r.json()["code"] == "CIRCUIT_NOT_FOUND"

    def test_forced_open_database_rejects_check_ins(self, client, device_id):
        r = client.post("/health/circuits/database/open", headers=self.ADMIN)
        assert r.status_code == 200
        assert r.json()["state"] == "OPEN"

        r = post_check_in(client, device_id)
        assert r.status_code == 503
        assert r.headers["Retry-After"] == "30"

        assert client.post("/health/circuits/database/close", headers=self.ADMIN).json()["state"] == "CLOSED"
        assert post_check_in(client, device_id).status_code == 201

    def test_open_fanout_circuit_does_not_block_check_ins(self, client, container, device_id):
        client.post("/health/circuits/event_bus/open", headers=self.ADMIN)
        assert post_check_in(client, device_id).status_code == 201
        container.check_in_service.drain()
        assert container.event_bus.stats()["published"] == 0


# ---------------------------------------------------------------------------
# Live stream
# ---------------------------------------------------------------------------

class TestLive:
    def test_accepted_check_in_is_broadcast(self, client, device_id):
        with client.websocket_connect("/live/check-ins") as ws:
            r = post_check_in(client, device_id, emotion="Calm", intensity=2, note="quiet tea")
            assert r.status_code == 201
            message = ws.receive_json()

        assert message["topic"] == "check-ins"
        assert message["data"]["id"] == r.json()["id"]
        assert message["data"]["emotion"] == "Calm"
        assert message["data"]["intensity"] == 2
        assert "note" not in message["data"]
        assert device_id not in str(message)

    def test_disconnect_unsubscribes(self, client, container):
        with client.websocket_connect("/live/check-ins"):
            assert container.broadcaster.listener_count == 1
        assert container.broadcaster.listener_count == 0

    def test_failed_send_ends_the_stream(self, container):
        class BrokenSocket:
            app = SimpleNamespace(state=SimpleNamespace(container=container))

            async def accept(self):
                return None

            async def send_json(self, data):
                raise RuntimeError("socket write failed")

            async def receive(self):
                await asyncio.Event().wait()

        async def scenario():
            task = asyncio.create_task(live_check_ins(BrokenSocket()))
            while container.broadcaster.listener_count == 0:
                await asyncio.sleep(0.01)
            container.broadcaster.publish("check-ins", {"id": "abc"})
            await asyncio.wait_for(task, timeout=2)

        asyncio.run(scenario())
        assert container.broadcaster.listener_count == 0
