"""HTTP surface tests with FastAPI's TestClient."""
import asyncio
from datetime import datetime, timezone

import pytest
from conftest import make_profile, make_token
from fastapi.testclient import TestClient

from donor_alerts.main import create_app


@pytest.fixture
def client(settings, runtime):
    app = create_app(settings, runtime)
    with TestClient(app) as c:
        yield c


def _auth(sub="requester", **claims):
    return {"Authorization": f"Bearer {make_token(sub, **claims)}"}


class TestManualTrigger:
    def test_requires_authentication(self, client):
        response = client.post("/notifications/test")

        assert response.status_code == 401
        assert response.json()["detail"]["kind"] == "unauthenticated"

    def test_rejects_bad_token(self, client):
        response = client.post("/notifications/test", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401
        assert response.json()["detail"]["kind"] == "unauthenticated"

    def test_caller_without_push_token(self, client, runtime):
        asyncio.run(runtime.profiles.upsert(make_profile("u1")))

        response = client.post("/notifications/test", headers=_auth("u1"))

        assert response.status_code == 404
        assert response.json()["detail"] == {
            "kind": "not-found",
            "message": "No push token found for user",
        }
        assert runtime.queue_store.records == {}

    def test_queues_test_notification(self, client, runtime):
        asyncio.run(runtime.profiles.upsert(make_profile("u1", "T1")))

        response = client.post("/notifications/test", headers=_auth("u1"))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Test notification sent"
        record = runtime.queue_store.records[body["notificationId"]]
        assert record.token == "T1"
        assert record.priority.value == "normal"
        assert record.data["type"] == "test"
        assert record.data["userId"] == "u1"


class TestRequests:
    def test_naive_expiry_is_stored_as_utc(self, client, runtime):
        response = client.post(
            "/requests",
            json={"id": "r1", "bloodType": "O+", "expiresAt": "2024-03-01T11:00:00"},
            headers=_auth(),
        )

        assert response.status_code == 201
        stored = runtime.requests.records["r1"]
        assert stored.expiresAt == datetime(2024, 3, 1, 11, 0, tzinfo=timezone.utc)
        result = asyncio.run(runtime.expiry_sweeper.run(now=datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)))
        assert result.data == 1

    def test_create_then_accept(self, client, runtime, gateway):
        asyncio.run(runtime.profiles.upsert(make_profile("d1", "T1")))
        asyncio.run(runtime.profiles.upsert(make_profile("requester", "T2")))

        created = client.post(
            "/requests",
            json={"id": "r1", "bloodType": "AB-", "urgency": "emergency", "units": 3, "potentialDonors": ["d1"]},
            headers=_auth("requester"),
        )
        assert created.status_code == 201
        assert created.json()["requesterId"] == "requester"

        accepted = client.post("/requests/r1/accept", json={"name": "Okello"}, headers=_auth("d1"))
        assert accepted.status_code == 200
        assert accepted.json()["status"] == "accepted"
        assert accepted.json()["acceptedBy"] == "d1"

        asyncio.run(runtime.bus.drain())

        assert sorted(m["token"] for m in gateway.sent) == ["T1", "T2"]

    def test_duplicate_id_conflicts(self, client):
        body = {"id": "r1", "bloodType": "A+"}
        assert client.post("/requests", json=body, headers=_auth()).status_code == 201

        response = client.post("/requests", json=body, headers=_auth())

        assert response.status_code == 409
        assert response.json()["detail"]["kind"] == "conflict"

    def test_unknown_request(self, client):
        response = client.post("/requests/missing/activate", headers=_auth())

        assert response.status_code == 404

    def test_accepted_request_cannot_be_reactivated(self, client):
        client.post("/requests", json={"id": "r1", "bloodType": "A+"}, headers=_auth())
        client.post("/requests/r1/accept", headers=_auth("d1"))

        response = client.post("/requests/r1/activate", headers=_auth())

        assert response.status_code == 409
        assert response.json()["detail"]["kind"] == "invalid_transition"


class TestDiagnostics:
    def test_consumer_status_without_service_bus(self, client):
        body = client.get("/notifications/debug/consumer-status").json()

        assert body["hasConnectionString"] is False
        assert body["running"] is False
        assert body["busPending"] == 0

    def test_run_sweep_on_demand(self, client):
        response = client.post("/notifications/debug/sweep/expiry", headers=_auth())

        assert response.status_code == 200
        assert response.json() == {"job": "expiry", "count": 0}

    def test_unknown_sweep(self, client):
        assert client.post("/notifications/debug/sweep/nope", headers=_auth()).status_code == 404

    def test_stuck_lists_old_unprocessed(self, client):
        response = client.get("/notifications/debug/stuck", headers=_auth())

        assert response.status_code == 200
        assert response.json() == []

    def test_health(self, client):
        assert client.get("/health").json() == {"ok": True, "store": "memory"}
