"""HTTP surface of the calendar layer.

The calendar service is overridden with one wired to the in-process fakes,
so no database or network is needed.
"""

from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from calbridge.deps import get_calendar_service
from calbridge.main import app

PREFIX = "/api/v1/calendar"

CONNECTION = {
    "id": "g1",
    "provider": "google",
    "tokens": {"access_token": "access-1", "refresh_token": "refresh-1", "expires_at": "2999-01-01T00:00:00Z"},
}

APPOINTMENT = {
    "title": "Jane Doe - Checkup",
    "start": "2025-02-01T10:00:00Z",
    "end": "2025-02-01T10:30:00Z",
    "patient": {"name": "Jane Doe", "phone": "+33600000000"},
}


@pytest.fixture
def client(service):
    """FastAPI test client backed by the fake-wired service."""
    app.dependency_overrides[get_calendar_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def connected(client):
    response = client.post(f"{PREFIX}/connections", json=CONNECTION)
    assert response.status_code == 201, response.text
    return client


class TestRoutes:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_calendar_routes_registered(self, client):
        paths = {route.path for route in app.routes}
        assert f"{PREFIX}/connections" in paths
        assert f"{PREFIX}/connections/{{connection_id}}/appointments" in paths
        assert f"{PREFIX}/oauth/{{provider}}/authorize" in paths


class TestConnections:
    def test_register_hides_tokens(self, client):
        response = client.post(f"{PREFIX}/connections", json=CONNECTION)

        assert response.status_code == 201
        body = response.json()
        assert body["id"] == "g1"
        assert body["status"] == "connected"
        assert body["token_expires_at"].startswith("2999-01-01")
        assert "tokens" not in body
        assert "access-1" not in response.text

        listed = client.get(f"{PREFIX}/connections").json()
        assert [c["id"] for c in listed] == ["g1"]

    def test_register_failure_is_400(self, client, fake_google):
        fake_google.fail_with = 401

        response = client.post(f"{PREFIX}/connections", json=CONNECTION)

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "CONNECTION_VALIDATION_FAILED"

    def test_unknown_connection_is_404(self, client):
        response = client.get(f"{PREFIX}/connections/missing")

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "CONNECTION_NOT_FOUND"

    def test_validate_and_delete(self, connected):
        assert connected.post(f"{PREFIX}/connections/g1/validate").json() == {"valid": True}
        assert connected.delete(f"{PREFIX}/connections/g1").status_code == 204
        assert connected.get(f"{PREFIX}/connections/g1").status_code == 404

    def test_list_calendars(self, connected):
        response = connected.get(f"{PREFIX}/connections/g1/calendars")
        assert response.json()[0]["id"] == "primary"


class TestAppointments:
    def test_double_booking_is_409(self, connected, fake_google):
        first = connected.post(f"{PREFIX}/connections/g1/appointments", json=APPOINTMENT)
        second = connected.post(f"{PREFIX}/connections/g1/appointments", json=APPOINTMENT)

        assert first.status_code == 201
        assert first.json()["metadata"]["patient"]["name"] == "Jane Doe"
        assert second.status_code == 409
        detail = second.json()["detail"]
        assert detail["code"] == "APPOINTMENT_CONFLICT"
        assert detail["details"][0]["id"] == first.json()["id"]
        assert len(fake_google.events) == 1

    def test_end_before_start_is_rejected(self, connected):
        body = {**APPOINTMENT, "end": "2025-02-01T09:00:00Z"}
        assert connected.post(f"{PREFIX}/connections/g1/appointments", json=body).status_code == 422

    def test_update_get_and_cancel(self, connected):
        event_id = connected.post(f"{PREFIX}/connections/g1/appointments", json=APPOINTMENT).json()["id"]

        moved = connected.patch(
            f"{PREFIX}/connections/g1/appointments/{event_id}",
            json={"start": "2025-02-01T11:00:00Z", "end": "2025-02-01T11:30:00Z"},
        )
        assert moved.status_code == 200
        assert moved.json()["start"].startswith("2025-02-01T11:00:00")

        bad = connected.patch(
            f"{PREFIX}/connections/g1/appointments/{event_id}", json={"end": "2025-02-01T10:00:00Z"}
        )
        assert bad.status_code == 400
        assert bad.json()["detail"]["code"] == "INVALID_TIME_RANGE"

        assert connected.get(f"{PREFIX}/connections/g1/appointments/{event_id}").status_code == 200
        assert connected.delete(f"{PREFIX}/connections/g1/appointments/{event_id}").status_code == 204

    def test_provider_errors_are_502(self, connected, fake_google):
        fake_google.fail_with = 500

        response = connected.get(
            f"{PREFIX}/connections/g1/events",
            params={"start": "2025-02-01T00:00:00Z", "end": "2025-02-02T00:00:00Z"},
        )

        assert response.status_code == 502
        assert response.json()["detail"]["retryable"] is True


class TestAvailability:
    def test_slots_conflicts_and_free_busy(self, connected):
        connected.post(f"{PREFIX}/connections/g1/appointments", json=APPOINTMENT)
        window = {"start": "2025-02-01T10:00:00Z", "end": "2025-02-01T11:00:00Z"}

        slots = connected.post(f"{PREFIX}/connections/g1/availability", json={**window, "duration": 30}).json()
        conflict = connected.post(f"{PREFIX}/connections/g1/conflicts", json=window).json()
        free_busy = connected.post(f"{PREFIX}/connections/g1/free-busy", json=window).json()

        assert [s["start"][:16] for s in slots] == ["2025-02-01T10:30"]
        assert conflict["has_conflict"] is True
        assert len(free_busy["busy"]) == 1


class TestOAuth:
    def test_authorize_url(self, client):
        response = client.get(f"{PREFIX}/oauth/google/authorize", params={"state": "abc"})

        body = response.json()
        assert body["state"] == "abc"
        params = parse_qs(urlparse(body["url"]).query)
        assert params["client_id"] == ["google-client"]
        assert params["state"] == ["abc"]

    def test_apple_callback_is_rejected(self, client):
        response = client.get(f"{PREFIX}/oauth/apple/callback", params={"code": "x"})

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "OAUTH_ERROR"

    def test_unknown_provider_is_422(self, client):
        assert client.get(f"{PREFIX}/oauth/yahoo/authorize").status_code == 422
