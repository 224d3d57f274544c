"""Integration tests for API endpoints."""

import json
from types import SimpleNamespace

import httpx
import pytest
from fastapi.testclient import TestClient

from relayrace.api.dependencies import get_services
from relayrace.api.main import app
from relayrace.core.config import settings
from relayrace.proxy.connector import RelayConnector
from relayrace.proxy.provider import RelayProviderClient
from relayrace.proxy.registry import SessionRelayRegistry
from relayrace.race.engine import WaveRaceEngine


@pytest.fixture(scope="module")
def client():
    """Create test client running the application lifespan."""
    with TestClient(app) as c:
        yield c


@pytest.fixture
def backend(client):
    """Route race attempts to a scripted backend instead of the network.

    Yields a dict whose ``handler`` entry answers every outbound request.
    """
    state = {"handler": lambda request: httpx.Response(200, json={})}

    def dispatch(request):
        return state["handler"](request)

    registry = SessionRelayRegistry(RelayProviderClient(feed_url=""), enabled=False)
    connector = RelayConnector(transport=httpx.MockTransport(dispatch))
    engine = WaveRaceEngine(registry, registry.provider, connector)

    app.dependency_overrides[get_services] = lambda: SimpleNamespace(engine=engine, registry=registry)
    yield state
    app.dependency_overrides.clear()


class TestHealthEndpoints:
    """Tests for health endpoints."""

    def test_healthz(self, client):
        """Test liveness check."""
        response = client.get("/api/healthz")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_system_info(self, client):
        """Test system info endpoint."""
        response = client.get("/api/info")

        assert response.status_code == 200
        data = response.json()
        assert data["app_name"] == settings.app_name
        assert data["relay_enabled"] is False
        assert data["scheduler_running"] is True
        assert {job["id"] for job in data["jobs"]} == {"relay-refresh", "quality-sweep"}

    def test_root(self, client):
        """Test root endpoint."""
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "running"


class TestRelayEndpoints:
    """Tests for relay status and toggle endpoints."""

    def test_status_empty(self, client):
        """Test status with no sessions."""
        response = client.get("/api/relays/status")

        assert response.status_code == 200
        data = response.json()
        assert data["sessions"] == {}
        assert data["totalSessions"] == 0
        assert data["enabled"] is False
        assert "currentTime" in data

    def test_toggle(self, client):
        """Test relays can be switched on and off at runtime."""
        response = client.post("/api/relays/toggle", json={"enabled": True})

        assert response.status_code == 200
        assert response.json() == {"enabled": True, "active_sessions": 0}
        assert client.get("/api/relays/status").json()["enabled"] is True

        response = client.post("/api/relays/toggle", json={"enabled": False})

        assert response.json()["enabled"] is False
        assert client.get("/api/relays/status").json()["enabled"] is False

    def test_toggle_requires_flag(self, client):
        """Test toggle body validation."""
        response = client.post("/api/relays/toggle", json={})
        assert response.status_code == 422


class TestTicketEndpoint:
    """Tests for ticket acquisition."""

    def test_ticket(self, client, backend):
        """Test a ticket is returned and caller headers are forwarded."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"data": {"ticket": "T-42"}})

        backend["handler"] = handler

        response = client.get(
            "/ticket/entry", headers={"x-proxy-key": "alice", "Authorization": "Bearer abc", "uid": "7"}
        )

        assert response.status_code == 200
        assert response.json() == {"data": {"ticket": "T-42"}, "success": True}
        assert seen[0].url.path == settings.ticket_path
        assert seen[0].headers["authorization"] == "Bearer abc"
        assert seen[0].headers["uid"] == "7"

    def test_ticket_timeout(self, client, backend, monkeypatch):
        """Test no ticket before the deadline maps to 504."""
        monkeypatch.setattr(settings, "ticket_global_timeout", 0.3)
        backend["handler"] = lambda request: httpx.Response(200, json={"data": None})

        response = client.get("/ticket/entry")

        assert response.status_code == 504
        assert response.json() == {"success": False, "message": "ticket acquire timeout"}


class TestSubmitEndpoint:
    """Tests for quota submission."""

    def test_invalid_payload(self, client):
        """Test missing fields are rejected before racing."""
        response = client.post("/submit/apply", json={"uniqueId": "U-1"})

        assert response.status_code == 400
        assert response.json() == {"success": False, "message": "invalid payload"}

    def test_invalid_json(self, client):
        """Test undecodable body is rejected."""
        response = client.post(
            "/submit/apply", content=b"not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json()["message"] == "invalid payload"

    def test_submit(self, client, backend, sample_submit_body):
        """Test the quota that succeeds is reported."""

        def handler(request):
            payload = json.loads(request.content)
            if payload["tourismSubsidyId"] == "B":
                return httpx.Response(200, json={"success": True, "data": {"applyId": 9}})
            return httpx.Response(200, json={"success": False, "message": "quota exhausted"})

        backend["handler"] = handler

        response = client.post("/submit/apply", json=sample_submit_body, headers={"x-proxy-key": "bob"})

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "isDuplicate": False,
            "quotaIndex": 1,
            "response": {"success": True, "data": {"applyId": 9}},
        }

    def test_submit_duplicate(self, client, backend, sample_submit_body):
        """Test a duplicate submission counts as success."""
        backend["handler"] = lambda request: httpx.Response(
            200, json={"success": False, "message": f"请勿{settings.submit_duplicate_marker}"}
        )

        response = client.post("/submit/apply", json=sample_submit_body)

        assert response.status_code == 200
        assert response.json()["isDuplicate"] is True

    def test_submit_timeout(self, client, backend, sample_submit_body, monkeypatch):
        """Test no acceptable submission maps to 504."""
        monkeypatch.setattr(settings, "submit_global_timeout", 0.3)
        backend["handler"] = lambda request: httpx.Response(500, text="busy")

        response = client.post("/submit/apply", json=sample_submit_body)

        assert response.status_code == 504
        assert response.json() == {"success": False, "message": "submit timeout"}
