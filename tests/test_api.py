"""
API tests: the real application with in-memory services behind `app.state`.
"""

from contextlib import asynccontextmanager

import pytest
from fastapi.testclient import TestClient

from main import create_app
from sla.application import PolicyResolver, SLAMetricsService

CREATED = "2024-01-15T08:00:00Z"


@pytest.fixture
def client(engine, config_provider, uow_factory):
    @asynccontextmanager
    async def lifespan(app):
        app.state.config_manager = config_provider
        app.state.clock_engine = engine
        app.state.policy_resolver = PolicyResolver(config_provider)
        app.state.metrics_service = SLAMetricsService(uow_factory, config_provider)
        app.state.scheduler = None
        yield

    with TestClient(create_app(lifespan_handler=lifespan)) as test_client:
        yield test_client


def create_clock(client, ticket_id="T-1", priority=3, **extra):
    payload = {"ticket_id": ticket_id, "priority": priority, "created_at": CREATED, **extra}
    return client.post("/sla/clocks", json=payload)


class TestClockEndpoints:

    def test_create_clock(self, client):
        response = create_clock(client, team_id="vip")

        assert response.status_code == 201
        body = response.json()
        assert body["policy_id"] == "p3-vip"
        assert body["calendar_id"] == "office"
        assert body["clock_state"] == "running"
        assert body["resolution"]["target_minutes"] == 600

    def test_create_is_idempotent(self, client):
        create_clock(client)
        again = create_clock(client, priority=1)

        assert again.status_code == 201
        assert again.json()["policy_id"] == "p3"

    def test_no_policy_for_priority(self, client):
        response = create_clock(client, priority=2)

        assert response.status_code == 422
        assert response.json()["error_type"] == "PolicyNotFoundException"

    def test_invalid_priority(self, client):
        assert create_clock(client, priority=9).status_code == 422

    def test_pause_and_read_back(self, client):
        create_clock(client)
        response = client.post(
            "/sla/clocks/T-1/status",
            json={"to_status": "Pending Info", "at": "2024-01-15T12:00:00Z"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["clock_state"] == "paused"
        assert body["pause_reason"] == "Pending Info"
        assert body["resolution"]["elapsed_ms"] == 3 * 3600 * 1000

        fetched = client.get("/sla/clocks/T-1").json()
        assert fetched["resolution"]["elapsed_ms"] == 3 * 3600 * 1000
        assert fetched["response"]["met_at"] == "2024-01-15T12:00:00Z"

    def test_first_response_without_body(self, client):
        create_clock(client)
        response = client.post("/sla/clocks/T-1/first-response")

        assert response.status_code == 200
        assert response.json()["response"]["met_at"] is not None

    def test_priority_change(self, client):
        create_clock(client)
        response = client.post("/sla/clocks/T-1/priority", json={"priority": 1, "at": "2024-01-15T09:30:00Z"})

        assert response.status_code == 200
        body = response.json()
        assert body["policy_id"] == "p1"
        assert [a["alert_type"] for a in body["alerts"]] == ["breach"]

    def test_unknown_clock(self, client):
        response = client.get("/sla/clocks/nope")

        assert response.status_code == 404
        assert response.json()["error_type"] == "ClockNotFoundException"

    def test_locked_clock_is_a_conflict(self, client, store):
        create_clock(client)
        store.locked.add("T-1")

        response = client.post("/sla/clocks/T-1/status", json={"to_status": "In Progress"})
        assert response.status_code == 409

    def test_correlation_id_is_echoed(self, client):
        response = client.get("/sla/clocks/nope", headers={"X-Correlation-ID": "abc-123"})
        assert response.headers["X-Correlation-ID"] == "abc-123"
        assert response.json()["correlation_id"] == "abc-123"


class TestPolicyAndCalendarEndpoints:

    def test_list_policies(self, client):
        ids = [p["id"] for p in client.get("/sla/policies").json()]
        assert ids == ["p1", "p3", "p3-vip"]

    def test_resolve_policy(self, client):
        assert client.get("/sla/policies/resolve", params={"priority": 3, "team_id": "vip"}).json()["id"] == "p3-vip"
        assert client.get("/sla/policies/resolve", params={"priority": 4}).status_code == 422

    def test_business_elapsed(self, client):
        response = client.get(
            "/sla/calendars/office/elapsed",
            params={"start": "2024-01-15T08:00:00Z", "end": "2024-01-15T17:00:00Z"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["business_elapsed_ms"] == 28_800_000
        assert body["business_elapsed_minutes"] == 480

    def test_unknown_calendar(self, client):
        response = client.get(
            "/sla/calendars/moon/elapsed",
            params={"start": "2024-01-15T08:00:00Z", "end": "2024-01-15T17:00:00Z"},
        )
        assert response.status_code == 404


class TestMetricsEndpoints:

    def test_attainment_and_resolution_time(self, client):
        create_clock(client)
        client.post("/sla/clocks/T-1/status", json={"to_status": "Resolved", "at": "2024-01-15T12:00:00Z"})

        attainment = client.get("/sla/metrics/sla").json()
        assert attainment == {"total": 1, "met": 1, "sla_attainment": 1.0, "excluded": 0}

        resolution = client.get("/sla/metrics/resolution", params={"priority": 3}).json()
        assert resolution["count"] == 1
        assert resolution["avg_resolution_ms"] == 3 * 3600 * 1000

    def test_empty_attainment(self, client):
        assert client.get("/sla/metrics/sla").json()["sla_attainment"] == 0.0


class TestHealth:

    def test_health(self, client):
        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["checks"]["sla_config"] == "loaded (2 calendars, 3 policies)"
        assert body["checks"]["sla_scheduler"] == "stopped"

    def test_root(self, client):
        assert client.get("/").json()["health"] == "/health"
