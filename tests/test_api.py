"""
API tests for the SLA routes.

WHAT: Tests the HTTP surface: status codes, error bodies and payloads.

WHY: The ticket service and dashboards integrate over HTTP; the
mapping from engine errors to status codes is part of the contract.

HOW: httpx.ASGITransport against the FastAPI app. The session
dependency is overridden with the test session and the runtime is
the one built from fakes, so no lifespan startup is needed.
"""

import httpx
import pytest
import pytest_asyncio

from infrastructure.database import get_session
from sla.infrastructure.wiring import init_runtime

from conftest import at


CRITICAL = {"asset_importance": "critical", "asset_categories": ["server"], "ticket_type": "incident"}
DEFAULT = {"ticket_type": "incident"}
VIP = {"is_vip": True, "ticket_type": "incident"}


@pytest_asyncio.fixture
async def client(runtime, db_session, catalog_applied):
    from main import app

    async def override_session():
        yield db_session

    app.dependency_overrides[get_session] = override_session
    init_runtime(runtime)
    for name in ("sweep_job", "event_consumer", "sla_scheduler"):
        if hasattr(app.state, name):
            delattr(app.state, name)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


async def start(client, ticket_id="T1", context=CRITICAL):
    response = await client.post(f"/sla/tickets/{ticket_id}/tracking", json={"context": context})
    assert response.status_code == 201
    return response.json()


class TestTrackingRoutes:
    """Tests for the tracking lifecycle endpoints."""

    @pytest.mark.asyncio
    async def test_initialize(self, client, rules):
        data = await start(client)

        assert data["ticket_id"] == "T1"
        assert data["sla_rule_id"] == rules["Critical assets"].id
        assert data["sla_status"] == "on_track"
        assert data["sla_cycle"] == 1

    @pytest.mark.asyncio
    async def test_duplicate_initialize_conflicts(self, client):
        await start(client)

        response = await client.post("/sla/tickets/T1/tracking", json={"context": DEFAULT})

        assert response.status_code == 409
        assert response.json()["error_type"] == "DomainException"

    @pytest.mark.asyncio
    async def test_initialize_requires_context_or_ticket(self, client):
        response = await client.post("/sla/tickets/T1/tracking", json={})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_initialize_from_ticket(self, client, directory, rules):
        directory.vip_users.add("u1")

        response = await client.post(
            "/sla/tickets/T1/tracking",
            json={"ticket": {"id": "T1", "requester_id": "u1", "ticket_type": "incident"}},
        )

        assert response.status_code == 201
        assert response.json()["sla_rule_id"] == rules["VIP"].id

    @pytest.mark.asyncio
    async def test_untracked_ticket(self, client):
        status = await client.get("/sla/tickets/T1/status")
        tracking = await client.get("/sla/tickets/T1/tracking")
        recompute = await client.post("/sla/tickets/T1/recompute")

        assert status.status_code == 200
        assert status.json()["is_tracked"] is False
        assert status.json()["status"] == "not_tracked"
        assert tracking.status_code == 404
        assert recompute.status_code == 404
        assert recompute.json()["error_type"] == "NotTrackedError"

    @pytest.mark.asyncio
    async def test_status(self, client, clock):
        await start(client)
        clock.set(at(16, 10))

        data = (await client.get("/sla/tickets/T1/status")).json()

        assert data["status"] == "warning"
        assert data["elapsed_minutes"] == 90
        assert data["remaining_minutes"] == 390
        assert data["percent_used"] == 19

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, client, clock):
        await start(client)

        clock.set(at(16, 9, 30))
        paused = await client.post("/sla/tickets/T1/pause", json={"reason": "Waiting for user", "actor": "agent"})
        clock.set(at(16, 10))
        resumed = await client.post("/sla/tickets/T1/resume")

        assert paused.status_code == 200
        assert paused.json()["is_paused"] is True
        assert paused.json()["business_elapsed_minutes"] == 60
        assert resumed.json()["is_paused"] is False
        assert resumed.json()["total_paused_minutes"] == 30

        history = (await client.get("/sla/tickets/T1/pause-history")).json()
        assert [(h["kind"], h["paused_duration_minutes"]) for h in history] == [("pause", 30)]

    @pytest.mark.asyncio
    async def test_pause_not_allowed(self, client):
        await start(client, context=VIP)

        response = await client.post("/sla/tickets/T1/pause")

        assert response.status_code == 409
        assert response.json()["error_type"] == "PauseNotAllowedError"

    @pytest.mark.asyncio
    async def test_stop_and_reopen_new_sla(self, client, clock):
        await start(client)
        clock.set(at(16, 10))
        stopped = await client.post("/sla/tickets/T1/stop", json={})

        clock.set(at(17, 9))
        reopened = await client.post("/sla/tickets/T1/reopen", json={"mode": "new_sla"})

        assert stopped.json()["final_status"] == "warning"
        assert reopened.status_code == 200
        assert reopened.json()["sla_cycle"] == 2
        assert reopened.json()["resolved_at"] is None

    @pytest.mark.asyncio
    async def test_invalid_reopen_mode(self, client):
        await start(client)

        response = await client.post("/sla/tickets/T1/reopen", json={"mode": "restart"})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_bulk_status(self, client):
        await start(client)

        response = await client.post("/sla/tickets/status/bulk", json={"ticket_ids": ["T1", "T2", "T1"]})

        statuses = response.json()["statuses"]
        assert set(statuses) == {"T1", "T2"}
        assert statuses["T1"]["rule_name"] == "Critical assets"
        assert statuses["T2"] is None

    @pytest.mark.asyncio
    async def test_reevaluate_and_apply(self, client, clock, rules):
        await start(client, context=DEFAULT)
        clock.set(at(16, 10))

        response = await client.post("/sla/tickets/T1/reevaluate", json={"context": CRITICAL, "apply": True})

        data = response.json()
        assert data["changed"] is True
        assert data["applied"] is True
        assert data["rule"]["name"] == "Critical assets"
        assert data["escalation_levels"] == [1, 2, 3, 4]
        tracking = (await client.get("/sla/tickets/T1/tracking")).json()
        assert tracking["sla_rule_id"] == rules["Critical assets"].id
        assert tracking["business_elapsed_minutes"] == 90


class TestEscalationRoutes:
    """Tests for escalation history and acknowledgement."""

    @pytest.mark.asyncio
    async def test_history_and_acknowledge(self, client, services, clock):
        await start(client)
        clock.set(at(16, 10))
        await services.escalation_engine.process_ticket("T1")

        history = (await client.get("/sla/tickets/T1/escalations")).json()
        assert [n["trigger_type"] for n in history] == ["warning_zone"]

        acknowledged = await client.post(
            f"/sla/escalations/{history[0]['id']}/acknowledge", params={"actor": "lead"}
        )
        assert acknowledged.status_code == 200

        stats = (await client.get("/sla/escalations/stats")).json()
        assert stats["total"] == 1
        assert stats["acknowledged"] == 1
        assert stats["by_trigger_type"]["warning_zone"] == 1

    @pytest.mark.asyncio
    async def test_acknowledge_unknown(self, client):
        response = await client.post("/sla/escalations/nope/acknowledge", params={"actor": "lead"})

        assert response.status_code == 404


class TestReportingRoutes:
    """Tests for breach listings, metrics and cache control."""

    @pytest.mark.asyncio
    async def test_breached_and_approaching(self, client, clock):
        await start(client, "T1")
        await start(client, "T2", DEFAULT)
        clock.set(at(17, 9, 10))
        await client.post("/sla/tickets/T1/recompute")

        approaching = (await client.get("/sla/approaching-breach")).json()
        assert [(i["ticket_id"], i["remaining_minutes"]) for i in approaching] == [("T1", 20)]

        clock.set(at(17, 10))
        await client.post("/sla/tickets/T1/recompute")
        breached = (await client.get("/sla/breached")).json()
        assert [t["ticket_id"] for t in breached] == ["T1"]

    @pytest.mark.asyncio
    async def test_metrics(self, client):
        await start(client)

        data = (await client.get("/sla/metrics")).json()

        assert data["total"] == 1
        assert data["by_status"]["on_track"] == 1
        assert data["compliance_rate"] is None

    @pytest.mark.asyncio
    async def test_cache_invalidation(self, client):
        everything = await client.post("/sla/cache/invalidate")
        one = await client.post("/sla/cache/invalidate", json={"schedule_id": "office"})

        assert everything.json() == {"invalidated": ["all"]}
        assert one.json() == {"invalidated": ["schedule:office"]}


class TestBackgroundRoutes:
    """Sweep and event routes need the background components."""

    @pytest.mark.asyncio
    async def test_sweep_unavailable(self, client):
        assert (await client.post("/sla/sweep")).status_code == 503
        assert (await client.get("/sla/sweep/status")).status_code == 503

    @pytest.mark.asyncio
    async def test_events_unavailable(self, client):
        response = await client.post(
            "/sla/events", json={"event_type": "status_changed", "ticket_id": "T1", "new_value": "on_hold"}
        )

        assert response.status_code == 503


class TestRequestContext:
    """Correlation IDs are echoed on responses and error bodies."""

    @pytest.mark.asyncio
    async def test_correlation_id_is_echoed(self, client):
        response = await client.get("/sla/tickets/T1/tracking", headers={"X-Correlation-ID": "req-42"})

        assert response.headers["X-Correlation-ID"] == "req-42"
        assert response.json()["correlation_id"] == "req-42"
        assert "X-Response-Time" in response.headers

    @pytest.mark.asyncio
    async def test_correlation_id_is_generated(self, client):
        response = await client.get("/sla/metrics")

        assert response.headers["X-Correlation-ID"]
