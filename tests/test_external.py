"""
Tests for SLA external integrations.

WHAT: Tests the webhook dispatcher, circuit breaker, ticket service
client, YAML catalog manager and sweep scheduler.

WHY: These are the boundaries where network and file failures enter;
each must degrade into a typed outcome instead of crashing the engine.

HOW: httpx.MockTransport for HTTP, tmp_path for catalog files.
"""

from unittest.mock import AsyncMock

import httpx
import pytest
import yaml

from config import RecipientOutcome
from core.exceptions import ConfigurationError, ExternalServiceException
from sla.domain import OutboundMessage
from sla.infrastructure.external import (
    WebhookNotificationDispatcher, CircuitBreaker, CircuitState, HttpTicketDirectory,
    SlaCatalogManager, SlaScheduler,
)

from conftest import TEST_CATALOG


def message(email="engineer@example.com"):
    return OutboundMessage(recipient_email=email, recipient_name="Engineer", subject="subject", body="body")


def dispatcher_for(handler, max_retries=3, url="http://hooks.test/notify"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookNotificationDispatcher(
        webhook_url=url, max_retries=max_retries, backoff_seconds=0, http_client=client
    )


class TestWebhookNotificationDispatcher:
    """Tests for webhook delivery outcomes."""

    @pytest.mark.asyncio
    async def test_sent(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(202)

        dispatcher = dispatcher_for(handler)
        outcomes = await dispatcher.send([message()])

        assert [o.status for o in outcomes] == [RecipientOutcome.SENT]
        assert requests[0].url == "http://hooks.test/notify"
        assert b"engineer@example.com" in requests[0].content
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        dispatcher = dispatcher_for(handler, max_retries=3)
        outcomes = await dispatcher.send([message()])

        assert len(calls) == 3
        assert outcomes[0].status == RecipientOutcome.FAILED
        assert outcomes[0].error == "HTTP 500"

    @pytest.mark.asyncio
    async def test_recovers_on_retry(self):
        responses = iter([httpx.Response(503), httpx.Response(200)])

        dispatcher = dispatcher_for(lambda request: next(responses))
        outcomes = await dispatcher.send([message()])

        assert outcomes[0].status == RecipientOutcome.SENT

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        dispatcher = dispatcher_for(handler, max_retries=1)
        outcomes = await dispatcher.send([message()])

        assert outcomes[0].status == RecipientOutcome.FAILED
        assert outcomes[0].error == "connection refused"

    @pytest.mark.asyncio
    async def test_without_url_messages_are_logged(self):
        dispatcher = WebhookNotificationDispatcher(webhook_url="")

        outcomes = await dispatcher.send([message("a@example.com"), message("b@example.com")])

        assert [o.status for o in outcomes] == [RecipientOutcome.LOGGED, RecipientOutcome.LOGGED]

    @pytest.mark.asyncio
    async def test_circuit_opens_after_repeated_failures(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        dispatcher = dispatcher_for(handler, max_retries=1)
        await dispatcher.send([message(f"user{i}@example.com") for i in range(5)])
        outcomes = await dispatcher.send([message()])

        assert len(calls) == 5
        assert outcomes[0].error == "circuit open"


class TestCircuitBreaker:
    """Tests for circuit breaker state transitions."""

    def test_opens_at_threshold(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60)

        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert not breaker.allow_request()

    def test_half_open_after_timeout(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0)
        breaker.record_failure()

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request()

        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_failure_in_half_open_reopens(self):
        breaker = CircuitBreaker(failure_threshold=3, recovery_timeout=0)
        for _ in range(3):
            breaker.record_failure()
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.recovery_timeout = 60
        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN


def directory_for(handler):
    client = httpx.AsyncClient(base_url="http://tickets.test", transport=httpx.MockTransport(handler))
    return HttpTicketDirectory(http_client=client)


class TestHttpTicketDirectory:
    """Tests for the ticket service client."""

    @pytest.mark.asyncio
    async def test_get_ticket(self):
        def handler(request):
            assert request.url.path == "/tickets/T1"
            return httpx.Response(200, json={
                "id": "T1",
                "ticket_number": "INC-1001",
                "ticket_type": "incident",
                "asset_ids": [7, 8],
            })

        ticket = await directory_for(handler).get_ticket("T1")

        assert ticket.display_id == "INC-1001"
        assert ticket.asset_ids == ["7", "8"]

    @pytest.mark.asyncio
    async def test_not_found(self):
        directory = directory_for(lambda request: httpx.Response(404))

        assert await directory.get_ticket("T1") is None
        assert await directory.is_vip_user("u1") is False
        assert await directory.get_user("u1") is None

    @pytest.mark.asyncio
    async def test_server_error_raises(self):
        directory = directory_for(lambda request: httpx.Response(500))

        with pytest.raises(ExternalServiceException) as exc_info:
            await directory.get_ticket("T1")

        assert exc_info.value.service_name == "Ticket Service"

    @pytest.mark.asyncio
    async def test_assets_and_vip(self):
        def handler(request):
            if request.url.path == "/assets":
                assert request.url.params["ids"] == "a1,a2"
                return httpx.Response(200, json=[
                    {"id": "a1", "importance": "critical", "category": "server"},
                    {"id": "a2", "importance": "low", "is_active": False},
                ])
            return httpx.Response(200, json={"id": "u1", "email": "vip@example.com", "is_vip": True})

        directory = directory_for(handler)

        assets = await directory.get_assets(["a1", "a2"])
        assert [(a.id, a.importance, a.is_active) for a in assets] == [("a1", "critical", True), ("a2", "low", False)]
        assert await directory.is_vip_user("u1") is True
        assert await directory.get_assets([]) == []

    @pytest.mark.asyncio
    async def test_find_users_by_role(self):
        def handler(request):
            params = request.url.params
            assert params["role"] == "coordinator"
            assert params["department_id"] == "d1"
            assert params["limit"] == "2"
            return httpx.Response(200, json=[
                {"email": "c1@example.com", "name": "One"},
                {"name": "No email"},
                {"email": "c2@example.com"},
                {"email": "c3@example.com"},
            ])

        users = await directory_for(handler).find_users_by_role("coordinator", "d1", limit=2)

        assert [u.email for u in users] == ["c1@example.com", "c2@example.com"]
        assert users[1].role == "coordinator"


class TestSlaCatalogManager:
    """Tests for catalog loading and reloading."""

    @pytest.fixture
    def catalog_file(self, tmp_path):
        path = tmp_path / "sla_catalog.yaml"
        path.write_text(yaml.safe_dump(TEST_CATALOG))
        return path

    @pytest.mark.asyncio
    async def test_load_applies_catalog(self, catalog_file):
        apply = AsyncMock()
        manager = SlaCatalogManager(apply)

        catalog = await manager.load(catalog_file)

        apply.assert_awaited_once_with(catalog)
        assert manager.catalog is catalog
        assert len(catalog.rules) == 3

    @pytest.mark.asyncio
    async def test_missing_file_keeps_store(self, tmp_path):
        apply = AsyncMock()
        manager = SlaCatalogManager(apply)

        assert await manager.load(tmp_path / "missing.yaml") is None
        apply.assert_not_awaited()

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("rules: [\n")

        with pytest.raises(ConfigurationError):
            SlaCatalogManager.parse(path)

    def test_invalid_catalog(self, tmp_path):
        path = tmp_path / "invalid.yaml"
        path.write_text(yaml.safe_dump({"rules": [{"name": "x", "min_tat": 60, "avg_tat": 30, "max_tat": 90}]}))

        with pytest.raises(ConfigurationError) as exc_info:
            SlaCatalogManager.parse(path)

        assert exc_info.value.details["errors"]

    @pytest.mark.asyncio
    async def test_broken_reload_keeps_previous_catalog(self, catalog_file):
        manager = SlaCatalogManager(AsyncMock())
        original = await manager.load(catalog_file)

        catalog_file.write_text("rules: [\n")

        assert await manager.reload() is False
        assert manager.catalog is original

    @pytest.mark.asyncio
    async def test_reload_picks_up_changes(self, catalog_file):
        manager = SlaCatalogManager(AsyncMock())
        await manager.load(catalog_file)

        changed = dict(TEST_CATALOG, rules=TEST_CATALOG["rules"][2:])
        catalog_file.write_text(yaml.safe_dump(changed))

        assert await manager.reload() is True
        assert [r.name for r in manager.catalog.rules] == ["Default"]

    @pytest.mark.asyncio
    async def test_reload_before_load(self):
        assert await SlaCatalogManager(AsyncMock()).reload() is False

    @pytest.mark.asyncio
    async def test_watching(self, catalog_file):
        manager = SlaCatalogManager(AsyncMock())
        await manager.load(catalog_file)

        manager.start_watching()
        manager.stop_watching()

        assert not manager.is_watching

    def test_watching_requires_load(self):
        with pytest.raises(RuntimeError):
            SlaCatalogManager(AsyncMock()).start_watching()


class TestSlaScheduler:
    """Tests for the sweep scheduler lifecycle."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        scheduler = SlaScheduler(interval_seconds=300)
        runs = []

        async def job():
            runs.append(1)

        await scheduler.start(job)
        assert scheduler.is_running
        assert scheduler.next_run_time is not None

        await scheduler.start(job)
        await scheduler.stop()

        assert not scheduler.is_running
        assert runs == []

    @pytest.mark.asyncio
    async def test_stop_when_not_started(self):
        scheduler = SlaScheduler(interval_seconds=60)

        await scheduler.stop()

        assert scheduler.next_run_time is None
