"""
SLA External Service Integrations
==================================

External services for SLA tracking:
- YAML catalog loader with watchdog hot-reload
- Webhook notification dispatcher
- Ticket service REST client (tickets, assets, users)
- APScheduler for the periodic sweep
"""

import asyncio
import threading
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import yaml
import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler

from shared.infrastructure.logging import get_logger
from config import settings, RecipientOutcome
from core.exceptions import ConfigurationError, ExternalServiceException
from sla.application.services import ITicketDirectory, INotificationDispatcher
from sla.domain import (
    AssetSnapshot, TicketSnapshot, Recipient, OutboundMessage, DeliveryOutcome,
)
from sla.domain.catalog import SlaCatalog

logger = get_logger(__name__)


# ========== Catalog loader ==========

class CatalogFileHandler(FileSystemEventHandler):
    """Watchdog event handler for SLA catalog file changes."""

    def __init__(self, catalog_manager: "SlaCatalogManager", catalog_path: Path):
        self.catalog_manager = catalog_manager
        self.catalog_path = catalog_path
        super().__init__()

    def on_modified(self, event):
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.catalog_path.resolve():
            logger.info("SLA catalog file changed", extra={"path": event.src_path})
            self.catalog_manager.schedule_reload()


class SlaCatalogManager:
    """
    Loads the YAML catalog and applies it to the configuration store.

    Watchdog callbacks run on the observer thread; reloads are handed
    back to the event loop that called ``start_watching``.

    Args:
        apply: Coroutine function writing a parsed catalog to the store
    """

    def __init__(self, apply: Callable[[SlaCatalog], Awaitable[Any]]):
        self._apply = apply
        self._catalog: Optional[SlaCatalog] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @staticmethod
    def parse(path: Path) -> SlaCatalog:
        """
        Parse and validate a catalog file.

        Raises:
            ConfigurationError: If the file is not valid YAML or fails validation
        """
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
            return SlaCatalog.model_validate(data)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid SLA catalog YAML: {e}", {"path": str(path)}) from e
        except ValidationError as e:
            raise ConfigurationError(
                "Invalid SLA catalog",
                {"path": str(path), "errors": e.errors(include_url=False)},
            ) from e

    async def load(self, path: Path) -> Optional[SlaCatalog]:
        """Initial load; a missing file leaves the store as it is."""
        self._path = Path(path)
        if not self._path.exists():
            logger.warning("SLA catalog file not found, using stored configuration", extra={"path": str(path)})
            return None

        catalog = self.parse(self._path)
        await self._apply(catalog)
        with self._lock:
            self._catalog = catalog
        return catalog

    async def reload(self) -> bool:
        """Reload the catalog; a broken file keeps the previous configuration."""
        if self._path is None:
            return False

        try:
            catalog = self.parse(self._path)
            await self._apply(catalog)
        except Exception as e:
            logger.error("Failed to reload SLA catalog", extra={"error": str(e)}, exc_info=True)
            return False

        with self._lock:
            self._catalog = catalog
        logger.info("SLA catalog reloaded", extra={"rules": len(catalog.rules)})
        return True

    def schedule_reload(self) -> None:
        if self._loop is None or self._loop.is_closed():
            logger.warning("No event loop available for SLA catalog reload")
            return
        asyncio.run_coroutine_threadsafe(self.reload(), self._loop)

    def start_watching(self) -> None:
        """
        Start watching the catalog file for changes.

        Skips watching when the file does not exist or inotify is not
        available (e.g. some container runtimes).
        """
        if self._path is None:
            raise RuntimeError("Catalog not loaded. Call load() first.")

        if not self._path.exists():
            logger.info("SLA catalog file doesn't exist, skipping file watch", extra={"path": str(self._path)})
            return

        self._loop = asyncio.get_running_loop()
        try:
            self._observer = Observer()
            handler = CatalogFileHandler(self, self._path)
            self._observer.schedule(handler, str(self._path.parent), recursive=False)
            self._observer.start()
            logger.info("Started watching SLA catalog", extra={"path": str(self._path)})
        except OSError as e:
            logger.warning("File watching not available, using static catalog", extra={"error": str(e)})
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    @property
    def is_watching(self) -> bool:
        return self._observer is not None

    @property
    def catalog(self) -> Optional[SlaCatalog]:
        with self._lock:
            return self._catalog


# ========== Circuit breaker ==========

class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._failure_count >= self.failure_threshold or self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            self._opened_at = time.monotonic()
            logger.warning(
                "Circuit breaker opened",
                extra={"failure_count": self._failure_count, "recovery_timeout": self.recovery_timeout}
            )


# ========== Notification dispatcher ==========

class WebhookNotificationDispatcher(INotificationDispatcher):
    """
    Posts each message to a webhook as JSON.

    Each recipient is retried with exponential backoff. Without a
    configured URL messages are only logged and reported as ``logged``.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_seconds: float = 1.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._url = webhook_url if webhook_url is not None else settings.notification_webhook_url
        self._timeout = timeout_seconds or settings.notification_timeout_seconds
        self._max_retries = max_retries or settings.notification_max_retries
        self._backoff = backoff_seconds
        self._http_client = http_client
        self._circuit_breaker = CircuitBreaker(failure_threshold=5, recovery_timeout=60)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def send(self, messages: List[OutboundMessage]) -> List[DeliveryOutcome]:
        outcomes = []
        for message in messages:
            outcomes.append(await self._send_one(message))
        return outcomes

    async def _send_one(self, message: OutboundMessage) -> DeliveryOutcome:
        if not self._url:
            logger.info(
                "Escalation message (no webhook configured)",
                extra={"recipient": message.recipient_email, "subject": message.subject}
            )
            return DeliveryOutcome(message.recipient_email, RecipientOutcome.LOGGED)

        if not self._circuit_breaker.allow_request():
            return DeliveryOutcome(message.recipient_email, RecipientOutcome.FAILED, "circuit open")

        payload = {
            "to": message.recipient_email,
            "name": message.recipient_name,
            "subject": message.subject,
            "body": message.body,
        }
        error = None
        for attempt in range(self._max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self._url, json=payload)
                if response.is_success:
                    self._circuit_breaker.record_success()
                    return DeliveryOutcome(message.recipient_email, RecipientOutcome.SENT)
                error = f"HTTP {response.status_code}"
                logger.warning(
                    "Notification webhook returned error status",
                    extra={"status_code": response.status_code, "attempt": attempt + 1}
                )
            except httpx.HTTPError as e:
                error = str(e) or type(e).__name__
                logger.error(
                    "Notification webhook call failed",
                    extra={"error": error, "attempt": attempt + 1, "recipient": message.recipient_email}
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._backoff * 2 ** attempt)

        self._circuit_breaker.record_failure()
        return DeliveryOutcome(message.recipient_email, RecipientOutcome.FAILED, error)

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


# ========== Ticket directory ==========

class HttpTicketDirectory(ITicketDirectory):
    """
    REST client for the ticket service.

    Endpoints:
        GET /tickets/{id}
        GET /assets?ids=a,b
        GET /users/{id}
        GET /users?role=...&department_id=...&limit=...

    A 404 maps to "not found"; other failures raise ExternalServiceException.
    """

    SERVICE_NAME = "Ticket Service"

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = (base_url or settings.ticket_service_url or "").rstrip("/")
        self._timeout = timeout_seconds or settings.ticket_service_timeout_seconds
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
        return self._http_client

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        client = await self._get_client()
        try:
            response = await client.get(path, params=params)
        except httpx.HTTPError as e:
            raise ExternalServiceException(self.SERVICE_NAME, str(e) or type(e).__name__) from e

        if response.status_code == 404:
            return None
        if response.is_error:
            raise ExternalServiceException(
                self.SERVICE_NAME, f"GET {path} returned HTTP {response.status_code}"
            )
        return response.json()

    async def get_ticket(self, ticket_id: str) -> Optional[TicketSnapshot]:
        data = await self._get(f"/tickets/{ticket_id}")
        if data is None:
            return None
        return TicketSnapshot(
            id=str(data["id"]),
            ticket_number=data.get("ticket_number"),
            title=data.get("title"),
            status=data.get("status"),
            priority=data.get("priority"),
            ticket_type=data.get("ticket_type"),
            channel=data.get("channel"),
            requester_id=data.get("requester_id"),
            assigned_engineer_id=data.get("assigned_engineer_id"),
            assigned_engineer_email=data.get("assigned_engineer_email"),
            assigned_engineer_name=data.get("assigned_engineer_name"),
            department_id=data.get("department_id"),
            asset_ids=[str(a) for a in data.get("asset_ids") or []],
        )

    async def get_assets(self, asset_ids: Sequence[str]) -> List[AssetSnapshot]:
        if not asset_ids:
            return []
        data = await self._get("/assets", params={"ids": ",".join(asset_ids)}) or []
        return [
            AssetSnapshot(
                id=str(a["id"]),
                importance=a.get("importance"),
                category=a.get("category"),
                is_active=a.get("is_active", True),
            )
            for a in data
        ]

    async def is_vip_user(self, user_id: str) -> bool:
        data = await self._get(f"/users/{user_id}")
        return bool(data and data.get("is_vip"))

    async def get_user(self, user_id: str) -> Optional[Recipient]:
        data = await self._get(f"/users/{user_id}")
        if not data or not data.get("email"):
            return None
        return Recipient(email=data["email"], name=data.get("name"), role=data.get("role"))

    async def find_users_by_role(
        self, role: str, department_id: Optional[str] = None, limit: int = 3
    ) -> List[Recipient]:
        params = {"role": role, "limit": limit, "is_active": "true"}
        if department_id:
            params["department_id"] = department_id
        data = await self._get("/users", params=params) or []
        return [
            Recipient(email=u["email"], name=u.get("name"), role=u.get("role", role))
            for u in data if u.get("email")
        ][:limit]

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


# ========== Scheduler ==========

class SlaScheduler:
    """
    Wrapper for APScheduler driving the periodic SLA sweep.

    Manages the lifecycle of the scheduler and jobs.
    """

    JOB_ID = "sla_sweep"

    def __init__(self, interval_seconds: Optional[int] = None):
        self.interval_seconds = interval_seconds or settings.sla_sweep_interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func) -> None:
        """Start the scheduler with the given job function."""
        if self._running:
            logger.warning("SLA scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id=self.JOB_ID,
            name="SLA Sweep Job",
            misfire_grace_time=60,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        self._running = True

        logger.info("SLA scheduler started", extra={"interval_seconds": self.interval_seconds})

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("SLA scheduler stopped")

    @property
    def next_run_time(self) -> Optional[str]:
        if not self._scheduler:
            return None
        job = self._scheduler.get_job(self.JOB_ID)
        return job.next_run_time.isoformat() if job and job.next_run_time else None

    @property
    def is_running(self) -> bool:
        return self._running
