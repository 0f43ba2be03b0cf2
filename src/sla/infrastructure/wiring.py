"""
SLA Service Wiring
===================

Builds the SLA services for a database session.

Process-wide collaborators (calendar cache, per-ticket locks, the
notification dispatcher and the ticket directory client) live in
``SlaRuntime``; repositories and services are created per session.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from infrastructure.cache import InMemoryCacheService
from sla.application.services import (
    CalendarStore, TrackingService, TicketLockRegistry, ICacheService,
    ITicketDirectory, INotificationDispatcher, utcnow,
)
from sla.application.escalation import EscalationEngine, NotificationService
from sla.application.hooks import SlaLifecycleHooks
from sla.domain import BusinessHoursCalculator
from sla.domain.catalog import SlaCatalog
from sla.infrastructure.repositories import (
    SQLAlchemyCalendarRepository, SQLAlchemySlaRuleRepository, SQLAlchemyTrackingRepository,
    SQLAlchemyPauseLogRepository, SQLAlchemyNotificationLogRepository, SQLAlchemyCatalogRepository,
)
from sla.infrastructure.external import WebhookNotificationDispatcher, HttpTicketDirectory
from shared.infrastructure.logging import get_logger, log_duration

logger = get_logger(__name__)


@dataclass
class SlaServices:
    """Repositories and services bound to one session."""
    session: AsyncSession
    tracking_repository: SQLAlchemyTrackingRepository
    pause_log_repository: SQLAlchemyPauseLogRepository
    rule_repository: SQLAlchemySlaRuleRepository
    notification_repository: SQLAlchemyNotificationLogRepository
    catalog_repository: SQLAlchemyCatalogRepository
    calendar_store: CalendarStore
    tracking_service: TrackingService
    escalation_engine: EscalationEngine
    notification_service: NotificationService
    hooks: SlaLifecycleHooks


class SlaRuntime:
    """
    Process-wide SLA collaborators.

    Args:
        cache: Calendar cache shared by every session
        dispatcher: Notification transport
        ticket_directory: Ticket service client, None when not configured
        clock: Time source, overridable in tests
    """

    def __init__(
        self,
        cache: Optional[ICacheService] = None,
        dispatcher: Optional[INotificationDispatcher] = None,
        ticket_directory: Optional[ITicketDirectory] = None,
        locks: Optional[TicketLockRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.cache = cache or InMemoryCacheService(settings.sla_calendar_cache_ttl_seconds)
        self.dispatcher = dispatcher or WebhookNotificationDispatcher()
        self.ticket_directory = ticket_directory
        self.locks = locks or TicketLockRegistry()
        self.clock = clock
        self.calculator = BusinessHoursCalculator(settings.sla_max_calendar_walk_days)

    @classmethod
    def from_settings(cls) -> "SlaRuntime":
        directory = HttpTicketDirectory() if settings.ticket_service_url else None
        if directory is None:
            logger.warning("Ticket service URL not configured, contexts must be supplied by callers")
        return cls(ticket_directory=directory)

    def services(self, session: AsyncSession) -> SlaServices:
        tracking_repo = SQLAlchemyTrackingRepository(session)
        pause_repo = SQLAlchemyPauseLogRepository(session)
        rule_repo = SQLAlchemySlaRuleRepository(session)
        notification_repo = SQLAlchemyNotificationLogRepository(session)
        calendar_store = CalendarStore(SQLAlchemyCalendarRepository(session), self.cache)

        tracking_service = TrackingService(
            tracking_repository=tracking_repo,
            pause_log_repository=pause_repo,
            rule_repository=rule_repo,
            calendar_store=calendar_store,
            ticket_directory=self.ticket_directory,
            calculator=self.calculator,
            clock=self.clock,
            locks=self.locks,
        )
        return SlaServices(
            session=session,
            tracking_repository=tracking_repo,
            pause_log_repository=pause_repo,
            rule_repository=rule_repo,
            notification_repository=notification_repo,
            catalog_repository=SQLAlchemyCatalogRepository(session),
            calendar_store=calendar_store,
            tracking_service=tracking_service,
            escalation_engine=EscalationEngine(
                tracking_service, tracking_repo, rule_repo, notification_repo, self.ticket_directory
            ),
            notification_service=NotificationService(notification_repo, self.dispatcher, self.clock),
            hooks=SlaLifecycleHooks(tracking_service, rule_repo, self.ticket_directory),
        )

    async def apply_catalog(self, session_factory, catalog: SlaCatalog) -> dict:
        """Write a catalog in its own transaction and drop cached calendars."""
        with log_duration(logger, "sla_catalog_apply", rules=len(catalog.rules)):
            async with session_factory() as session:
                summary = await SQLAlchemyCatalogRepository(session).apply(catalog)
                await session.commit()
        self.cache.clear()
        return summary

    async def close(self) -> None:
        for client in (self.dispatcher, self.ticket_directory):
            close = getattr(client, "close", None)
            if close is not None:
                await close()


_runtime: Optional[SlaRuntime] = None


def init_runtime(runtime: Optional[SlaRuntime] = None) -> SlaRuntime:
    global _runtime
    _runtime = runtime or SlaRuntime.from_settings()
    return _runtime


def get_runtime() -> SlaRuntime:
    """
    Get the process-wide runtime.

    Raises:
        RuntimeError: If the runtime has not been initialized
    """
    if _runtime is None:
        raise RuntimeError("SLA runtime not initialized. Call init_runtime() first.")
    return _runtime
