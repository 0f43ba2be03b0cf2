"""
SLA Infrastructure Layer
=========================

Infrastructure implementations for SLA tracking:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer and catalog writer
- External: Catalog watcher, webhook dispatcher, ticket service client, scheduler
- Events: Background lifecycle event consumer
- Wiring: Per-session service construction
"""

from sla.infrastructure.repositories import (
    SQLAlchemyCalendarRepository,
    SQLAlchemySlaRuleRepository,
    SQLAlchemyTrackingRepository,
    SQLAlchemyPauseLogRepository,
    SQLAlchemyNotificationLogRepository,
    SQLAlchemyCatalogRepository,
)
from sla.infrastructure.external import (
    SlaCatalogManager,
    WebhookNotificationDispatcher,
    HttpTicketDirectory,
    SlaScheduler,
)

__all__ = [
    "SQLAlchemyCalendarRepository",
    "SQLAlchemySlaRuleRepository",
    "SQLAlchemyTrackingRepository",
    "SQLAlchemyPauseLogRepository",
    "SQLAlchemyNotificationLogRepository",
    "SQLAlchemyCatalogRepository",
    "SlaCatalogManager",
    "WebhookNotificationDispatcher",
    "HttpTicketDirectory",
    "SlaScheduler",
]
