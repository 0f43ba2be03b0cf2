"""
SLA Application Layer
======================

Application layer for SLA matching and tracking.

Contains:
- Services: Calendar store and the tracking state machine
- Escalation: Escalation engine, notification delivery and sweep job
- Hooks: Ticket lifecycle integration
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from sla.application.services import (
    CalendarStore,
    TrackingService,
    TicketLockRegistry,
    ICacheService,
    ICalendarRepository,
    ISlaRuleRepository,
    ITrackingRepository,
    IPauseLogRepository,
    INotificationLogRepository,
    ITicketDirectory,
    INotificationDispatcher,
)
from sla.application.escalation import (
    EscalationEngine,
    NotificationService,
    SlaSweepJob,
    build_notification_content,
)
from sla.application.hooks import SlaLifecycleHooks

__all__ = [
    # Services
    "CalendarStore",
    "TrackingService",
    "TicketLockRegistry",
    "EscalationEngine",
    "NotificationService",
    "SlaSweepJob",
    "SlaLifecycleHooks",
    "build_notification_content",
    # Interfaces
    "ICacheService",
    "ICalendarRepository",
    "ISlaRuleRepository",
    "ITrackingRepository",
    "IPauseLogRepository",
    "INotificationLogRepository",
    "ITicketDirectory",
    "INotificationDispatcher",
]
