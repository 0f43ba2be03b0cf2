"""
SLA Domain Layer
================

Domain layer for SLA matching and business-hours tracking.

Contains:
- Entities: SlaRule, EscalationRule, TicketSlaTracking, PauseLogEntry,
  EscalationNotification and ticket/asset snapshots
- Value Objects: EffectiveCalendar and its parts, SlaClassification
- Domain Services: BusinessHoursCalculator, RuleMatcher
- Catalog: Pydantic models for the YAML configuration catalog

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from sla.domain.entities import (
    SlaRule,
    EscalationRule,
    TicketSlaTracking,
    PauseLogEntry,
    EscalationNotification,
    Recipient,
    TicketSnapshot,
    AssetSnapshot,
    OutboundMessage,
    DeliveryOutcome,
)
from sla.domain.value_objects import (
    BusinessHoursCalculator,
    EffectiveCalendar,
    DayWindow,
    BreakWindow,
    HolidayDate,
    PauseInterval,
    SlaClassification,
    format_duration,
    to_minute_of_day,
)
from sla.domain.matching import RuleMatcher, RuleMatch, MatchContext, resolve_asset_context

__all__ = [
    # Entities
    "SlaRule",
    "EscalationRule",
    "TicketSlaTracking",
    "PauseLogEntry",
    "EscalationNotification",
    "Recipient",
    "TicketSnapshot",
    "AssetSnapshot",
    "OutboundMessage",
    "DeliveryOutcome",
    # Value Objects & Services
    "BusinessHoursCalculator",
    "EffectiveCalendar",
    "DayWindow",
    "BreakWindow",
    "HolidayDate",
    "PauseInterval",
    "SlaClassification",
    "format_duration",
    "to_minute_of_day",
    "RuleMatcher",
    "RuleMatch",
    "MatchContext",
    "resolve_asset_context",
]
