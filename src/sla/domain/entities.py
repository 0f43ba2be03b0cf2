"""
SLA Domain Entities
====================

Pure Python domain entities for SLA matching and tracking.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from config import (
    SlaStatus, TriggerType, ReferenceThreshold, RecipientType,
    DeliveryStatus, PauseKind, RecipientOutcome,
)


def parse_filter(value: Optional[str]) -> Optional[List[str]]:
    """
    Split a comma-set filter into lower-cased values.

    Returns None for an unset filter, and ``["all"]`` for the wildcard.
    """
    if value is None:
        return None
    items = [v.strip().lower() for v in str(value).split(",") if v.strip()]
    return items or None


@dataclass
class SlaRule:
    """
    Service-level rule selected for a ticket.

    Filters are comma-sets or the wildcard ``"all"``; ``None`` means the
    filter is not configured. TATs are working minutes.
    """

    id: str
    name: str
    priority_order: int
    min_tat: int
    avg_tat: int
    max_tat: int

    is_vip_override: bool = False
    asset_importance: Optional[str] = None
    asset_categories: Optional[str] = None
    user_category: Optional[str] = None
    ticket_type: Optional[str] = None
    ticket_channels: Optional[str] = None
    priority: Optional[str] = None

    schedule_id: Optional[str] = None
    holiday_calendar_id: Optional[str] = None
    pause_conditions: Dict[str, bool] = field(default_factory=dict)
    allow_pause_resume: bool = True
    is_active: bool = True
    description: Optional[str] = None

    def __post_init__(self):
        """Validate TAT ordering."""
        if not 0 < self.min_tat < self.avg_tat < self.max_tat:
            raise ValueError(
                f"SLA rule '{self.name}' requires 0 < min_tat < avg_tat < max_tat "
                f"(got {self.min_tat}/{self.avg_tat}/{self.max_tat})"
            )

    @property
    def is_catch_all(self) -> bool:
        """True when none of the context filters is configured."""
        return not any((
            self.asset_importance, self.asset_categories, self.user_category,
            self.ticket_type, self.ticket_channels, self.priority,
        ))

    def threshold(self, reference: ReferenceThreshold) -> int:
        return {
            ReferenceThreshold.MIN_TAT: self.min_tat,
            ReferenceThreshold.AVG_TAT: self.avg_tat,
            ReferenceThreshold.MAX_TAT: self.max_tat,
        }[reference]

    def pauses_on(self, status: str, default_statuses: List[str]) -> bool:
        """Whether entering ``status`` pauses the clock under this rule."""
        return self.pause_conditions.get(status) is True or status in default_statuses

    def thresholds(self) -> dict:
        return {"min_tat": self.min_tat, "avg_tat": self.avg_tat, "max_tat": self.max_tat}


@dataclass
class EscalationRule:
    """
    One level of an SLA rule's escalation ladder.

    The trigger point is ``threshold(reference_threshold) + trigger_offset_minutes``.
    """

    id: str
    sla_rule_id: str
    escalation_level: int
    trigger_type: TriggerType
    reference_threshold: ReferenceThreshold = ReferenceThreshold.MAX_TAT
    trigger_offset_minutes: int = 0
    repeat_interval_minutes: Optional[int] = None
    max_repeat_count: Optional[int] = None
    recipient_type: RecipientType = RecipientType.ASSIGNED_ENGINEER
    recipient_role: Optional[str] = None
    recipients: List[str] = field(default_factory=list)
    number_of_recipients: int = 3
    template_id: Optional[str] = None
    include_ticket_details: bool = True
    is_active: bool = True

    def __post_init__(self):
        if self.escalation_level < 1:
            raise ValueError("escalation_level must be >= 1")
        if self.max_repeat_count is not None and self.max_repeat_count < 1:
            raise ValueError("max_repeat_count must be >= 1")

    def trigger_point(self, rule: SlaRule) -> int:
        return rule.threshold(self.reference_threshold) + self.trigger_offset_minutes


@dataclass
class TicketSlaTracking:
    """
    SLA tracking record, one per ticket.

    ``business_elapsed_minutes`` equals ``carried_elapsed_minutes`` plus
    working minutes accrued since ``accrual_start_time``. Rule changes
    freeze the elapsed time into ``carried_elapsed_minutes`` so they
    only affect future accrual.
    """

    ticket_id: str
    sla_rule_id: str
    sla_start_time: datetime
    min_target_time: datetime
    avg_target_time: datetime
    max_target_time: datetime

    id: Optional[str] = None
    accrual_start_time: Optional[datetime] = None
    carried_elapsed_minutes: int = 0
    business_elapsed_minutes: int = 0
    total_paused_minutes: int = 0
    is_paused: bool = False
    pause_started_at: Optional[datetime] = None
    current_pause_reason: Optional[str] = None
    sla_status: SlaStatus = SlaStatus.ON_TRACK
    sla_cycle: int = 1
    resolved_at: Optional[datetime] = None
    final_status: Optional[SlaStatus] = None
    warning_triggered_at: Optional[datetime] = None
    breach_triggered_at: Optional[datetime] = None
    last_calculated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.accrual_start_time is None:
            self.accrual_start_time = self.sla_start_time
        if self.business_elapsed_minutes < 0 or self.total_paused_minutes < 0:
            raise ValueError("elapsed and paused minutes cannot be negative")

    @property
    def is_closed(self) -> bool:
        return self.resolved_at is not None

    @property
    def is_active(self) -> bool:
        """Active records are swept: neither paused nor closed."""
        return not self.is_paused and not self.is_closed

    def to_dict(self) -> dict:
        return {
            "ticket_id": self.ticket_id,
            "sla_rule_id": self.sla_rule_id,
            "sla_start_time": self.sla_start_time,
            "min_target_time": self.min_target_time,
            "avg_target_time": self.avg_target_time,
            "max_target_time": self.max_target_time,
            "business_elapsed_minutes": self.business_elapsed_minutes,
            "total_paused_minutes": self.total_paused_minutes,
            "is_paused": self.is_paused,
            "pause_started_at": self.pause_started_at,
            "current_pause_reason": self.current_pause_reason,
            "sla_status": self.sla_status.value,
            "sla_cycle": self.sla_cycle,
            "resolved_at": self.resolved_at,
            "final_status": self.final_status.value if self.final_status else None,
        }


@dataclass
class PauseLogEntry:
    """
    Append-only pause history row.

    ``CLOSED`` entries record the gap between resolution and a
    ``continue`` reopen; they stop the clock like a pause but are not
    counted in ``total_paused_minutes``.
    """

    ticket_id: str
    pause_start: datetime
    id: Optional[str] = None
    tracking_id: Optional[str] = None
    pause_end: Optional[datetime] = None
    reason: Optional[str] = None
    actor: Optional[str] = None
    ticket_status: Optional[str] = None
    kind: PauseKind = PauseKind.PAUSE
    paused_duration_minutes: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.pause_end is None


@dataclass
class Recipient:
    """Resolved escalation recipient."""
    email: str
    name: Optional[str] = None
    role: Optional[str] = None


@dataclass
class EscalationNotification:
    """
    Append-only escalation notification log row.

    ``details`` holds per-recipient outcomes once delivered.
    """

    ticket_id: str
    tracking_id: str
    escalation_rule_id: str
    trigger_type: TriggerType
    escalation_level: int
    recipients: List[Recipient]
    subject: str
    body: str
    sla_cycle: int = 1
    repeat_count: int = 1
    elapsed_minutes: int = 0
    id: Optional[str] = None
    delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    details: List[dict] = field(default_factory=list)
    error_message: Optional[str] = None
    notification_sent_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "trigger_type": self.trigger_type.value,
            "escalation_level": self.escalation_level,
            "recipients": [r.email for r in self.recipients],
            "subject": self.subject,
            "sla_cycle": self.sla_cycle,
            "repeat_count": self.repeat_count,
            "delivery_status": self.delivery_status.value,
            "details": self.details,
            "notification_sent_at": self.notification_sent_at,
            "created_at": self.created_at,
        }


# ========== Snapshots from the ticket service ==========

@dataclass
class AssetSnapshot:
    """Asset attributes relevant to rule matching."""
    id: str
    importance: Optional[str] = None
    category: Optional[str] = None
    is_active: bool = True


@dataclass
class TicketSnapshot:
    """
    Read-only view of a ticket as provided by the ticket service.
    """
    id: str
    ticket_number: Optional[str] = None
    title: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    ticket_type: Optional[str] = None
    channel: Optional[str] = None
    requester_id: Optional[str] = None
    assigned_engineer_id: Optional[str] = None
    assigned_engineer_email: Optional[str] = None
    assigned_engineer_name: Optional[str] = None
    department_id: Optional[str] = None
    asset_ids: List[str] = field(default_factory=list)

    @property
    def display_id(self) -> str:
        return self.ticket_number or self.id


# ========== Dispatch ==========

@dataclass
class OutboundMessage:
    """One message handed to the notification dispatcher."""
    recipient_email: str
    recipient_name: Optional[str]
    subject: str
    body: str


@dataclass
class DeliveryOutcome:
    """Per-recipient result reported by the dispatcher."""
    recipient_email: str
    status: RecipientOutcome
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"recipient": self.recipient_email, "status": self.status.value, "error": self.error}
