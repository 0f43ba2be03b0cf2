"""
SLA Application DTOs
=====================

Data Transfer Objects for SLA API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses. Following YAGNI - only what's needed.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Dict, List, Optional
from datetime import datetime

from config import (
    SlaStatus, ReopenMode, TriggerType, DeliveryStatus, PauseKind, LifecycleEventType,
)
from sla.domain import TicketSnapshot, MatchContext


# ========== Request DTOs ==========

class TicketDTO(BaseModel):
    """Ticket as supplied by the ticket service."""
    id: str = Field(..., min_length=1, description="Ticket ID")
    ticket_number: Optional[str] = Field(None, description="Human-readable ticket number")
    title: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    ticket_type: Optional[str] = Field(None, description="Ticket type, defaults to incident")
    channel: Optional[str] = Field(None, description="Intake channel, defaults to portal")
    requester_id: Optional[str] = None
    assigned_engineer_id: Optional[str] = None
    assigned_engineer_email: Optional[str] = None
    assigned_engineer_name: Optional[str] = None
    department_id: Optional[str] = None
    asset_ids: List[str] = Field(default_factory=list, description="Linked asset IDs")

    def to_domain(self) -> TicketSnapshot:
        return TicketSnapshot(**self.model_dump())


class MatchContextDTO(BaseModel):
    """Pre-resolved rule matching context."""
    is_vip: bool = False
    asset_importance: Optional[str] = None
    asset_categories: List[str] = Field(default_factory=list)
    ticket_type: str = "incident"
    ticket_channel: str = "portal"
    ticket_priority: Optional[str] = None

    def to_domain(self) -> MatchContext:
        return MatchContext(**self.model_dump())


class InitializeTrackingRequest(BaseModel):
    """
    Request to start tracking a ticket.

    Either an explicit context or the ticket itself must be given; the
    ticket is resolved into a context through the ticket directory.
    """
    context: Optional[MatchContextDTO] = None
    ticket: Optional[TicketDTO] = None

    @model_validator(mode="after")
    def require_context_or_ticket(self) -> "InitializeTrackingRequest":
        if self.context is None and self.ticket is None:
            raise ValueError("Either context or ticket is required")
        return self


class PauseRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)
    actor: Optional[str] = None
    ticket_status: Optional[str] = None


class ResumeRequest(BaseModel):
    actor: Optional[str] = None


class StopRequest(BaseModel):
    final_status: Optional[SlaStatus] = Field(None, description="Defaults to the status at closing time")


class ReopenRequest(BaseModel):
    mode: Optional[ReopenMode] = Field(None, description="Defaults to the configured reopen mode")
    context: Optional[MatchContextDTO] = Field(None, description="Context for reset; resolved when omitted")


class ReevaluateRequest(BaseModel):
    context: Optional[MatchContextDTO] = None
    apply: bool = Field(default=False, description="Switch to the matched rule when it differs")


class BulkStatusRequest(BaseModel):
    ticket_ids: List[str] = Field(..., min_length=1, max_length=500)

    @field_validator("ticket_ids")
    @classmethod
    def dedupe(cls, v: List[str]) -> List[str]:
        return list(dict.fromkeys(v))


class LifecycleEventRequest(BaseModel):
    """Ticket lifecycle event published to the engine."""
    event_type: LifecycleEventType
    ticket_id: str = Field(..., min_length=1)
    ticket: Optional[TicketDTO] = None
    old_value: Optional[str] = Field(None, description="Previous status, priority or engineer")
    new_value: Optional[str] = Field(None, description="New status, priority or engineer")
    asset_ids: List[str] = Field(default_factory=list)
    actor: Optional[str] = None
    mode: Optional[ReopenMode] = None

    @model_validator(mode="after")
    def validate_payload(self) -> "LifecycleEventRequest":
        if self.event_type == LifecycleEventType.TICKET_CREATED and self.ticket is None:
            raise ValueError("ticket_created events require the ticket")
        if self.event_type == LifecycleEventType.STATUS_CHANGED and not self.new_value:
            raise ValueError("status_changed events require new_value")
        if self.event_type == LifecycleEventType.ASSET_LINKED and not self.asset_ids:
            raise ValueError("asset_linked events require asset_ids")
        return self


class CacheInvalidateRequest(BaseModel):
    """Calendar cache invalidation; no IDs clears everything."""
    schedule_id: Optional[str] = None
    holiday_calendar_id: Optional[str] = None


# ========== Response DTOs ==========

class TrackingResponse(BaseModel):
    """Response model for a tracking record."""
    model_config = ConfigDict(from_attributes=True)

    id: Optional[str] = None
    ticket_id: str
    sla_rule_id: str
    sla_start_time: datetime
    min_target_time: datetime
    avg_target_time: datetime
    max_target_time: datetime
    business_elapsed_minutes: int
    total_paused_minutes: int
    is_paused: bool
    pause_started_at: Optional[datetime] = None
    current_pause_reason: Optional[str] = None
    sla_status: SlaStatus
    sla_cycle: int
    resolved_at: Optional[datetime] = None
    final_status: Optional[SlaStatus] = None
    warning_triggered_at: Optional[datetime] = None
    breach_triggered_at: Optional[datetime] = None
    last_calculated_at: Optional[datetime] = None


class SlaStatusResponse(BaseModel):
    """Response model for the SLA status of a ticket."""
    ticket_id: str
    is_tracked: bool = True
    status: Optional[str] = None
    elapsed_minutes: Optional[int] = None
    remaining_minutes: Optional[int] = None
    percent_used: Optional[int] = Field(None, ge=0, le=100)
    is_paused: bool = False
    is_breached: bool = False
    is_closed: bool = False
    rule_name: Optional[str] = None
    thresholds: Optional[Dict[str, int]] = None
    max_target_time: Optional[datetime] = None
    sla_cycle: Optional[int] = None

    @classmethod
    def not_tracked(cls, ticket_id: str) -> "SlaStatusResponse":
        return cls(ticket_id=ticket_id, is_tracked=False, status="not_tracked")


class BulkStatusItem(BaseModel):
    status: str
    elapsed_minutes: int
    remaining_minutes: int
    percent_used: int
    is_paused: bool
    is_breached: bool
    rule_name: str


class BulkStatusResponse(BaseModel):
    statuses: Dict[str, Optional[BulkStatusItem]]


class PauseLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[str] = None
    tracking_id: Optional[str] = None
    kind: PauseKind
    pause_start: datetime
    pause_end: Optional[datetime] = None
    paused_duration_minutes: Optional[int] = None
    reason: Optional[str] = None
    actor: Optional[str] = None
    ticket_status: Optional[str] = None


class EscalationNotificationResponse(BaseModel):
    id: Optional[str] = None
    ticket_id: str
    trigger_type: TriggerType
    escalation_level: int
    recipients: List[str]
    subject: str
    sla_cycle: int
    repeat_count: int
    delivery_status: DeliveryStatus
    details: List[dict] = Field(default_factory=list)
    notification_sent_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class RuleSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    priority_order: int
    min_tat: int
    avg_tat: int
    max_tat: int


class ReevaluateResponse(BaseModel):
    changed: bool
    applied: bool = False
    rule: RuleSummary
    previous_rule_id: str
    escalation_levels: List[int]
    match_reason: str
    match_context: dict


class ApproachingBreachItem(BaseModel):
    ticket_id: str
    rule_name: str
    sla_status: SlaStatus
    elapsed_minutes: int
    remaining_minutes: int
    max_target_time: datetime


class SweepResponse(BaseModel):
    """Manual sweep outcome."""
    status: str
    succeeded: int = 0
    failed: int = 0
    escalations_triggered: int = 0
    notifications: Dict[str, int] = Field(default_factory=dict)
    duration_ms: Optional[int] = None
    errors: List[dict] = Field(default_factory=list)


class EventAcceptedResponse(BaseModel):
    accepted: bool
    queue_size: int
