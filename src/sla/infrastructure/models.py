"""
SLA Infrastructure Models
==========================

SQLAlchemy ORM models for the SLA module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.

Configuration tables (schedules, holidays, rules) are owned by the
catalog loader; tracking, pause and notification tables are written by
the engine.
"""

from datetime import date, datetime, timezone
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from infrastructure.database import Base
from config import SlaStatus, DeliveryStatus, PauseKind, ReferenceThreshold, RecipientType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ========== Calendar ==========

class BusinessHoursScheduleModel(Base):
    """
    Business-hours schedule.

    Maps to the 'sla_business_hours_schedules' table.
    """
    __tablename__ = "sla_business_hours_schedules"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    is_24x7: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class BusinessHoursDetailModel(Base):
    """
    Working window of one weekday (0 = Sunday), in minutes from midnight.

    Maps to the 'sla_business_hours_details' table.
    """
    __tablename__ = "sla_business_hours_details"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    schedule_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("sla_business_hours_schedules.id", ondelete="CASCADE"), nullable=False, index=True
    )
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    is_working_day: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    start_minute: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    end_minute: Mapped[int] = mapped_column(Integer, nullable=False, default=1440)

    __table_args__ = (
        UniqueConstraint("schedule_id", "day_of_week", name="uq_schedule_day"),
    )


class BreakIntervalModel(Base):
    """
    Break inside a schedule's working window.

    ``applies_to_days`` is a JSON list of weekday numbers; empty = every day.
    """
    __tablename__ = "sla_break_intervals"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    schedule_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("sla_business_hours_schedules.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    start_minute: Mapped[int] = mapped_column(Integer, nullable=False)
    end_minute: Mapped[int] = mapped_column(Integer, nullable=False)
    applies_to_days: Mapped[List[int]] = mapped_column(JSON, nullable=False, default=list)


class HolidayCalendarModel(Base):
    """
    Named holiday calendar.

    Maps to the 'sla_holiday_calendars' table.
    """
    __tablename__ = "sla_holiday_calendars"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    calendar_year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class HolidayDateModel(Base):
    """
    Full-day or partial-day holiday.

    Maps to the 'sla_holiday_dates' table.
    """
    __tablename__ = "sla_holiday_dates"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    calendar_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("sla_holiday_calendars.id", ondelete="CASCADE"), nullable=False, index=True
    )
    holiday_date: Mapped[date] = mapped_column(Date, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    is_full_day: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    start_minute: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    end_minute: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


# ========== Rules ==========

class SlaRuleModel(Base):
    """
    SLA rule with applicability filters and TATs in working minutes.

    Maps to the 'sla_rules' table.
    """
    __tablename__ = "sla_rules"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    priority_order: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    is_vip_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Filters: comma-sets or "all"
    applicable_asset_importance: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    applicable_asset_categories: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    applicable_user_category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    applicable_ticket_type: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    applicable_ticket_channels: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    applicable_priority: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    min_tat_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    avg_tat_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=240)
    max_tat_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=480)

    business_hours_schedule_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("sla_business_hours_schedules.id"), nullable=True
    )
    holiday_calendar_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("sla_holiday_calendars.id"), nullable=True
    )

    allow_pause_resume: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    pause_conditions: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class EscalationRuleModel(Base):
    """
    One escalation level of an SLA rule.

    Maps to the 'sla_escalation_rules' table.
    """
    __tablename__ = "sla_escalation_rules"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    sla_rule_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("sla_rules.id", ondelete="CASCADE"), nullable=False, index=True
    )
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False)
    trigger_type: Mapped[str] = mapped_column(String(30), nullable=False)
    reference_threshold: Mapped[str] = mapped_column(String(20), nullable=False, default=ReferenceThreshold.MAX_TAT.value)
    trigger_offset_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    repeat_interval_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_repeat_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    recipient_type: Mapped[str] = mapped_column(String(30), nullable=False, default=RecipientType.ASSIGNED_ENGINEER.value)
    recipient_role: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    recipients: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    number_of_recipients: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    notification_template: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    include_ticket_details: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("sla_rule_id", "escalation_level", "trigger_type", name="uq_escalation_level_trigger"),
    )


# ========== Tracking ==========

class TicketSlaTrackingModel(Base):
    """
    SLA tracking record, one per ticket.

    Maps to the 'ticket_sla_tracking' table.
    """
    __tablename__ = "ticket_sla_tracking"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    ticket_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    sla_rule_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("sla_rules.id"), nullable=False)

    sla_start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    accrual_start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    min_target_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    avg_target_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    max_target_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    carried_elapsed_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    business_elapsed_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_paused_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pause_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    current_pause_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    sla_status: Mapped[str] = mapped_column(String(20), nullable=False, default=SlaStatus.ON_TRACK.value, index=True)
    sla_cycle: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    final_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    warning_triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    breach_triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_calculated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_tracking_active", "resolved_at", "is_paused"),
    )


class PauseLogModel(Base):
    """
    Append-only pause history.

    Maps to the 'ticket_sla_pause_log' table.
    """
    __tablename__ = "ticket_sla_pause_log"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tracking_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    ticket_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False, default=PauseKind.PAUSE.value)
    pause_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    pause_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    ticket_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    paused_duration_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class EscalationNotificationModel(Base):
    """
    Append-only escalation notification log.

    Maps to the 'escalation_notifications_log' table.
    """
    __tablename__ = "escalation_notifications_log"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tracking_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    ticket_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    escalation_rule_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False)
    trigger_type: Mapped[str] = mapped_column(String(30), nullable=False)
    sla_cycle: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    repeat_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    elapsed_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    recipients: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)

    delivery_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DeliveryStatus.PENDING.value, index=True
    )
    notification_details: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notification_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_notification_edge", "tracking_id", "escalation_rule_id", "sla_cycle"),
    )
