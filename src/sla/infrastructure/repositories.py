"""
SLA Infrastructure Repositories
=================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
entities from the database. Rows are mapped to domain dataclasses and
every timestamp read back is normalized to UTC (SQLite returns naive
values even for timezone-aware columns).
"""

from typing import Dict, List, Optional, Sequence
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import select, delete, func, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sla.application.services import (
    ICalendarRepository, ISlaRuleRepository, ITrackingRepository,
    IPauseLogRepository, INotificationLogRepository,
)
from sla.domain import (
    SlaRule, EscalationRule, TicketSlaTracking, PauseLogEntry,
    EscalationNotification, Recipient, EffectiveCalendar, DayWindow,
    BreakWindow, HolidayDate,
)
from sla.domain.catalog import SlaCatalog, RuleConfig, EscalationConfig
from config import (
    settings, Weekday, SlaStatus, TriggerType, ReferenceThreshold,
    RecipientType, DeliveryStatus, PauseKind,
)
from core import RepositoryException
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def _uuid(value: Optional[str]) -> Optional[UUID]:
    """Parse an ID, None when it is not a UUID."""
    if value is None:
        return None
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _str(value: Optional[UUID]) -> Optional[str]:
    return str(value) if value is not None else None


# ========== Calendars ==========

class SQLAlchemyCalendarRepository(ICalendarRepository):
    """
    SQLAlchemy implementation of calendar repository.

    Assembles schedules, day windows and breaks into EffectiveCalendar.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_schedule(self, schedule_id: str) -> Optional[EffectiveCalendar]:
        from sla.infrastructure.models import (
            BusinessHoursScheduleModel, BusinessHoursDetailModel, BreakIntervalModel,
        )

        schedule_uuid = _uuid(schedule_id)
        if schedule_uuid is None:
            return None

        schedule = await self._session.get(BusinessHoursScheduleModel, schedule_uuid)
        if schedule is None or not schedule.is_active:
            return None

        details = (await self._session.execute(
            select(BusinessHoursDetailModel).where(BusinessHoursDetailModel.schedule_id == schedule_uuid)
        )).scalars().all()
        breaks = (await self._session.execute(
            select(BreakIntervalModel).where(BreakIntervalModel.schedule_id == schedule_uuid)
        )).scalars().all()

        return EffectiveCalendar(
            schedule_id=str(schedule.id),
            name=schedule.name,
            is_24x7=schedule.is_24x7,
            days={
                Weekday(d.day_of_week): DayWindow(d.start_minute, d.end_minute)
                for d in details if d.is_working_day
            },
            breaks=tuple(
                BreakWindow(b.start_minute, b.end_minute, frozenset(Weekday(day) for day in b.applies_to_days or []))
                for b in breaks
            ),
            timezone_name=schedule.timezone,
        )

    async def get_holidays(self, calendar_id: str) -> Optional[List[HolidayDate]]:
        from sla.infrastructure.models import HolidayCalendarModel, HolidayDateModel

        calendar_uuid = _uuid(calendar_id)
        if calendar_uuid is None:
            return None

        calendar = await self._session.get(HolidayCalendarModel, calendar_uuid)
        if calendar is None or not calendar.is_active:
            return None

        rows = (await self._session.execute(
            select(HolidayDateModel)
            .where(HolidayDateModel.calendar_id == calendar_uuid)
            .order_by(HolidayDateModel.holiday_date)
        )).scalars().all()

        return [
            HolidayDate(
                day=row.holiday_date,
                is_full_day=row.is_full_day,
                start=row.start_minute,
                end=row.end_minute,
                name=row.name,
            )
            for row in rows
        ]


# ========== Rules ==========

def _rule_to_domain(model) -> SlaRule:
    return SlaRule(
        id=str(model.id),
        name=model.name,
        priority_order=model.priority_order,
        min_tat=model.min_tat_minutes,
        avg_tat=model.avg_tat_minutes,
        max_tat=model.max_tat_minutes,
        is_vip_override=model.is_vip_override,
        asset_importance=model.applicable_asset_importance,
        asset_categories=model.applicable_asset_categories,
        user_category=model.applicable_user_category,
        ticket_type=model.applicable_ticket_type,
        ticket_channels=model.applicable_ticket_channels,
        priority=model.applicable_priority,
        schedule_id=_str(model.business_hours_schedule_id),
        holiday_calendar_id=_str(model.holiday_calendar_id),
        pause_conditions=dict(model.pause_conditions or {}),
        allow_pause_resume=model.allow_pause_resume,
        is_active=model.is_active,
        description=model.description,
    )


def _escalation_to_domain(model) -> EscalationRule:
    return EscalationRule(
        id=str(model.id),
        sla_rule_id=str(model.sla_rule_id),
        escalation_level=model.escalation_level,
        trigger_type=TriggerType(model.trigger_type),
        reference_threshold=ReferenceThreshold(model.reference_threshold),
        trigger_offset_minutes=model.trigger_offset_minutes,
        repeat_interval_minutes=model.repeat_interval_minutes,
        max_repeat_count=model.max_repeat_count,
        recipient_type=RecipientType(model.recipient_type),
        recipient_role=model.recipient_role,
        recipients=list(model.recipients or []),
        number_of_recipients=model.number_of_recipients,
        template_id=model.notification_template,
        include_ticket_details=model.include_ticket_details,
        is_active=model.is_active,
    )


class SQLAlchemySlaRuleRepository(ISlaRuleRepository):
    """SQLAlchemy implementation of SLA and escalation rule access."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def list_active_rules(self) -> List[SlaRule]:
        from sla.infrastructure.models import SlaRuleModel

        stmt = (
            select(SlaRuleModel)
            .where(SlaRuleModel.is_active.is_(True))
            .order_by(SlaRuleModel.priority_order.asc(), SlaRuleModel.name.asc())
        )
        result = await self._session.execute(stmt)
        return [_rule_to_domain(m) for m in result.scalars().all()]

    async def get_rule(self, rule_id: str) -> Optional[SlaRule]:
        from sla.infrastructure.models import SlaRuleModel

        rule_uuid = _uuid(rule_id)
        if rule_uuid is None:
            return None
        model = await self._session.get(SlaRuleModel, rule_uuid)
        return _rule_to_domain(model) if model else None

    async def list_escalation_rules(self, sla_rule_id: Optional[str] = None) -> List[EscalationRule]:
        from sla.infrastructure.models import EscalationRuleModel

        stmt = select(EscalationRuleModel).where(EscalationRuleModel.is_active.is_(True))
        if sla_rule_id is not None:
            rule_uuid = _uuid(sla_rule_id)
            if rule_uuid is None:
                return []
            stmt = stmt.where(EscalationRuleModel.sla_rule_id == rule_uuid)
        stmt = stmt.order_by(EscalationRuleModel.sla_rule_id, EscalationRuleModel.escalation_level)

        result = await self._session.execute(stmt)
        return [_escalation_to_domain(m) for m in result.scalars().all()]


# ========== Tracking ==========

_TRACKING_FIELDS = (
    "sla_start_time", "accrual_start_time", "min_target_time", "avg_target_time",
    "max_target_time", "carried_elapsed_minutes", "business_elapsed_minutes",
    "total_paused_minutes", "is_paused", "pause_started_at", "current_pause_reason",
    "sla_cycle", "resolved_at", "warning_triggered_at", "breach_triggered_at",
    "last_calculated_at",
)


def _tracking_to_domain(model) -> TicketSlaTracking:
    return TicketSlaTracking(
        id=str(model.id),
        ticket_id=model.ticket_id,
        sla_rule_id=str(model.sla_rule_id),
        sla_start_time=_utc(model.sla_start_time),
        accrual_start_time=_utc(model.accrual_start_time),
        min_target_time=_utc(model.min_target_time),
        avg_target_time=_utc(model.avg_target_time),
        max_target_time=_utc(model.max_target_time),
        carried_elapsed_minutes=model.carried_elapsed_minutes,
        business_elapsed_minutes=model.business_elapsed_minutes,
        total_paused_minutes=model.total_paused_minutes,
        is_paused=model.is_paused,
        pause_started_at=_utc(model.pause_started_at),
        current_pause_reason=model.current_pause_reason,
        sla_status=SlaStatus(model.sla_status),
        sla_cycle=model.sla_cycle,
        resolved_at=_utc(model.resolved_at),
        final_status=SlaStatus(model.final_status) if model.final_status else None,
        warning_triggered_at=_utc(model.warning_triggered_at),
        breach_triggered_at=_utc(model.breach_triggered_at),
        last_calculated_at=_utc(model.last_calculated_at),
        created_at=_utc(model.created_at),
        updated_at=_utc(model.updated_at),
    )


class SQLAlchemyTrackingRepository(ITrackingRepository):
    """
    SQLAlchemy implementation of tracking repository.

    ``for_update`` issues ``SELECT ... FOR UPDATE`` where the dialect
    supports it; SQLite ignores the clause.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def _get_model(self, ticket_id: str, for_update: bool = False):
        from sla.infrastructure.models import TicketSlaTrackingModel

        stmt = select(TicketSlaTrackingModel).where(TicketSlaTrackingModel.ticket_id == ticket_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_ticket_id(self, ticket_id: str, for_update: bool = False) -> Optional[TicketSlaTracking]:
        model = await self._get_model(ticket_id, for_update)
        return _tracking_to_domain(model) if model else None

    async def get_many(self, ticket_ids: Sequence[str]) -> List[TicketSlaTracking]:
        from sla.infrastructure.models import TicketSlaTrackingModel

        if not ticket_ids:
            return []
        stmt = select(TicketSlaTrackingModel).where(TicketSlaTrackingModel.ticket_id.in_(list(ticket_ids)))
        result = await self._session.execute(stmt)
        return [_tracking_to_domain(m) for m in result.scalars().all()]

    async def create(self, tracking: TicketSlaTracking) -> TicketSlaTracking:
        from sla.infrastructure.models import TicketSlaTrackingModel

        model = TicketSlaTrackingModel(
            ticket_id=tracking.ticket_id,
            sla_rule_id=_uuid(tracking.sla_rule_id),
            sla_status=tracking.sla_status.value,
            final_status=tracking.final_status.value if tracking.final_status else None,
            **{name: getattr(tracking, name) for name in _TRACKING_FIELDS},
        )
        try:
            self._session.add(model)
            await self._session.flush()
        except SQLAlchemyError as e:
            raise RepositoryException(
                f"Failed to create SLA tracking for ticket {tracking.ticket_id}",
                {"ticket_id": tracking.ticket_id, "error": str(e)},
            ) from e

        return _tracking_to_domain(model)

    async def update(self, tracking: TicketSlaTracking) -> TicketSlaTracking:
        from sla.infrastructure.models import TicketSlaTrackingModel

        model = await self._session.get(TicketSlaTrackingModel, _uuid(tracking.id))
        if model is None:
            raise RepositoryException(f"SLA tracking {tracking.id} not found", {"ticket_id": tracking.ticket_id})

        for name in _TRACKING_FIELDS:
            setattr(model, name, getattr(tracking, name))
        model.sla_rule_id = _uuid(tracking.sla_rule_id)
        model.sla_status = tracking.sla_status.value
        model.final_status = tracking.final_status.value if tracking.final_status else None

        await self._session.flush()
        return _tracking_to_domain(model)

    async def delete(self, ticket_id: str) -> None:
        """Delete a tracking record together with its pause and notification logs."""
        from sla.infrastructure.models import (
            TicketSlaTrackingModel, PauseLogModel, EscalationNotificationModel,
        )

        model = await self._get_model(ticket_id, for_update=True)
        if model is None:
            return

        await self._session.execute(delete(PauseLogModel).where(PauseLogModel.tracking_id == model.id))
        await self._session.execute(
            delete(EscalationNotificationModel).where(EscalationNotificationModel.tracking_id == model.id)
        )
        await self._session.delete(model)
        await self._session.flush()

    async def list_active(self, limit: Optional[int] = None) -> List[TicketSlaTracking]:
        from sla.infrastructure.models import TicketSlaTrackingModel

        stmt = (
            select(TicketSlaTrackingModel)
            .where(and_(
                TicketSlaTrackingModel.resolved_at.is_(None),
                TicketSlaTrackingModel.is_paused.is_(False),
            ))
            .order_by(TicketSlaTrackingModel.created_at.asc())
        )
        if limit:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return [_tracking_to_domain(m) for m in result.scalars().all()]

    async def list_breached(self, limit: int = 100) -> List[TicketSlaTracking]:
        from sla.infrastructure.models import TicketSlaTrackingModel

        stmt = (
            select(TicketSlaTrackingModel)
            .where(and_(
                TicketSlaTrackingModel.resolved_at.is_(None),
                TicketSlaTrackingModel.sla_status == SlaStatus.BREACHED.value,
            ))
            .order_by(TicketSlaTrackingModel.max_target_time.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [_tracking_to_domain(m) for m in result.scalars().all()]

    async def metrics(self) -> dict:
        from sla.infrastructure.models import TicketSlaTrackingModel as T

        open_filter = T.resolved_at.is_(None)
        by_status = {status.value: 0 for status in SlaStatus}
        rows = await self._session.execute(
            select(T.sla_status, func.count()).where(open_filter).group_by(T.sla_status)
        )
        for status, count in rows.all():
            by_status[status] = count

        total = (await self._session.execute(select(func.count()).select_from(T))).scalar_one()
        paused = (await self._session.execute(
            select(func.count()).select_from(T).where(and_(open_filter, T.is_paused.is_(True)))
        )).scalar_one()
        resolved = (await self._session.execute(
            select(func.count()).select_from(T).where(T.resolved_at.is_not(None))
        )).scalar_one()
        within = (await self._session.execute(
            select(func.count()).select_from(T).where(and_(
                T.resolved_at.is_not(None),
                T.final_status != SlaStatus.BREACHED.value,
            ))
        )).scalar_one()
        avg_elapsed = (await self._session.execute(select(func.avg(T.business_elapsed_minutes)))).scalar()

        return {
            "by_status": by_status,
            "total": total,
            "open": sum(by_status.values()),
            "paused": paused,
            "resolved": resolved,
            "resolved_within_sla": within,
            "avg_elapsed_minutes": round(float(avg_elapsed), 1) if avg_elapsed is not None else None,
        }


# ========== Pause log ==========

def _pause_to_domain(model) -> PauseLogEntry:
    return PauseLogEntry(
        id=str(model.id),
        tracking_id=str(model.tracking_id),
        ticket_id=model.ticket_id,
        kind=PauseKind(model.kind),
        pause_start=_utc(model.pause_start),
        pause_end=_utc(model.pause_end),
        reason=model.reason,
        actor=model.created_by,
        ticket_status=model.ticket_status,
        paused_duration_minutes=model.paused_duration_minutes,
    )


class SQLAlchemyPauseLogRepository(IPauseLogRepository):
    """SQLAlchemy implementation of the append-only pause log."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def add(self, entry: PauseLogEntry) -> PauseLogEntry:
        from sla.infrastructure.models import PauseLogModel

        model = PauseLogModel(
            tracking_id=_uuid(entry.tracking_id),
            ticket_id=entry.ticket_id,
            kind=entry.kind.value,
            pause_start=entry.pause_start,
            pause_end=entry.pause_end,
            reason=entry.reason,
            ticket_status=entry.ticket_status,
            paused_duration_minutes=entry.paused_duration_minutes,
            created_by=entry.actor,
        )
        self._session.add(model)
        await self._session.flush()
        entry.id = str(model.id)
        return entry

    async def close(self, entry: PauseLogEntry) -> PauseLogEntry:
        from sla.infrastructure.models import PauseLogModel

        model = await self._session.get(PauseLogModel, _uuid(entry.id))
        if model is None:
            raise RepositoryException(f"Pause log entry {entry.id} not found", {"ticket_id": entry.ticket_id})
        model.pause_end = entry.pause_end
        model.paused_duration_minutes = entry.paused_duration_minutes
        await self._session.flush()
        return entry

    async def get_open(self, tracking_id: str) -> Optional[PauseLogEntry]:
        from sla.infrastructure.models import PauseLogModel

        stmt = (
            select(PauseLogModel)
            .where(and_(
                PauseLogModel.tracking_id == _uuid(tracking_id),
                PauseLogModel.pause_end.is_(None),
            ))
            .order_by(PauseLogModel.pause_start.desc())
            .limit(1)
        )
        model = (await self._session.execute(stmt)).scalar_one_or_none()
        return _pause_to_domain(model) if model else None

    async def list_for_tracking(self, tracking_id: str) -> List[PauseLogEntry]:
        from sla.infrastructure.models import PauseLogModel

        tracking_uuid = _uuid(tracking_id)
        if tracking_uuid is None:
            return []
        stmt = (
            select(PauseLogModel)
            .where(PauseLogModel.tracking_id == tracking_uuid)
            .order_by(PauseLogModel.pause_start.asc())
        )
        result = await self._session.execute(stmt)
        return [_pause_to_domain(m) for m in result.scalars().all()]

    async def list_for_ticket(self, ticket_id: str) -> List[PauseLogEntry]:
        from sla.infrastructure.models import PauseLogModel

        stmt = (
            select(PauseLogModel)
            .where(PauseLogModel.ticket_id == ticket_id)
            .order_by(PauseLogModel.pause_start.asc())
        )
        result = await self._session.execute(stmt)
        return [_pause_to_domain(m) for m in result.scalars().all()]


# ========== Notification log ==========

def _notification_to_domain(model) -> EscalationNotification:
    return EscalationNotification(
        id=str(model.id),
        ticket_id=model.ticket_id,
        tracking_id=str(model.tracking_id),
        escalation_rule_id=str(model.escalation_rule_id),
        trigger_type=TriggerType(model.trigger_type),
        escalation_level=model.escalation_level,
        recipients=[Recipient(**r) for r in model.recipients or []],
        subject=model.subject,
        body=model.body,
        sla_cycle=model.sla_cycle,
        repeat_count=model.repeat_count,
        elapsed_minutes=model.elapsed_minutes,
        delivery_status=DeliveryStatus(model.delivery_status),
        details=list(model.notification_details or []),
        error_message=model.error_message,
        notification_sent_at=_utc(model.notification_sent_at),
        created_at=_utc(model.created_at),
    )


class SQLAlchemyNotificationLogRepository(INotificationLogRepository):
    """SQLAlchemy implementation of the escalation notification log."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def add(self, notification: EscalationNotification) -> EscalationNotification:
        from sla.infrastructure.models import EscalationNotificationModel

        model = EscalationNotificationModel(
            tracking_id=_uuid(notification.tracking_id),
            ticket_id=notification.ticket_id,
            escalation_rule_id=_uuid(notification.escalation_rule_id),
            escalation_level=notification.escalation_level,
            trigger_type=notification.trigger_type.value,
            sla_cycle=notification.sla_cycle,
            repeat_count=notification.repeat_count,
            elapsed_minutes=notification.elapsed_minutes,
            recipients=[{"email": r.email, "name": r.name, "role": r.role} for r in notification.recipients],
            subject=notification.subject,
            body=notification.body,
            delivery_status=notification.delivery_status.value,
            notification_details=notification.details,
            error_message=notification.error_message,
            notification_sent_at=notification.notification_sent_at,
        )
        self._session.add(model)
        await self._session.flush()
        return _notification_to_domain(model)

    async def update(self, notification: EscalationNotification) -> EscalationNotification:
        from sla.infrastructure.models import EscalationNotificationModel

        model = await self._session.get(EscalationNotificationModel, _uuid(notification.id))
        if model is None:
            raise RepositoryException(
                f"Escalation notification {notification.id} not found",
                {"ticket_id": notification.ticket_id},
            )
        model.delivery_status = notification.delivery_status.value
        model.notification_details = list(notification.details)
        model.error_message = notification.error_message
        model.notification_sent_at = notification.notification_sent_at
        await self._session.flush()
        return _notification_to_domain(model)

    async def get(self, notification_id: str) -> Optional[EscalationNotification]:
        from sla.infrastructure.models import EscalationNotificationModel

        notification_uuid = _uuid(notification_id)
        if notification_uuid is None:
            return None
        model = await self._session.get(EscalationNotificationModel, notification_uuid)
        return _notification_to_domain(model) if model else None

    async def fired_count(self, tracking_id: str, escalation_rule_id: str, sla_cycle: int) -> int:
        from sla.infrastructure.models import EscalationNotificationModel as N

        stmt = select(func.count()).select_from(N).where(and_(
            N.tracking_id == _uuid(tracking_id),
            N.escalation_rule_id == _uuid(escalation_rule_id),
            N.sla_cycle == sla_cycle,
        ))
        return (await self._session.execute(stmt)).scalar_one()

    async def list_pending(self, limit: int = 100) -> List[EscalationNotification]:
        from sla.infrastructure.models import EscalationNotificationModel

        stmt = (
            select(EscalationNotificationModel)
            .where(EscalationNotificationModel.delivery_status == DeliveryStatus.PENDING.value)
            .order_by(EscalationNotificationModel.created_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [_notification_to_domain(m) for m in result.scalars().all()]

    async def list_for_ticket(self, ticket_id: str) -> List[EscalationNotification]:
        from sla.infrastructure.models import EscalationNotificationModel

        stmt = (
            select(EscalationNotificationModel)
            .where(EscalationNotificationModel.ticket_id == ticket_id)
            .order_by(EscalationNotificationModel.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return [_notification_to_domain(m) for m in result.scalars().all()]

    async def acknowledge(self, notification_id: str, actor: str, at: datetime) -> Optional[EscalationNotification]:
        from sla.infrastructure.models import EscalationNotificationModel

        notification_uuid = _uuid(notification_id)
        model = await self._session.get(EscalationNotificationModel, notification_uuid) if notification_uuid else None
        if model is None:
            return None
        if model.acknowledged_at is None:
            model.acknowledged_at = at
            model.acknowledged_by = actor
            await self._session.flush()
        return _notification_to_domain(model)

    async def stats(self) -> dict:
        from sla.infrastructure.models import EscalationNotificationModel as N

        by_status = {status.value: 0 for status in DeliveryStatus}
        for status, count in (await self._session.execute(
            select(N.delivery_status, func.count()).group_by(N.delivery_status)
        )).all():
            by_status[status] = count

        by_trigger = {trigger.value: 0 for trigger in TriggerType}
        for trigger, count in (await self._session.execute(
            select(N.trigger_type, func.count()).group_by(N.trigger_type)
        )).all():
            by_trigger[trigger] = count

        acknowledged = (await self._session.execute(
            select(func.count()).select_from(N).where(N.acknowledged_at.is_not(None))
        )).scalar_one()

        return {
            "total": sum(by_status.values()),
            "by_delivery_status": by_status,
            "by_trigger_type": by_trigger,
            "acknowledged": acknowledged,
        }


# ========== Catalog ==========

def escalation_defaults(config: EscalationConfig) -> tuple:
    """
    Reference threshold and offset of an escalation.

    Unset values default by trigger type: warnings trigger at min TAT,
    imminent breaches shortly before max TAT, breaches at max TAT.
    """
    if config.trigger_type == TriggerType.WARNING_ZONE:
        reference, offset = ReferenceThreshold.MIN_TAT, 0
    elif config.trigger_type == TriggerType.IMMINENT_BREACH:
        reference, offset = ReferenceThreshold.MAX_TAT, settings.sla_imminent_breach_offset_minutes
    else:
        reference, offset = ReferenceThreshold.MAX_TAT, 0

    if config.reference_threshold is not None:
        reference = config.reference_threshold
    if config.trigger_offset_minutes is not None:
        offset = config.trigger_offset_minutes
    return reference, offset


class SQLAlchemyCatalogRepository:
    """
    Writes an SlaCatalog into the configuration tables.

    Objects are matched by name so IDs stay stable across reloads and
    existing tracking records keep pointing at the same rules. Rules
    and escalations missing from the catalog are deactivated, never
    deleted.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def apply(self, catalog: SlaCatalog) -> dict:
        """
        Upsert the whole catalog.

        Returns:
            dict with the IDs of schedules and holiday calendars written
            and the number of rules active after the apply
        """
        try:
            schedule_ids = {}
            for schedule in catalog.schedules:
                schedule_ids[schedule.name] = await self._upsert_schedule(schedule)

            calendar_ids = {}
            for calendar in catalog.holiday_calendars:
                calendar_ids[calendar.name] = await self._upsert_holiday_calendar(calendar)

            rule_ids = []
            for rule in catalog.rules:
                rule_ids.append(await self._upsert_rule(rule, schedule_ids, calendar_ids))

            deactivated = await self._deactivate_rules_except(rule_ids)
            await self._session.flush()
        except SQLAlchemyError as e:
            raise RepositoryException("Failed to apply SLA catalog", {"error": str(e)}) from e

        summary = {
            "schedule_ids": [str(i) for i in schedule_ids.values()],
            "holiday_calendar_ids": [str(i) for i in calendar_ids.values()],
            "rules": len(rule_ids),
            "deactivated_rules": deactivated,
        }
        logger.info(
            "SLA catalog applied",
            extra={
                "schedules": len(schedule_ids),
                "holiday_calendars": len(calendar_ids),
                "rules": len(rule_ids),
                "deactivated_rules": deactivated,
            }
        )
        return summary

    async def _by_name(self, model_cls, name: str):
        result = await self._session.execute(select(model_cls).where(model_cls.name == name))
        return result.scalar_one_or_none()

    async def _upsert_schedule(self, config) -> UUID:
        from sla.infrastructure.models import (
            BusinessHoursScheduleModel, BusinessHoursDetailModel, BreakIntervalModel,
        )

        model = await self._by_name(BusinessHoursScheduleModel, config.name)
        if model is None:
            model = BusinessHoursScheduleModel(name=config.name)
            self._session.add(model)
        model.description = config.description
        model.timezone = config.timezone
        model.is_24x7 = config.is_24x7
        model.is_active = True
        await self._session.flush()

        await self._session.execute(
            delete(BusinessHoursDetailModel).where(BusinessHoursDetailModel.schedule_id == model.id)
        )
        await self._session.execute(delete(BreakIntervalModel).where(BreakIntervalModel.schedule_id == model.id))

        for weekday in Weekday:
            day = config.days.get(weekday)
            self._session.add(BusinessHoursDetailModel(
                schedule_id=model.id,
                day_of_week=int(weekday),
                is_working_day=day is not None and day.is_working_day,
                start_minute=day.start if day else 0,
                end_minute=day.end if day else 0,
            ))
        for brk in config.breaks:
            self._session.add(BreakIntervalModel(
                schedule_id=model.id,
                name=brk.name,
                start_minute=brk.start,
                end_minute=brk.end,
                applies_to_days=[int(d) for d in brk.days],
            ))
        return model.id

    async def _upsert_holiday_calendar(self, config) -> UUID:
        from sla.infrastructure.models import HolidayCalendarModel, HolidayDateModel

        model = await self._by_name(HolidayCalendarModel, config.name)
        if model is None:
            model = HolidayCalendarModel(name=config.name)
            self._session.add(model)
        model.calendar_year = config.year
        model.description = config.description
        model.is_active = True
        await self._session.flush()

        await self._session.execute(delete(HolidayDateModel).where(HolidayDateModel.calendar_id == model.id))
        for holiday in config.dates:
            self._session.add(HolidayDateModel(
                calendar_id=model.id,
                holiday_date=holiday.day,
                name=holiday.name,
                is_full_day=holiday.is_full_day,
                start_minute=holiday.start,
                end_minute=holiday.end,
            ))
        return model.id

    async def _upsert_rule(
        self,
        config: RuleConfig,
        schedule_ids: Dict[str, UUID],
        calendar_ids: Dict[str, UUID],
    ) -> UUID:
        from sla.infrastructure.models import SlaRuleModel, EscalationRuleModel

        model = await self._by_name(SlaRuleModel, config.name)
        if model is None:
            model = SlaRuleModel(name=config.name, priority_order=config.priority_order)
            self._session.add(model)

        model.description = config.description
        model.priority_order = config.priority_order
        model.is_vip_override = config.is_vip_override
        model.applicable_asset_importance = config.asset_importance
        model.applicable_asset_categories = config.asset_categories
        model.applicable_user_category = config.user_category
        model.applicable_ticket_type = config.ticket_type
        model.applicable_ticket_channels = config.ticket_channels
        model.applicable_priority = config.priority
        model.min_tat_minutes = config.min_tat
        model.avg_tat_minutes = config.avg_tat
        model.max_tat_minutes = config.max_tat
        model.business_hours_schedule_id = schedule_ids.get(config.schedule) if config.schedule else None
        model.holiday_calendar_id = calendar_ids.get(config.holiday_calendar) if config.holiday_calendar else None
        model.allow_pause_resume = config.allow_pause_resume
        model.pause_conditions = dict(config.pause_conditions)
        model.is_active = config.is_active
        await self._session.flush()

        existing = {
            (e.escalation_level, e.trigger_type): e
            for e in (await self._session.execute(
                select(EscalationRuleModel).where(EscalationRuleModel.sla_rule_id == model.id)
            )).scalars().all()
        }

        kept = set()
        for escalation in config.escalations:
            key = (escalation.level, escalation.trigger_type.value)
            kept.add(key)
            row = existing.get(key)
            if row is None:
                row = EscalationRuleModel(
                    sla_rule_id=model.id,
                    escalation_level=escalation.level,
                    trigger_type=escalation.trigger_type.value,
                )
                self._session.add(row)

            reference, offset = escalation_defaults(escalation)
            row.reference_threshold = reference.value
            row.trigger_offset_minutes = offset
            row.repeat_interval_minutes = escalation.repeat_interval_minutes
            row.max_repeat_count = escalation.max_repeat_count
            row.recipient_type = escalation.recipient_type.value
            row.recipient_role = escalation.recipient_role
            row.recipients = list(escalation.recipients)
            row.number_of_recipients = escalation.number_of_recipients
            row.notification_template = escalation.template_id
            row.include_ticket_details = escalation.include_ticket_details
            row.is_active = escalation.is_active

        for key, row in existing.items():
            if key not in kept:
                row.is_active = False
        return model.id

    async def _deactivate_rules_except(self, rule_ids: List[UUID]) -> int:
        from sla.infrastructure.models import SlaRuleModel

        stmt = select(SlaRuleModel).where(SlaRuleModel.is_active.is_(True))
        if rule_ids:
            stmt = stmt.where(SlaRuleModel.id.not_in(rule_ids))
        stale = (await self._session.execute(stmt)).scalars().all()
        for model in stale:
            model.is_active = False
        return len(stale)
