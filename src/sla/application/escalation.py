"""
SLA Escalation
===============

Escalation engine, notification delivery and the periodic sweep job.

The sweep recomputes every active tracking record, detects threshold
crossings per escalation rule and logs a pending notification for each
new crossing. Pending notifications are then handed to the dispatcher.

Crossings are edge-triggered: a non-recurring escalation fires at most
once per (tracking record, escalation rule, SLA cycle). Recurring
breach reminders re-fire on every sweep while the ticket stays
breached, up to ``max_repeat_count``.
"""

import time
import uuid
from datetime import datetime
from typing import Any, Callable, List, Optional, Tuple

from config import TriggerType, RecipientType, DeliveryStatus, RecipientOutcome
from core.exceptions import ExternalServiceException, NotificationDeliveryError, NotTrackedError
from sla.application.services import (
    TrackingService, ITrackingRepository, ISlaRuleRepository,
    INotificationLogRepository, ITicketDirectory, INotificationDispatcher,
    utcnow,
)
from sla.domain import (
    SlaRule, EscalationRule, TicketSlaTracking, EscalationNotification,
    TicketSnapshot, Recipient, OutboundMessage, DeliveryOutcome, format_duration,
)
from shared.infrastructure.logging import get_logger, set_correlation_id, reset_correlation_id

logger = get_logger(__name__)

# Recipient types resolved within the ticket's department
DEPARTMENT_SCOPED = (RecipientType.COORDINATOR, RecipientType.DEPARTMENT_HEAD)


# ========== Notification content ==========

_TEMPLATES = {
    TriggerType.WARNING_ZONE: (
        "[SLA Warning] Ticket {ticket} - Action Required",
        "SLA WARNING",
        "Ticket {ticket} is approaching its SLA threshold.",
        "Time Remaining",
        "Please take action to resolve this ticket promptly.",
    ),
    TriggerType.IMMINENT_BREACH: (
        "[URGENT] Ticket {ticket} - Imminent SLA Breach",
        "IMMINENT SLA BREACH",
        "Ticket {ticket} is about to breach its SLA.",
        "Time Remaining",
        "Immediate action is required to prevent an SLA breach.",
    ),
    TriggerType.BREACHED: (
        "[SLA BREACHED] Ticket {ticket} - Escalation Level {level}",
        "SLA BREACH",
        "Ticket {ticket} has breached its SLA.",
        "Overage",
        "This ticket requires immediate attention and resolution.",
    ),
    TriggerType.RECURRING_BREACH: (
        "[SLA BREACH REMINDER] Ticket {ticket} - Still Unresolved",
        "SLA BREACH REMINDER",
        "Ticket {ticket} remains in breach.",
        "Overage",
        "This ticket is still pending resolution.",
    ),
}


def build_notification_content(
    trigger_type: TriggerType,
    ticket: TicketSnapshot,
    rule: SlaRule,
    escalation: EscalationRule,
    elapsed_minutes: int,
) -> Tuple[str, str]:
    """
    Subject and body of an escalation message.

    The body carries the rule name, formatted elapsed time, the SLA
    deadline and either the time remaining or how long it is overdue.
    """
    display_id = ticket.display_id
    remaining = rule.max_tat - elapsed_minutes
    remaining_text = (
        format_duration(remaining) if remaining > 0
        else f"{format_duration(abs(remaining))} overdue"
    )

    template = _TEMPLATES.get(trigger_type)
    if template is None:
        return f"[SLA Alert] Ticket {display_id}", f"SLA alert for ticket {display_id}"

    subject, heading, intro, remaining_label, closing = template
    lines = [
        heading,
        "=" * len(heading),
        "",
        intro.format(ticket=display_id),
        "",
        f"SLA Rule: {rule.name}",
        f"Elapsed Time: {format_duration(elapsed_minutes)}",
        f"SLA Deadline: {format_duration(rule.max_tat)}",
        f"{remaining_label}: {remaining_text}",
    ]
    if trigger_type in (TriggerType.BREACHED, TriggerType.RECURRING_BREACH):
        lines.append(f"Escalation Level: {escalation.escalation_level}")
    lines += ["", closing]

    if escalation.include_ticket_details:
        lines += [
            "",
            "---",
            "Ticket Details:",
            f"- Number: {display_id}",
            f"- Title: {ticket.title or 'N/A'}",
            f"- Priority: {(ticket.priority or 'N/A').upper()}",
        ]

    lines += ["", "---", "This is an automated SLA notification. Please do not reply."]
    return subject.format(ticket=display_id, level=escalation.escalation_level), "\n".join(lines)


# ========== Escalation Engine ==========

class EscalationEngine:
    """
    Detects threshold crossings for one ticket and logs notifications.

    Trigger point of an escalation rule is its reference TAT plus offset:
    - warning_zone, imminent_breach: point <= elapsed < max TAT
    - breached: elapsed >= point
    - recurring_breach: elapsed >= point, once the first repeat interval
      of overage has passed when one is configured
    """

    def __init__(
        self,
        tracking_service: TrackingService,
        tracking_repository: ITrackingRepository,
        rule_repository: ISlaRuleRepository,
        notification_repository: INotificationLogRepository,
        ticket_directory: Optional[ITicketDirectory] = None,
    ):
        self._tracking = tracking_service
        self._tracking_repo = tracking_repository
        self._rule_repo = rule_repository
        self._notification_repo = notification_repository
        self._directory = ticket_directory

    @staticmethod
    def should_trigger(escalation: EscalationRule, rule: SlaRule, elapsed: int) -> Optional[str]:
        """Reason the escalation fires at ``elapsed``, or None."""
        point = escalation.trigger_point(rule)
        trigger = escalation.trigger_type

        if trigger in (TriggerType.WARNING_ZONE, TriggerType.IMMINENT_BREACH):
            if point <= elapsed < rule.max_tat:
                return f"{trigger.value}: {rule.max_tat - elapsed} minutes remaining"
            return None

        if trigger == TriggerType.BREACHED:
            if elapsed >= point:
                return f"SLA breached: {elapsed - rule.max_tat} minutes over"
            return None

        if elapsed < point:
            return None
        interval = escalation.repeat_interval_minutes
        if interval and elapsed - point < interval:
            return None
        return f"Recurring breach: {elapsed - point} minutes past trigger point"

    async def process_ticket(self, ticket_id: str) -> List[EscalationNotification]:
        """
        Recompute one ticket and log notifications for new crossings.

        Paused and closed records never escalate.

        Raises:
            NotTrackedError: If the ticket has no tracking record
        """
        previous = await self._tracking_repo.get_by_ticket_id(ticket_id)
        if previous is None:
            raise NotTrackedError(ticket_id)
        previous_status = previous.sla_status

        tracking = await self._tracking.recompute_elapsed(ticket_id)
        if tracking.sla_status != previous_status:
            logger.info(
                "SLA status changed",
                extra={
                    "ticket_id": ticket_id,
                    "previous_status": previous_status.value,
                    "sla_status": tracking.sla_status.value,
                    "elapsed_minutes": tracking.business_elapsed_minutes,
                }
            )
        if not tracking.is_active:
            return []

        rule = await self._tracking.rule_for(tracking)
        ladder = await self._rule_repo.list_escalation_rules(rule.id)
        elapsed = tracking.business_elapsed_minutes

        ticket: Optional[TicketSnapshot] = None
        fired = []
        for escalation in ladder:
            reason = self.should_trigger(escalation, rule, elapsed)
            if reason is None:
                continue

            count = await self._notification_repo.fired_count(tracking.id, escalation.id, tracking.sla_cycle)
            if escalation.trigger_type == TriggerType.RECURRING_BREACH:
                if escalation.max_repeat_count and count >= escalation.max_repeat_count:
                    continue
            elif count > 0:
                continue

            if ticket is None:
                ticket = await self._ticket_snapshot(ticket_id)
            notification = await self._log_escalation(escalation, rule, tracking, ticket, count + 1)
            fired.append(notification)
            logger.info(
                "Escalation triggered",
                extra={
                    "ticket_id": ticket_id,
                    "trigger_type": escalation.trigger_type.value,
                    "escalation_level": escalation.escalation_level,
                    "repeat_count": notification.repeat_count,
                    "reason": reason,
                }
            )
        return fired

    async def resolve_recipients(self, escalation: EscalationRule, ticket: TicketSnapshot) -> List[Recipient]:
        """
        Recipients of an escalation, de-duplicated by email.

        Static addresses are always included; role-based types are
        looked up through the ticket directory.
        """
        resolved: List[Recipient] = []
        kind = escalation.recipient_type

        if self._directory is not None:
            if kind == RecipientType.ASSIGNED_ENGINEER:
                if ticket.assigned_engineer_email:
                    resolved.append(Recipient(
                        email=ticket.assigned_engineer_email,
                        name=ticket.assigned_engineer_name,
                        role="engineer",
                    ))
                elif ticket.assigned_engineer_id:
                    engineer = await self._directory.get_user(ticket.assigned_engineer_id)
                    if engineer is not None:
                        resolved.append(engineer)
            elif kind != RecipientType.STATIC:
                role = escalation.recipient_role if kind == RecipientType.CUSTOM_ROLE else kind.value
                department = ticket.department_id if kind in DEPARTMENT_SCOPED else None
                resolved.extend(await self._directory.find_users_by_role(
                    role, department, escalation.number_of_recipients
                ))
        elif kind == RecipientType.ASSIGNED_ENGINEER and ticket.assigned_engineer_email:
            resolved.append(Recipient(email=ticket.assigned_engineer_email, name=ticket.assigned_engineer_name))

        resolved.extend(Recipient(email=address) for address in escalation.recipients)

        unique, seen = [], set()
        for recipient in resolved:
            key = recipient.email.lower()
            if recipient.email and key not in seen:
                seen.add(key)
                unique.append(recipient)
        return unique

    async def _ticket_snapshot(self, ticket_id: str) -> TicketSnapshot:
        if self._directory is not None:
            ticket = await self._directory.get_ticket(ticket_id)
            if ticket is not None:
                return ticket
        return TicketSnapshot(id=ticket_id)

    async def _log_escalation(
        self,
        escalation: EscalationRule,
        rule: SlaRule,
        tracking: TicketSlaTracking,
        ticket: TicketSnapshot,
        repeat_count: int,
    ) -> EscalationNotification:
        recipients = await self.resolve_recipients(escalation, ticket)
        subject, body = build_notification_content(
            escalation.trigger_type, ticket, rule, escalation, tracking.business_elapsed_minutes
        )
        return await self._notification_repo.add(EscalationNotification(
            ticket_id=tracking.ticket_id,
            tracking_id=tracking.id,
            escalation_rule_id=escalation.id,
            trigger_type=escalation.trigger_type,
            escalation_level=escalation.escalation_level,
            recipients=recipients,
            subject=subject,
            body=body,
            sla_cycle=tracking.sla_cycle,
            repeat_count=repeat_count,
            elapsed_minutes=tracking.business_elapsed_minutes,
        ))


# ========== Notification Delivery ==========

class NotificationService:
    """
    Hands logged notifications to the dispatcher and records outcomes.

    The overall status is ``sent`` when no recipient failed, ``failed``
    when all failed or nobody could be resolved, and ``partial`` in
    between. The service itself never retries.
    """

    def __init__(
        self,
        notification_repository: INotificationLogRepository,
        dispatcher: INotificationDispatcher,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._repo = notification_repository
        self._dispatcher = dispatcher
        self._clock = clock

    @staticmethod
    def aggregate(outcomes: List[DeliveryOutcome]) -> DeliveryStatus:
        failed = sum(1 for o in outcomes if o.status == RecipientOutcome.FAILED)
        if not outcomes or failed == len(outcomes):
            return DeliveryStatus.FAILED
        if failed == 0:
            return DeliveryStatus.SENT
        return DeliveryStatus.PARTIAL

    async def deliver(self, notification: EscalationNotification) -> EscalationNotification:
        """
        Deliver one notification and persist per-recipient outcomes.

        Raises:
            NotificationDeliveryError: After persisting, when the overall
                status is not ``sent``
        """
        messages = [
            OutboundMessage(
                recipient_email=r.email,
                recipient_name=r.name,
                subject=notification.subject,
                body=notification.body,
            )
            for r in notification.recipients
        ]

        outcomes: List[DeliveryOutcome] = []
        error_message = None
        if not messages:
            error_message = "No recipients resolved"
        else:
            try:
                outcomes = await self._dispatcher.send(messages)
            except ExternalServiceException as e:
                error_message = e.message
                outcomes = [
                    DeliveryOutcome(m.recipient_email, RecipientOutcome.FAILED, e.message) for m in messages
                ]

        status = self.aggregate(outcomes)
        notification.details = [o.to_dict() for o in outcomes]
        notification.delivery_status = status
        notification.error_message = error_message or next(
            (o.error for o in outcomes if o.error), None
        )
        if status != DeliveryStatus.FAILED:
            notification.notification_sent_at = self._clock()
        await self._repo.update(notification)

        logger.info(
            "Escalation notification delivered",
            extra={
                "notification_id": notification.id,
                "ticket_id": notification.ticket_id,
                "delivery_status": status.value,
                "recipients": len(messages),
            }
        )

        if status != DeliveryStatus.SENT:
            failed = [o.recipient_email for o in outcomes if o.status == RecipientOutcome.FAILED]
            raise NotificationDeliveryError(notification.id, failed, status.value)
        return notification

    async def deliver_pending(self, limit: int = 100) -> dict:
        """Deliver pending notifications; returns counts per overall status."""
        counts = {"sent": 0, "partial": 0, "failed": 0}
        for notification in await self._repo.list_pending(limit):
            try:
                await self.deliver(notification)
                counts["sent"] += 1
            except NotificationDeliveryError as e:
                counts[e.delivery_status] += 1
                logger.warning(
                    "Escalation notification not fully delivered",
                    extra={
                        "notification_id": e.notification_id,
                        "delivery_status": e.delivery_status,
                        "failed_recipients": e.failed_recipients,
                    }
                )
        return counts

    async def acknowledge(self, notification_id: str, actor: str) -> Optional[EscalationNotification]:
        return await self._repo.acknowledge(notification_id, actor, self._clock())

    async def history(self, ticket_id: str) -> List[EscalationNotification]:
        return await self._repo.list_for_ticket(ticket_id)

    async def stats(self) -> dict:
        return await self._repo.stats()


# ========== Sweep Job ==========

class SlaSweepJob:
    """
    Periodic SLA monitoring job.

    Each ticket is processed in its own session so that one failure
    never aborts the batch. Overlapping runs are skipped.

    Args:
        session_factory: Callable returning an ``AsyncSession`` context
        services_factory: Callable building the SLA services for a session
    """

    def __init__(self, session_factory: Callable[[], Any], services_factory: Callable[[Any], Any]):
        self._session_factory = session_factory
        self._services_factory = services_factory
        self._is_running = False
        self._last_run_at: Optional[datetime] = None
        self._last_result: Optional[dict] = None

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def run(self) -> dict:
        """Run one sweep and return its report."""
        if self._is_running:
            logger.warning("SLA sweep already running, skipping")
            return {"status": "skipped", "reason": "already running"}

        self._is_running = True
        token = set_correlation_id(f"sweep-{uuid.uuid4().hex[:12]}")
        started = time.perf_counter()
        ticket_ids: List[str] = []
        result = {
            "status": "success",
            "started_at": utcnow().isoformat(),
            "tracking": {"updated": 0, "errors": 0},
            "escalations": {"triggered": 0},
            "notifications": {"sent": 0, "partial": 0, "failed": 0},
            "errors": [],
        }

        try:
            try:
                async with self._session_factory() as session:
                    services = self._services_factory(session)
                    active = await services.tracking_repository.list_active()
                ticket_ids = [t.ticket_id for t in active]
            except Exception as e:
                result["errors"].append({"step": "list_active", "error": str(e)})
                logger.error("SLA sweep could not list active tickets", extra={"error": str(e)}, exc_info=True)

            for ticket_id in ticket_ids:
                try:
                    async with self._session_factory() as session:
                        services = self._services_factory(session)
                        fired = await services.escalation_engine.process_ticket(ticket_id)
                        await session.commit()
                    result["tracking"]["updated"] += 1
                    result["escalations"]["triggered"] += len(fired)
                except Exception as e:
                    result["tracking"]["errors"] += 1
                    result["errors"].append({"step": "process_ticket", "ticket_id": ticket_id, "error": str(e)})
                    logger.error(
                        "SLA sweep failed for ticket",
                        extra={"ticket_id": ticket_id, "error": str(e)},
                        exc_info=True,
                    )

            try:
                async with self._session_factory() as session:
                    services = self._services_factory(session)
                    result["notifications"] = await services.notification_service.deliver_pending()
                    await session.commit()
            except Exception as e:
                result["errors"].append({"step": "deliver_notifications", "error": str(e)})
                logger.error("SLA notification delivery failed", extra={"error": str(e)}, exc_info=True)

            if result["errors"]:
                result["status"] = "completed_with_errors"
            result["duration_ms"] = int((time.perf_counter() - started) * 1000)
            self._last_result = result

            logger.info(
                "SLA sweep completed",
                extra={
                    "status": result["status"],
                    "tickets": len(ticket_ids),
                    "escalations_triggered": result["escalations"]["triggered"],
                    "duration_ms": result["duration_ms"],
                }
            )
            return result
        finally:
            self._is_running = False
            self._last_run_at = utcnow()
            reset_correlation_id(token)

    def get_status(self) -> dict:
        return {
            "is_running": self._is_running,
            "last_run_at": self._last_run_at.isoformat() if self._last_run_at else None,
            "last_result": self._last_result,
        }
