"""
SLA Lifecycle Hooks
====================

Integration surface called by the ticket service on lifecycle events.

Hooks never raise: a failure is logged and reported as ``None`` so
that SLA problems can never abort a ticket operation.
"""

from typing import Dict, Optional, Sequence

from config import settings, ReopenMode
from core.exceptions import ApplicationException
from sla.application.services import TrackingService, ITicketDirectory, ISlaRuleRepository
from sla.domain import TicketSnapshot, TicketSlaTracking, BusinessHoursCalculator
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class SlaLifecycleHooks:
    """
    Maps ticket lifecycle events onto the tracking state machine.

    Args:
        tracking_service: Tracking state machine
        rule_repository: Rule lookups for status reporting
        ticket_directory: Ticket service client used to resolve contexts
        apply_rule_changes: Switch rules when re-evaluation picks another one
    """

    def __init__(
        self,
        tracking_service: TrackingService,
        rule_repository: ISlaRuleRepository,
        ticket_directory: Optional[ITicketDirectory] = None,
        apply_rule_changes: Optional[bool] = None,
    ):
        self._tracking = tracking_service
        self._rule_repo = rule_repository
        self._directory = ticket_directory
        self._apply_rule_changes = (
            settings.sla_apply_rule_changes if apply_rule_changes is None else apply_rule_changes
        )

    # ========== Lifecycle events ==========

    async def on_ticket_created(
        self,
        ticket: TicketSnapshot,
        linked_asset_ids: Optional[Sequence[str]] = None,
    ) -> Optional[TicketSlaTracking]:
        try:
            context = await self._tracking.build_context(ticket, linked_asset_ids)
            return await self._tracking.initialize(ticket.id, context)
        except Exception as e:
            self._log_failure("on_ticket_created", ticket.id, e)
            return None

    async def on_status_changed(
        self,
        ticket_id: str,
        old_status: Optional[str],
        new_status: str,
        actor: Optional[str] = None,
    ) -> Optional[TicketSlaTracking]:
        """
        Pause, resume or stop the clock on a status transition.

        Closing statuses stop tracking. Entering a pause status pauses;
        leaving one resumes if the record is paused.
        """
        if old_status == new_status:
            return None
        try:
            tracking = await self._tracking.get(ticket_id)
            if tracking is None:
                logger.debug("Status change for untracked ticket", extra={"ticket_id": ticket_id})
                return None

            if new_status in settings.sla_closing_statuses:
                return await self._tracking.stop(ticket_id)

            rule = await self._tracking.rule_for(tracking)
            defaults = settings.sla_default_pause_statuses
            if rule.pauses_on(new_status, defaults):
                return await self._tracking.pause(
                    ticket_id,
                    reason=f"Status changed to {new_status}",
                    actor=actor,
                    ticket_status=new_status,
                )
            if old_status and rule.pauses_on(old_status, defaults) and tracking.is_paused:
                return await self._tracking.resume(ticket_id, actor=actor)
            return tracking
        except Exception as e:
            self._log_failure("on_status_changed", ticket_id, e)
            return None

    async def on_priority_changed(
        self,
        ticket_id: str,
        old_priority: Optional[str],
        new_priority: Optional[str],
    ) -> Optional[dict]:
        if old_priority == new_priority:
            return None
        return await self._reevaluate("on_priority_changed", ticket_id)

    async def on_asset_linked(self, ticket_id: str, asset_id: str) -> Optional[dict]:
        return await self._reevaluate("on_asset_linked", ticket_id)

    async def on_ticket_assigned(
        self,
        ticket_id: str,
        old_engineer_id: Optional[str],
        new_engineer_id: Optional[str],
    ) -> Optional[TicketSlaTracking]:
        try:
            if await self._tracking.get(ticket_id) is None:
                return None
            return await self._tracking.recompute_elapsed(ticket_id)
        except Exception as e:
            self._log_failure("on_ticket_assigned", ticket_id, e)
            return None

    async def on_ticket_reopened(
        self,
        ticket_id: str,
        ticket: Optional[TicketSnapshot] = None,
        mode: Optional[ReopenMode] = None,
    ) -> Optional[TicketSlaTracking]:
        mode = ReopenMode(mode or settings.sla_default_reopen_mode)
        try:
            context = None
            if mode == ReopenMode.RESET and ticket is not None:
                context = await self._tracking.build_context(ticket)
            return await self._tracking.reopen(ticket_id, mode, context)
        except Exception as e:
            self._log_failure("on_ticket_reopened", ticket_id, e)
            return None

    # ========== Reporting ==========

    async def get_sla_status(self, ticket_id: str) -> Optional[dict]:
        """
        Current SLA status of a ticket, recomputed first.

        Returns None when the ticket is not tracked.
        """
        try:
            tracking = await self._tracking.get(ticket_id)
            if tracking is None:
                return None
            if not tracking.is_closed:
                tracking = await self._tracking.recompute_elapsed(ticket_id)
            rule = await self._tracking.rule_for(tracking)
        except Exception as e:
            self._log_failure("get_sla_status", ticket_id, e)
            return None

        classification = BusinessHoursCalculator.classify(
            tracking.business_elapsed_minutes, rule.min_tat, rule.avg_tat, rule.max_tat
        )
        return {
            "ticket_id": ticket_id,
            "status": tracking.final_status.value if tracking.final_status else tracking.sla_status.value,
            "elapsed_minutes": tracking.business_elapsed_minutes,
            "remaining_minutes": classification.remaining_minutes,
            "percent_used": min(classification.percent_used, 100),
            "is_paused": tracking.is_paused,
            "is_breached": classification.is_breached,
            "is_closed": tracking.is_closed,
            "rule_name": rule.name,
            "thresholds": rule.thresholds(),
            "max_target_time": tracking.max_target_time,
            "sla_cycle": tracking.sla_cycle,
        }

    async def get_bulk_sla_status(self, ticket_ids: Sequence[str]) -> Dict[str, Optional[dict]]:
        """Status of several tickets from stored elapsed minutes, without recomputing."""
        statuses: Dict[str, Optional[dict]] = {ticket_id: None for ticket_id in ticket_ids}
        if not statuses:
            return statuses

        try:
            records = await self._tracking.get_many(list(statuses))
        except Exception as e:
            self._log_failure("get_bulk_sla_status", ",".join(statuses), e)
            return statuses

        rules = {}
        for tracking in records:
            if tracking.sla_rule_id not in rules:
                rules[tracking.sla_rule_id] = await self._rule_repo.get_rule(tracking.sla_rule_id)
            rule = rules[tracking.sla_rule_id]
            if rule is None:
                continue
            classification = BusinessHoursCalculator.classify(
                tracking.business_elapsed_minutes, rule.min_tat, rule.avg_tat, rule.max_tat
            )
            statuses[tracking.ticket_id] = {
                "status": classification.status.value,
                "elapsed_minutes": tracking.business_elapsed_minutes,
                "remaining_minutes": classification.remaining_minutes,
                "percent_used": min(classification.percent_used, 100),
                "is_paused": tracking.is_paused,
                "is_breached": classification.is_breached,
                "rule_name": rule.name,
            }
        return statuses

    # ========== Internals ==========

    async def _reevaluate(self, hook: str, ticket_id: str) -> Optional[dict]:
        try:
            if await self._tracking.get(ticket_id) is None:
                return None
            report = await self._tracking.reevaluate(ticket_id)
            if report["changed"] and self._apply_rule_changes:
                await self._tracking.apply_rule_change(ticket_id, report["rule"])
                report["applied"] = True
            else:
                report["applied"] = False
            logger.info(
                "SLA re-evaluated",
                extra={
                    "hook": hook,
                    "ticket_id": ticket_id,
                    "changed": report["changed"],
                    "applied": report["applied"],
                    "rule_name": report["rule"].name,
                }
            )
            return report
        except Exception as e:
            self._log_failure(hook, ticket_id, e)
            return None

    @staticmethod
    def _log_failure(hook: str, ticket_id: str, error: Exception) -> None:
        logger.error(
            "SLA hook failed",
            extra={
                "hook": hook,
                "ticket_id": ticket_id,
                "error": str(error),
                "error_type": type(error).__name__,
                "details": error.details if isinstance(error, ApplicationException) else None,
            },
            exc_info=not isinstance(error, ApplicationException),
        )
