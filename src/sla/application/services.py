"""
SLA Application Services
=========================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

Following SOLID principles:
- Single Responsibility: CalendarStore loads calendars, TrackingService
  owns the tracking state machine
- Dependency Inversion: Depend on abstractions (repositories, cache,
  ticket directory), not concrete implementations
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from config import settings, SlaStatus, ReopenMode, PauseKind
from core.exceptions import (
    ConfigurationError, DomainException, NotTrackedError, PauseNotAllowedError,
)
from sla.domain import (
    SlaRule, EscalationRule, TicketSlaTracking, PauseLogEntry, EscalationNotification,
    TicketSnapshot, AssetSnapshot, Recipient, OutboundMessage, DeliveryOutcome,
    BusinessHoursCalculator, EffectiveCalendar, HolidayDate, PauseInterval,
    SlaClassification, RuleMatcher, RuleMatch, MatchContext, resolve_asset_context,
)
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TICKET_TYPE = "incident"
DEFAULT_TICKET_CHANNEL = "portal"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def wall_minutes(start: datetime, end: datetime) -> int:
    """Wall-clock minutes between two instants, rounded half up."""
    return max(0, int((end - start).total_seconds() + 30) // 60)


# ========== Repository Interfaces (Dependency Inversion) ==========

class ICacheService(ABC):
    """Interface for the process-local configuration cache."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Get a live entry, or None when missing or expired."""

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        """Store an entry."""

    @abstractmethod
    def invalidate(self, key: str) -> None:
        """Drop one entry."""

    @abstractmethod
    def clear(self) -> None:
        """Drop every entry."""


class ICalendarRepository(ABC):
    """Interface for schedule and holiday calendar access."""

    @abstractmethod
    async def get_schedule(self, schedule_id: str) -> Optional[EffectiveCalendar]:
        """Get a schedule with its day windows and breaks (no holidays)."""

    @abstractmethod
    async def get_holidays(self, calendar_id: str) -> Optional[List[HolidayDate]]:
        """Get the dates of a holiday calendar, None if it does not exist."""


class ISlaRuleRepository(ABC):
    """Interface for SLA and escalation rule access."""

    @abstractmethod
    async def list_active_rules(self) -> List[SlaRule]:
        """List active rules ordered by priority_order."""

    @abstractmethod
    async def get_rule(self, rule_id: str) -> Optional[SlaRule]:
        """Get a rule by ID, active or not."""

    @abstractmethod
    async def list_escalation_rules(self, sla_rule_id: Optional[str] = None) -> List[EscalationRule]:
        """List active escalation rules, optionally for one SLA rule."""


class ITrackingRepository(ABC):
    """Interface for tracking record access."""

    @abstractmethod
    async def get_by_ticket_id(self, ticket_id: str, for_update: bool = False) -> Optional[TicketSlaTracking]:
        """Get the tracking record of a ticket."""

    @abstractmethod
    async def get_many(self, ticket_ids: Sequence[str]) -> List[TicketSlaTracking]:
        """Get tracking records for several tickets."""

    @abstractmethod
    async def create(self, tracking: TicketSlaTracking) -> TicketSlaTracking:
        """Create a tracking record."""

    @abstractmethod
    async def update(self, tracking: TicketSlaTracking) -> TicketSlaTracking:
        """Persist changes to a tracking record."""

    @abstractmethod
    async def delete(self, ticket_id: str) -> None:
        """Delete the tracking record of a ticket."""

    @abstractmethod
    async def list_active(self, limit: Optional[int] = None) -> List[TicketSlaTracking]:
        """List records that are neither paused nor closed."""

    @abstractmethod
    async def list_breached(self, limit: int = 100) -> List[TicketSlaTracking]:
        """List open records whose status is breached."""

    @abstractmethod
    async def metrics(self) -> dict:
        """Aggregate counts over all tracking records."""


class IPauseLogRepository(ABC):
    """Interface for the append-only pause log."""

    @abstractmethod
    async def add(self, entry: PauseLogEntry) -> PauseLogEntry:
        """Append an entry."""

    @abstractmethod
    async def close(self, entry: PauseLogEntry) -> PauseLogEntry:
        """Persist the end of an open entry."""

    @abstractmethod
    async def get_open(self, tracking_id: str) -> Optional[PauseLogEntry]:
        """Latest open pause entry of a tracking record."""

    @abstractmethod
    async def list_for_tracking(self, tracking_id: str) -> List[PauseLogEntry]:
        """Entries of one tracking record, oldest first."""

    @abstractmethod
    async def list_for_ticket(self, ticket_id: str) -> List[PauseLogEntry]:
        """Entries of a ticket across tracking records, oldest first."""


class INotificationLogRepository(ABC):
    """Interface for the escalation notification log."""

    @abstractmethod
    async def add(self, notification: EscalationNotification) -> EscalationNotification:
        """Append a notification."""

    @abstractmethod
    async def update(self, notification: EscalationNotification) -> EscalationNotification:
        """Persist delivery results of a notification."""

    @abstractmethod
    async def get(self, notification_id: str) -> Optional[EscalationNotification]:
        """Get a notification by ID."""

    @abstractmethod
    async def fired_count(self, tracking_id: str, escalation_rule_id: str, sla_cycle: int) -> int:
        """Number of notifications already logged for one escalation edge."""

    @abstractmethod
    async def list_pending(self, limit: int = 100) -> List[EscalationNotification]:
        """Notifications not yet delivered, oldest first."""

    @abstractmethod
    async def list_for_ticket(self, ticket_id: str) -> List[EscalationNotification]:
        """Escalation history of a ticket, oldest first."""

    @abstractmethod
    async def acknowledge(self, notification_id: str, actor: str, at: datetime) -> Optional[EscalationNotification]:
        """Mark a notification as acknowledged."""

    @abstractmethod
    async def stats(self) -> dict:
        """Counts by delivery status and trigger type."""


class ITicketDirectory(ABC):
    """Interface to the ticket service (tickets, assets and users)."""

    @abstractmethod
    async def get_ticket(self, ticket_id: str) -> Optional[TicketSnapshot]:
        """Get a ticket snapshot."""

    @abstractmethod
    async def get_assets(self, asset_ids: Sequence[str]) -> List[AssetSnapshot]:
        """Get assets by ID."""

    @abstractmethod
    async def is_vip_user(self, user_id: str) -> bool:
        """Whether a user is flagged VIP."""

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[Recipient]:
        """Get a user as a notification recipient."""

    @abstractmethod
    async def find_users_by_role(
        self, role: str, department_id: Optional[str] = None, limit: int = 3
    ) -> List[Recipient]:
        """Active users holding a role, optionally within a department."""


class INotificationDispatcher(ABC):
    """Interface for transport-level delivery."""

    @abstractmethod
    async def send(self, messages: List[OutboundMessage]) -> List[DeliveryOutcome]:
        """Deliver messages, reporting one outcome per recipient."""


# ========== Calendar Store ==========

class CalendarStore:
    """
    Loads and caches effective calendars.

    Schedules and holiday calendars are cached separately under
    ``schedule:{id}`` and ``holidays:{id}`` so that either can be
    invalidated on its own when configuration changes.
    """

    SCHEDULE_KEY = "schedule:{}"
    HOLIDAYS_KEY = "holidays:{}"

    def __init__(
        self,
        repository: ICalendarRepository,
        cache: ICacheService,
        ttl_seconds: Optional[int] = None,
    ):
        self._repo = repository
        self._cache = cache
        self._ttl = settings.sla_calendar_cache_ttl_seconds if ttl_seconds is None else ttl_seconds

    async def get_schedule(self, schedule_id: str) -> EffectiveCalendar:
        """
        Get a schedule.

        Raises:
            ConfigurationError: If the schedule does not exist
        """
        key = self.SCHEDULE_KEY.format(schedule_id)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        schedule = await self._repo.get_schedule(schedule_id)
        if schedule is None:
            raise ConfigurationError(
                f"Business hours schedule '{schedule_id}' not found",
                {"schedule_id": schedule_id},
            )
        self._cache.set(key, schedule, self._ttl)
        return schedule

    async def get_holidays(self, calendar_id: str) -> List[HolidayDate]:
        """Get holiday dates; a missing calendar yields none."""
        key = self.HOLIDAYS_KEY.format(calendar_id)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        holidays = await self._repo.get_holidays(calendar_id)
        if holidays is None:
            logger.warning("Holiday calendar not found", extra={"holiday_calendar_id": calendar_id})
            holidays = []
        self._cache.set(key, holidays, self._ttl)
        return holidays

    async def get_calendar(
        self,
        schedule_id: Optional[str],
        holiday_calendar_id: Optional[str] = None,
    ) -> EffectiveCalendar:
        """
        Assemble the effective calendar of a rule.

        A rule without a schedule runs 24x7.
        """
        if schedule_id is None:
            return EffectiveCalendar.always_open()

        schedule = await self.get_schedule(schedule_id)
        if schedule.is_24x7 or holiday_calendar_id is None:
            return schedule
        return schedule.with_holidays(await self.get_holidays(holiday_calendar_id))

    def invalidate_schedule(self, schedule_id: str) -> None:
        self._cache.invalidate(self.SCHEDULE_KEY.format(schedule_id))

    def invalidate_holidays(self, calendar_id: str) -> None:
        self._cache.invalidate(self.HOLIDAYS_KEY.format(calendar_id))

    def invalidate_all(self) -> None:
        self._cache.clear()
        logger.info("Calendar cache cleared")


# ========== Per-ticket serialization ==========

class TicketLockRegistry:
    """
    In-process lock per ticket.

    Locks are dropped once no task holds or awaits them.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, ticket_id: str):
        lock = self._locks.setdefault(ticket_id, asyncio.Lock())
        self._holders[ticket_id] = self._holders.get(ticket_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[ticket_id] -= 1
            if self._holders[ticket_id] == 0:
                del self._holders[ticket_id]
                self._locks.pop(ticket_id, None)

    def __len__(self) -> int:
        return len(self._locks)


# ========== Application Services ==========

class TrackingService:
    """
    SLA tracking state machine.

    uninitialized -> active(on_track|warning|critical|breached) <-> paused
    -> closed, and closed -> active on reopen.

    Every mutation of a ticket's record runs under that ticket's lock
    and loads the row with ``for_update`` so concurrent pause, resume
    and recompute calls never interleave. Report-only reads take neither
    lock, so no row lock is ever held while waiting for a ticket lock.
    """

    def __init__(
        self,
        tracking_repository: ITrackingRepository,
        pause_log_repository: IPauseLogRepository,
        rule_repository: ISlaRuleRepository,
        calendar_store: CalendarStore,
        locks: TicketLockRegistry,
        ticket_directory: Optional[ITicketDirectory] = None,
        calculator: Optional[BusinessHoursCalculator] = None,
        matcher: Optional[RuleMatcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._tracking_repo = tracking_repository
        self._pause_repo = pause_log_repository
        self._rule_repo = rule_repository
        self._calendars = calendar_store
        self._directory = ticket_directory
        self._calculator = calculator or BusinessHoursCalculator(settings.sla_max_calendar_walk_days)
        self._matcher = matcher or RuleMatcher()
        self._clock = clock
        self._locks = locks

    @property
    def calculator(self) -> BusinessHoursCalculator:
        return self._calculator

    # ---------- context & rules ----------

    async def build_context(
        self,
        ticket: TicketSnapshot,
        asset_ids: Optional[Sequence[str]] = None,
    ) -> MatchContext:
        """
        Resolve the match context of a ticket through the ticket directory.

        Asset importance is the highest among active linked assets and
        VIP status comes from the requester.
        """
        ids = list(asset_ids if asset_ids is not None else ticket.asset_ids)
        importance, categories = None, []
        is_vip = False
        if self._directory is not None:
            if ids:
                importance, categories = resolve_asset_context(await self._directory.get_assets(ids))
            if ticket.requester_id:
                is_vip = await self._directory.is_vip_user(ticket.requester_id)

        return MatchContext(
            is_vip=is_vip,
            asset_importance=importance,
            asset_categories=categories,
            ticket_type=ticket.ticket_type or DEFAULT_TICKET_TYPE,
            ticket_channel=ticket.channel or DEFAULT_TICKET_CHANNEL,
            ticket_priority=ticket.priority,
        )

    async def context_for_ticket(self, ticket_id: str) -> MatchContext:
        """Fetch a ticket from the directory and resolve its context."""
        if self._directory is None:
            raise ConfigurationError("Ticket directory not configured")
        ticket = await self._directory.get_ticket(ticket_id)
        if ticket is None:
            raise DomainException(f"Ticket {ticket_id} not found", {"ticket_id": ticket_id})
        return await self.build_context(ticket)

    async def match(self, context: MatchContext) -> RuleMatch:
        """Select the SLA rule and escalation ladder for a context."""
        rules = await self._rule_repo.list_active_rules()
        escalations = await self._rule_repo.list_escalation_rules()
        return self._matcher.match(rules, context, escalations)

    async def rule_for(self, tracking: TicketSlaTracking) -> SlaRule:
        rule = await self._rule_repo.get_rule(tracking.sla_rule_id)
        if rule is None:
            raise ConfigurationError(
                f"SLA rule '{tracking.sla_rule_id}' not found",
                {"ticket_id": tracking.ticket_id},
            )
        return rule

    async def calendar_for(self, rule: SlaRule) -> EffectiveCalendar:
        return await self._calendars.get_calendar(rule.schedule_id, rule.holiday_calendar_id)

    # ---------- state machine ----------

    async def initialize(self, ticket_id: str, context: MatchContext) -> TicketSlaTracking:
        """
        Start tracking a ticket.

        Raises:
            DomainException: If the ticket is already tracked
            ConfigurationError: If no rule or schedule is available
        """
        async with self._locks.hold(ticket_id):
            if await self._tracking_repo.get_by_ticket_id(ticket_id) is not None:
                raise DomainException(
                    f"Ticket {ticket_id} already has SLA tracking",
                    {"ticket_id": ticket_id},
                )
            return await self._create(ticket_id, context)

    async def _create(self, ticket_id: str, context: MatchContext) -> TicketSlaTracking:
        match = await self.match(context)
        rule = match.rule
        calendar = await self.calendar_for(rule)
        now = self._clock()

        min_target, avg_target, max_target = self._targets(now, rule, calendar, elapsed=0)
        tracking = TicketSlaTracking(
            ticket_id=ticket_id,
            sla_rule_id=rule.id,
            sla_start_time=now,
            min_target_time=min_target,
            avg_target_time=avg_target,
            max_target_time=max_target,
            last_calculated_at=now,
        )
        tracking = await self._tracking_repo.create(tracking)

        logger.info(
            "SLA tracking initialized",
            extra={
                "ticket_id": ticket_id,
                "rule_name": rule.name,
                "match_reason": match.reason,
                "max_target_time": max_target.isoformat(),
            }
        )
        return tracking

    async def recompute_elapsed(self, ticket_id: str) -> TicketSlaTracking:
        """
        Recompute elapsed working minutes and status.

        Idempotent; closed records are returned unchanged.

        Raises:
            NotTrackedError: If the ticket has no tracking record
        """
        async with self._locks.hold(ticket_id):
            tracking = await self._load(ticket_id)
            if tracking.is_closed:
                return tracking
            await self._recompute(tracking)
            return await self._tracking_repo.update(tracking)

    async def pause(
        self,
        ticket_id: str,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
        ticket_status: Optional[str] = None,
    ) -> TicketSlaTracking:
        """
        Stop the clock.

        No-op when already paused or closed.

        Raises:
            NotTrackedError: If the ticket has no tracking record
            PauseNotAllowedError: If the rule does not allow pausing
        """
        async with self._locks.hold(ticket_id):
            tracking = await self._load(ticket_id)
            if tracking.is_paused or tracking.is_closed:
                logger.debug("Pause ignored", extra={"ticket_id": ticket_id, "is_paused": tracking.is_paused})
                return tracking

            rule = await self.rule_for(tracking)
            if not rule.allow_pause_resume:
                raise PauseNotAllowedError(ticket_id, rule.name)

            await self._recompute(tracking, rule)
            now = self._clock()
            tracking.is_paused = True
            tracking.pause_started_at = now
            tracking.current_pause_reason = reason
            await self._pause_repo.add(PauseLogEntry(
                ticket_id=ticket_id,
                tracking_id=tracking.id,
                pause_start=now,
                reason=reason,
                actor=actor,
                ticket_status=ticket_status,
            ))
            tracking = await self._tracking_repo.update(tracking)

        logger.info("SLA paused", extra={"ticket_id": ticket_id, "reason": reason, "actor": actor})
        return tracking

    async def resume(self, ticket_id: str, actor: Optional[str] = None) -> TicketSlaTracking:
        """
        Restart the clock.

        No-op when not paused.

        Raises:
            NotTrackedError: If the ticket has no tracking record
        """
        async with self._locks.hold(ticket_id):
            tracking = await self._load(ticket_id)
            if not tracking.is_paused:
                logger.debug("Resume ignored", extra={"ticket_id": ticket_id})
                return tracking

            paused = await self._resume(tracking)
            if not tracking.is_closed:
                await self._recompute(tracking)
            tracking = await self._tracking_repo.update(tracking)

        logger.info(
            "SLA resumed",
            extra={"ticket_id": ticket_id, "paused_minutes": paused, "actor": actor}
        )
        return tracking

    async def stop(self, ticket_id: str, final_status: Optional[SlaStatus] = None) -> TicketSlaTracking:
        """
        Close tracking when the ticket is closed or cancelled.

        Any open pause is resumed first; ``final_status`` defaults to the
        status at closing time.

        Raises:
            NotTrackedError: If the ticket has no tracking record
        """
        async with self._locks.hold(ticket_id):
            tracking = await self._load(ticket_id)
            if tracking.is_closed:
                return tracking

            if tracking.is_paused:
                await self._resume(tracking)
            await self._recompute(tracking)
            tracking.resolved_at = self._clock()
            tracking.final_status = final_status or tracking.sla_status
            tracking = await self._tracking_repo.update(tracking)

        logger.info(
            "SLA tracking stopped",
            extra={
                "ticket_id": ticket_id,
                "final_status": tracking.final_status.value,
                "elapsed_minutes": tracking.business_elapsed_minutes,
            }
        )
        return tracking

    async def reopen(
        self,
        ticket_id: str,
        mode: ReopenMode,
        context: Optional[MatchContext] = None,
    ) -> TicketSlaTracking:
        """
        Revive a closed tracking record.

        - reset: discard the record and initialize again from now
        - continue: keep elapsed time; the closed gap does not accrue
        - new_sla: keep identity and rule, restart all timers from now

        Raises:
            NotTrackedError: For continue/new_sla without a record
        """
        mode = ReopenMode(mode)
        async with self._locks.hold(ticket_id):
            tracking = await self._tracking_repo.get_by_ticket_id(ticket_id, for_update=True)

            if mode == ReopenMode.RESET:
                if context is None:
                    context = await self.context_for_ticket(ticket_id)
                if tracking is not None:
                    await self._tracking_repo.delete(ticket_id)
                tracking = await self._create(ticket_id, context)

            elif tracking is None:
                raise NotTrackedError(ticket_id)

            elif mode == ReopenMode.CONTINUE:
                await self._continue(tracking)

            else:
                await self._restart(tracking)

        logger.info(
            "SLA tracking reopened",
            extra={"ticket_id": ticket_id, "mode": mode.value, "elapsed_minutes": tracking.business_elapsed_minutes}
        )
        return tracking

    async def _continue(self, tracking: TicketSlaTracking) -> None:
        if not tracking.is_closed:
            logger.debug("Reopen ignored for open record", extra={"ticket_id": tracking.ticket_id})
            return

        now = self._clock()
        await self._pause_repo.add(PauseLogEntry(
            ticket_id=tracking.ticket_id,
            tracking_id=tracking.id,
            pause_start=tracking.resolved_at,
            pause_end=now,
            reason="Ticket closed",
            kind=PauseKind.CLOSED,
            paused_duration_minutes=wall_minutes(tracking.resolved_at, now),
        ))
        tracking.resolved_at = None
        tracking.final_status = None
        if tracking.is_paused:
            await self._resume(tracking)

        rule = await self.rule_for(tracking)
        calendar = await self.calendar_for(rule)
        await self._recompute(tracking, rule, calendar)
        self._shift_targets(tracking, rule, calendar, now)
        await self._tracking_repo.update(tracking)

    async def _restart(self, tracking: TicketSlaTracking) -> None:
        if tracking.is_paused:
            await self._resume(tracking)

        rule = await self.rule_for(tracking)
        calendar = await self.calendar_for(rule)
        now = self._clock()
        tracking.min_target_time, tracking.avg_target_time, tracking.max_target_time = (
            self._targets(now, rule, calendar, elapsed=0)
        )
        tracking.sla_start_time = now
        tracking.accrual_start_time = now
        tracking.carried_elapsed_minutes = 0
        tracking.business_elapsed_minutes = 0
        tracking.total_paused_minutes = 0
        tracking.sla_status = SlaStatus.ON_TRACK
        tracking.resolved_at = None
        tracking.final_status = None
        tracking.warning_triggered_at = None
        tracking.breach_triggered_at = None
        tracking.last_calculated_at = now
        tracking.sla_cycle += 1
        await self._tracking_repo.update(tracking)

    async def apply_rule_change(self, ticket_id: str, rule: SlaRule) -> TicketSlaTracking:
        """
        Switch a tracked ticket to another rule.

        Minutes already elapsed are carried over unchanged; the new
        rule's calendar applies from now on.

        Raises:
            NotTrackedError: If the ticket has no tracking record
        """
        async with self._locks.hold(ticket_id):
            tracking = await self._load(ticket_id)
            if tracking.sla_rule_id == rule.id:
                return tracking

            previous_rule = await self.rule_for(tracking)
            if not tracking.is_closed:
                await self._recompute(tracking, previous_rule)

            now = self._clock()
            calendar = await self.calendar_for(rule)
            tracking.carried_elapsed_minutes = tracking.business_elapsed_minutes
            tracking.accrual_start_time = tracking.pause_started_at if tracking.is_paused else now
            tracking.sla_rule_id = rule.id
            tracking.min_target_time, tracking.avg_target_time, tracking.max_target_time = (
                self._targets(now, rule, calendar, elapsed=tracking.carried_elapsed_minutes)
            )
            tracking.sla_status = self._calculator.classify(
                tracking.business_elapsed_minutes, rule.min_tat, rule.avg_tat, rule.max_tat
            ).status
            tracking = await self._tracking_repo.update(tracking)

        logger.info(
            "SLA rule changed",
            extra={
                "ticket_id": ticket_id,
                "previous_rule": previous_rule.name,
                "rule_name": rule.name,
                "carried_elapsed_minutes": tracking.carried_elapsed_minutes,
            }
        )
        return tracking

    async def reevaluate(self, ticket_id: str, context: Optional[MatchContext] = None) -> dict:
        """
        Re-run rule matching for a tracked ticket without changing it.

        Returns:
            dict with ``changed``, ``rule``, ``previous_rule_id``,
            ``escalation_rules``, ``match_reason`` and ``match_context``
        """
        tracking = await self._load(ticket_id, for_update=False)
        if context is None:
            context = await self.context_for_ticket(ticket_id)
        match = await self.match(context)
        return {
            "changed": match.rule.id != tracking.sla_rule_id,
            "rule": match.rule,
            "previous_rule_id": tracking.sla_rule_id,
            "escalation_rules": match.escalation_rules,
            "match_reason": match.reason,
            "match_context": context.to_dict(),
        }

    # ---------- queries ----------

    async def get(self, ticket_id: str) -> Optional[TicketSlaTracking]:
        return await self._tracking_repo.get_by_ticket_id(ticket_id)

    async def get_many(self, ticket_ids: Sequence[str]) -> List[TicketSlaTracking]:
        return await self._tracking_repo.get_many(ticket_ids)

    async def pause_history(self, ticket_id: str) -> List[PauseLogEntry]:
        return await self._pause_repo.list_for_ticket(ticket_id)

    async def approaching_breach(self, threshold_minutes: Optional[int] = None, limit: int = 100) -> List[dict]:
        """Active tickets within ``threshold_minutes`` of their max TAT."""
        threshold = threshold_minutes
        if threshold is None:
            threshold = settings.sla_approaching_breach_threshold_minutes
        rules: Dict[str, Optional[SlaRule]] = {}
        results = []
        for tracking in await self._tracking_repo.list_active():
            if tracking.sla_rule_id not in rules:
                rules[tracking.sla_rule_id] = await self._rule_repo.get_rule(tracking.sla_rule_id)
            rule = rules[tracking.sla_rule_id]
            if rule is None:
                continue
            remaining = rule.max_tat - tracking.business_elapsed_minutes
            if 0 < remaining <= threshold:
                results.append({"tracking": tracking, "rule": rule, "remaining_minutes": remaining})

        results.sort(key=lambda r: r["remaining_minutes"])
        return results[:limit]

    async def breached(self, limit: int = 100) -> List[TicketSlaTracking]:
        return await self._tracking_repo.list_breached(limit)

    async def metrics(self) -> dict:
        """Tracking counts by status plus compliance of resolved tickets."""
        raw = await self._tracking_repo.metrics()
        resolved = raw.get("resolved", 0)
        within = raw.get("resolved_within_sla", 0)
        raw["compliance_rate"] = round(within * 100.0 / resolved, 2) if resolved else None
        return raw

    # ---------- internals ----------

    async def _load(self, ticket_id: str, for_update: bool = True) -> TicketSlaTracking:
        tracking = await self._tracking_repo.get_by_ticket_id(ticket_id, for_update=for_update)
        if tracking is None:
            raise NotTrackedError(ticket_id)
        return tracking

    async def _recompute(
        self,
        tracking: TicketSlaTracking,
        rule: Optional[SlaRule] = None,
        calendar: Optional[EffectiveCalendar] = None,
    ) -> SlaClassification:
        """Refresh elapsed minutes and status in place."""
        rule = rule or await self.rule_for(tracking)
        calendar = calendar or await self.calendar_for(rule)
        now = self._clock()
        end = tracking.pause_started_at if tracking.is_paused and tracking.pause_started_at else now

        pauses = [
            PauseInterval(entry.pause_start, entry.pause_end or end)
            for entry in await self._pause_repo.list_for_tracking(tracking.id)
        ]
        accrued = self._calculator.elapsed_working_minutes(
            tracking.accrual_start_time, end, calendar, pauses
        )
        elapsed = tracking.carried_elapsed_minutes + accrued
        classification = self._calculator.classify(elapsed, rule.min_tat, rule.avg_tat, rule.max_tat)

        tracking.business_elapsed_minutes = elapsed
        tracking.sla_status = classification.status
        tracking.last_calculated_at = now
        if classification.status != SlaStatus.ON_TRACK and tracking.warning_triggered_at is None:
            tracking.warning_triggered_at = now
        if classification.is_breached and tracking.breach_triggered_at is None:
            tracking.breach_triggered_at = now
        return classification

    async def _resume(self, tracking: TicketSlaTracking) -> int:
        """Close this record's own open pause entry; returns paused minutes."""
        now = self._clock()
        minutes = 0
        entry = await self._pause_repo.get_open(tracking.id)
        if entry is not None:
            minutes = wall_minutes(entry.pause_start, now)
            entry.pause_end = now
            entry.paused_duration_minutes = minutes
            await self._pause_repo.close(entry)
            tracking.total_paused_minutes += minutes

        tracking.is_paused = False
        tracking.pause_started_at = None
        tracking.current_pause_reason = None
        return minutes

    def _targets(self, now: datetime, rule: SlaRule, calendar: EffectiveCalendar, elapsed: int):
        advance = self._calculator.advance_by_working_minutes
        return tuple(
            advance(now, max(tat - elapsed, 0), calendar)
            for tat in (rule.min_tat, rule.avg_tat, rule.max_tat)
        )

    def _shift_targets(self, tracking: TicketSlaTracking, rule: SlaRule, calendar: EffectiveCalendar, now: datetime) -> None:
        """Move targets that are still ahead by the time the ticket sat closed."""
        elapsed = tracking.business_elapsed_minutes
        advance = self._calculator.advance_by_working_minutes
        if elapsed < rule.min_tat:
            tracking.min_target_time = advance(now, rule.min_tat - elapsed, calendar)
        if elapsed < rule.avg_tat:
            tracking.avg_target_time = advance(now, rule.avg_tat - elapsed, calendar)
        if elapsed < rule.max_tat:
            tracking.max_target_time = advance(now, rule.max_tat - elapsed, calendar)
