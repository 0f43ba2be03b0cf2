"""
Integration tests for TrackingService.

WHAT: Tests the tracking state machine: initialize, recompute, pause,
resume, stop, reopen and rule changes.

WHY: Elapsed minutes drive statuses, escalations and compliance
metrics; every transition must keep them consistent.

HOW: Real SQLAlchemy repositories on in-memory SQLite, the test
catalog applied, and a fake clock starting on Monday 16:30 UTC.
"""

import asyncio

import pytest

from config import SlaStatus, ReopenMode, PauseKind
from core.exceptions import DomainException, NotTrackedError, PauseNotAllowedError

from conftest import at, CRITICAL_CONTEXT, DEFAULT_CONTEXT, VIP_CONTEXT


@pytest.fixture
def tracking(services):
    return services.tracking_service


class TestInitialize:
    """Tests for starting SLA tracking."""

    @pytest.mark.asyncio
    async def test_targets_follow_business_hours(self, tracking, rules):
        record = await tracking.initialize("T1", CRITICAL_CONTEXT)

        assert record.sla_rule_id == rules["Critical assets"].id
        assert record.min_target_time == at(16, 9, 30)
        assert record.avg_target_time == at(16, 12, 30)
        assert record.max_target_time == at(17, 9, 30)
        assert record.sla_status == SlaStatus.ON_TRACK
        assert record.business_elapsed_minutes == 0
        assert record.sla_cycle == 1

    @pytest.mark.asyncio
    async def test_vip_rule_runs_around_the_clock(self, tracking):
        record = await tracking.initialize("T1", VIP_CONTEXT)

        assert record.max_target_time == at(15, 18, 30)

    @pytest.mark.asyncio
    async def test_duplicate_initialize_raises(self, tracking):
        await tracking.initialize("T1", CRITICAL_CONTEXT)

        with pytest.raises(DomainException):
            await tracking.initialize("T1", DEFAULT_CONTEXT)


class TestRecompute:
    """Tests for elapsed minute recomputation."""

    @pytest.mark.asyncio
    async def test_recompute_next_morning(self, tracking, clock):
        await tracking.initialize("T1", CRITICAL_CONTEXT)
        clock.set(at(16, 10))

        record = await tracking.recompute_elapsed("T1")

        assert record.business_elapsed_minutes == 90
        assert record.sla_status == SlaStatus.WARNING
        assert record.warning_triggered_at == at(16, 10)
        assert record.last_calculated_at == at(16, 10)

    @pytest.mark.asyncio
    async def test_recompute_is_idempotent(self, tracking, clock):
        await tracking.initialize("T1", CRITICAL_CONTEXT)
        clock.set(at(16, 10))

        first = await tracking.recompute_elapsed("T1")
        second = await tracking.recompute_elapsed("T1")

        assert first.business_elapsed_minutes == second.business_elapsed_minutes == 90

    @pytest.mark.asyncio
    async def test_breach_is_recorded(self, tracking, clock):
        await tracking.initialize("T1", CRITICAL_CONTEXT)
        clock.set(at(17, 9, 30))

        record = await tracking.recompute_elapsed("T1")

        assert record.business_elapsed_minutes == 480
        assert record.sla_status == SlaStatus.BREACHED
        assert record.breach_triggered_at == at(17, 9, 30)

    @pytest.mark.asyncio
    async def test_untracked_ticket(self, tracking):
        with pytest.raises(NotTrackedError):
            await tracking.recompute_elapsed("missing")


class TestPauseResume:
    """Tests for stopping and restarting the clock."""

    @pytest.mark.asyncio
    async def test_paused_time_is_excluded(self, tracking, clock):
        await tracking.initialize("T1", CRITICAL_CONTEXT)

        clock.set(at(16, 9, 30))
        paused = await tracking.pause("T1", reason="Waiting for user", actor="agent", ticket_status="on_hold")
        assert paused.is_paused
        assert paused.business_elapsed_minutes == 60
        assert paused.current_pause_reason == "Waiting for user"

        clock.set(at(16, 11, 30))
        resumed = await tracking.resume("T1", actor="agent")
        assert not resumed.is_paused
        assert resumed.total_paused_minutes == 120
        assert resumed.business_elapsed_minutes == 60

        clock.set(at(16, 12))
        record = await tracking.recompute_elapsed("T1")
        assert record.business_elapsed_minutes == 90

    @pytest.mark.asyncio
    async def test_elapsed_frozen_while_paused(self, tracking, clock):
        await tracking.initialize("T1", CRITICAL_CONTEXT)
        clock.set(at(16, 9, 30))
        await tracking.pause("T1")

        clock.set(at(16, 15))
        record = await tracking.recompute_elapsed("T1")

        assert record.business_elapsed_minutes == 60

    @pytest.mark.asyncio
    async def test_double_pause_is_noop(self, tracking, clock):
        await tracking.initialize("T1", CRITICAL_CONTEXT)
        clock.set(at(16, 9, 30))
        await tracking.pause("T1", reason="first")

        clock.set(at(16, 10))
        record = await tracking.pause("T1", reason="second")

        assert record.pause_started_at == at(16, 9, 30)
        assert record.current_pause_reason == "first"
        assert len(await tracking.pause_history("T1")) == 1

    @pytest.mark.asyncio
    async def test_resume_without_pause_is_noop(self, tracking):
        await tracking.initialize("T1", CRITICAL_CONTEXT)

        record = await tracking.resume("T1")

        assert record.total_paused_minutes == 0

    @pytest.mark.asyncio
    async def test_rule_without_pause_resume(self, tracking):
        await tracking.initialize("T1", VIP_CONTEXT)

        with pytest.raises(PauseNotAllowedError):
            await tracking.pause("T1")

    @pytest.mark.asyncio
    async def test_pause_history(self, tracking, clock):
        await tracking.initialize("T1", CRITICAL_CONTEXT)
        clock.set(at(16, 9, 30))
        await tracking.pause("T1", reason="Vendor", actor="agent", ticket_status="awaiting_vendor")
        clock.set(at(16, 10))
        await tracking.resume("T1")

        history = await tracking.pause_history("T1")

        assert len(history) == 1
        entry = history[0]
        assert entry.kind == PauseKind.PAUSE
        assert entry.pause_start == at(16, 9, 30)
        assert entry.pause_end == at(16, 10)
        assert entry.paused_duration_minutes == 30
        assert entry.actor == "agent"
        assert entry.ticket_status == "awaiting_vendor"

    @pytest.mark.asyncio
    async def test_pause_over_the_rest_of_the_day(self, tracking, clock):
        await tracking.initialize("T1", CRITICAL_CONTEXT)
        clock.set(at(15, 16, 40))
        await tracking.pause("T1")
        clock.set(at(16, 9))
        await tracking.resume("T1")

        clock.set(at(16, 10))
        record = await tracking.recompute_elapsed("T1")

        assert record.business_elapsed_minutes == 70


class TestConcurrency:
    """Tests for overlapping operations on the same ticket."""

    @pytest.mark.asyncio
    async def test_concurrent_pause_and_resume_count_once(self, tracking, clock):
        await tracking.initialize("T1", CRITICAL_CONTEXT)

        clock.set(at(16, 9, 30))
        await asyncio.gather(tracking.pause("T1"), tracking.pause("T1"))
        clock.set(at(16, 10))
        await asyncio.gather(tracking.resume("T1"), tracking.resume("T1"))

        record = await tracking.get("T1")
        assert not record.is_paused
        assert record.total_paused_minutes == 30
        history = await tracking.pause_history("T1")
        assert [entry.paused_duration_minutes for entry in history] == [30]

    @pytest.mark.asyncio
    async def test_mutations_wait_for_the_runtime_lock(self, tracking, runtime, clock):
        await tracking.initialize("T1", CRITICAL_CONTEXT)
        clock.set(at(16, 9, 30))

        async with runtime.locks.hold("T1"):
            task = asyncio.create_task(tracking.pause("T1"))
            await asyncio.sleep(0.05)
            assert not task.done()

        record = await task
        assert record.is_paused

    @pytest.mark.asyncio
    async def test_reevaluate_does_not_wait_for_the_lock(self, tracking, runtime):
        await tracking.initialize("T1", DEFAULT_CONTEXT)

        async with runtime.locks.hold("T1"):
            result = await asyncio.wait_for(tracking.reevaluate("T1", CRITICAL_CONTEXT), timeout=1)

        assert result["changed"] is True

    @pytest.mark.asyncio
    async def test_reevaluate_reads_without_row_lock(self, tracking, services):
        await tracking.initialize("T1", DEFAULT_CONTEXT)
        repository = services.tracking_repository
        original = repository.get_by_ticket_id
        flags = []

        async def recording(ticket_id, for_update=False):
            flags.append(for_update)
            return await original(ticket_id, for_update=for_update)

        repository.get_by_ticket_id = recording
        await tracking.reevaluate("T1", CRITICAL_CONTEXT)

        assert flags and not any(flags)


class TestStop:
    """Tests for closing tracking."""

    @pytest.mark.asyncio
    async def test_final_status_is_current_status(self, tracking, clock):
        await tracking.initialize("T1", CRITICAL_CONTEXT)
        clock.set(at(16, 10))

        record = await tracking.stop("T1")

        assert record.resolved_at == at(16, 10)
        assert record.final_status == SlaStatus.WARNING
        assert record.business_elapsed_minutes == 90

    @pytest.mark.asyncio
    async def test_explicit_final_status(self, tracking, clock):
        await tracking.initialize("T1", CRITICAL_CONTEXT)
        clock.set(at(16, 10))

        record = await tracking.stop("T1", final_status=SlaStatus.ON_TRACK)

        assert record.final_status == SlaStatus.ON_TRACK

    @pytest.mark.asyncio
    async def test_stop_while_paused_closes_pause(self, tracking, clock):
        await tracking.initialize("T1", CRITICAL_CONTEXT)
        clock.set(at(16, 9, 30))
        await tracking.pause("T1")

        clock.set(at(16, 10))
        record = await tracking.stop("T1")

        assert not record.is_paused
        assert record.total_paused_minutes == 30
        assert record.business_elapsed_minutes == 60
        assert all(entry.pause_end is not None for entry in await tracking.pause_history("T1"))

    @pytest.mark.asyncio
    async def test_closed_record_is_frozen(self, tracking, clock):
        await tracking.initialize("T1", CRITICAL_CONTEXT)
        clock.set(at(16, 10))
        await tracking.stop("T1")

        clock.set(at(18, 10))
        recomputed = await tracking.recompute_elapsed("T1")
        paused = await tracking.pause("T1")
        stopped = await tracking.stop("T1")

        assert recomputed.business_elapsed_minutes == 90
        assert not paused.is_paused
        assert stopped.resolved_at == at(16, 10)


class TestReopen:
    """Tests for reviving closed tracking."""

    @pytest.mark.asyncio
    async def test_continue_skips_closed_gap(self, tracking, clock):
        await tracking.initialize("T1", CRITICAL_CONTEXT)
        clock.set(at(16, 10))
        await tracking.stop("T1")

        clock.set(at(16, 12))
        record = await tracking.reopen("T1", ReopenMode.CONTINUE)

        assert record.resolved_at is None
        assert record.final_status is None
        assert record.business_elapsed_minutes == 90
        assert record.total_paused_minutes == 0
        assert record.min_target_time == at(16, 9, 30)
        assert record.avg_target_time == at(16, 15, 30)
        assert record.max_target_time == at(17, 11, 30)

        history = await tracking.pause_history("T1")
        assert len(history) == 1
        assert history[0].kind == PauseKind.CLOSED
        assert history[0].paused_duration_minutes == 120

        clock.set(at(16, 12, 30))
        assert (await tracking.recompute_elapsed("T1")).business_elapsed_minutes == 120

    @pytest.mark.asyncio
    async def test_continue_on_open_record_is_noop(self, tracking, clock):
        await tracking.initialize("T1", CRITICAL_CONTEXT)
        clock.set(at(16, 10))

        await tracking.reopen("T1", "continue")

        assert await tracking.pause_history("T1") == []

    @pytest.mark.asyncio
    async def test_new_sla_restarts_timers(self, tracking, clock):
        original = await tracking.initialize("T1", CRITICAL_CONTEXT)
        clock.set(at(16, 10))
        await tracking.stop("T1")

        clock.set(at(17, 9))
        record = await tracking.reopen("T1", ReopenMode.NEW_SLA)

        assert record.id == original.id
        assert record.sla_cycle == 2
        assert record.sla_start_time == at(17, 9)
        assert record.business_elapsed_minutes == 0
        assert record.sla_status == SlaStatus.ON_TRACK
        assert record.warning_triggered_at is None
        assert record.max_target_time == at(18, 10)

    @pytest.mark.asyncio
    async def test_reset_rematches_and_drops_history(self, tracking, clock, rules):
        original = await tracking.initialize("T1", CRITICAL_CONTEXT)
        clock.set(at(16, 9, 30))
        await tracking.pause("T1")
        clock.set(at(16, 10))
        await tracking.stop("T1")

        clock.set(at(16, 11))
        record = await tracking.reopen("T1", ReopenMode.RESET, context=DEFAULT_CONTEXT)

        assert record.id != original.id
        assert record.sla_rule_id == rules["Default"].id
        assert record.sla_start_time == at(16, 11)
        assert record.sla_cycle == 1
        assert await tracking.pause_history("T1") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode", [ReopenMode.CONTINUE, ReopenMode.NEW_SLA])
    async def test_reopen_untracked(self, tracking, mode):
        with pytest.raises(NotTrackedError):
            await tracking.reopen("missing", mode)


class TestRuleChange:
    """Tests for switching a tracked ticket to another rule."""

    @pytest.mark.asyncio
    async def test_elapsed_time_is_carried(self, tracking, clock, rules):
        await tracking.initialize("T1", DEFAULT_CONTEXT)
        clock.set(at(16, 10))

        record = await tracking.apply_rule_change("T1", rules["Critical assets"])

        assert record.sla_rule_id == rules["Critical assets"].id
        assert record.carried_elapsed_minutes == 90
        assert record.sla_status == SlaStatus.WARNING
        assert record.max_target_time == at(17, 9, 30)

        clock.set(at(16, 11))
        assert (await tracking.recompute_elapsed("T1")).business_elapsed_minutes == 150

    @pytest.mark.asyncio
    async def test_same_rule_is_noop(self, tracking, clock, rules):
        await tracking.initialize("T1", CRITICAL_CONTEXT)
        clock.set(at(16, 10))

        record = await tracking.apply_rule_change("T1", rules["Critical assets"])

        assert record.carried_elapsed_minutes == 0

    @pytest.mark.asyncio
    async def test_reevaluate_reports_without_changing(self, tracking, rules):
        await tracking.initialize("T1", DEFAULT_CONTEXT)

        result = await tracking.reevaluate("T1", CRITICAL_CONTEXT)

        assert result["changed"] is True
        assert result["rule"].id == rules["Critical assets"].id
        assert result["previous_rule_id"] == rules["Default"].id
        assert [e.escalation_level for e in result["escalation_rules"]] == [1, 2, 3, 4]
        assert (await tracking.get("T1")).sla_rule_id == rules["Default"].id


class TestQueries:
    """Tests for breach listings and metrics."""

    @pytest.mark.asyncio
    async def test_approaching_breach(self, tracking, clock):
        await tracking.initialize("T1", CRITICAL_CONTEXT)
        await tracking.initialize("T2", DEFAULT_CONTEXT)
        clock.set(at(17, 9, 10))
        await tracking.recompute_elapsed("T1")
        await tracking.recompute_elapsed("T2")

        results = await tracking.approaching_breach()

        assert [r["tracking"].ticket_id for r in results] == ["T1"]
        assert results[0]["remaining_minutes"] == 20

    @pytest.mark.asyncio
    async def test_zero_threshold_is_respected(self, tracking, clock):
        await tracking.initialize("T1", CRITICAL_CONTEXT)
        clock.set(at(17, 9, 10))
        await tracking.recompute_elapsed("T1")

        assert await tracking.approaching_breach(threshold_minutes=0) == []
        assert len(await tracking.approaching_breach()) == 1

    @pytest.mark.asyncio
    async def test_breached_and_metrics(self, tracking, clock):
        await tracking.initialize("T1", CRITICAL_CONTEXT)
        await tracking.initialize("T2", DEFAULT_CONTEXT)
        clock.set(at(17, 10))
        await tracking.recompute_elapsed("T1")
        await tracking.recompute_elapsed("T2")

        breached = await tracking.breached()
        assert [t.ticket_id for t in breached] == ["T1"]

        metrics = await tracking.metrics()
        assert metrics["by_status"]["breached"] == 1
        assert metrics["by_status"]["warning"] == 1
        assert metrics["total"] == 2
        assert metrics["compliance_rate"] is None

        await tracking.stop("T2")
        metrics = await tracking.metrics()
        assert metrics["open"] == 1
        assert metrics["resolved"] == 1
        assert metrics["compliance_rate"] == 100.0

    @pytest.mark.asyncio
    async def test_get_many(self, tracking):
        await tracking.initialize("T1", CRITICAL_CONTEXT)
        await tracking.initialize("T2", DEFAULT_CONTEXT)

        records = await tracking.get_many(["T1", "T2", "T3"])

        assert sorted(r.ticket_id for r in records) == ["T1", "T2"]
