"""
SLA Controllers (API Routes)
=============================

FastAPI routes for SLA tracking endpoints.

Controllers are thin - they delegate to application services. Domain
errors propagate to the application exception handler, which maps them
to HTTP status codes.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from infrastructure.database import get_session
from config import settings, ReopenMode
from sla.application.dto import (
    InitializeTrackingRequest, PauseRequest, ResumeRequest, StopRequest,
    ReopenRequest, ReevaluateRequest, BulkStatusRequest, LifecycleEventRequest,
    CacheInvalidateRequest, TrackingResponse, SlaStatusResponse, BulkStatusResponse,
    PauseLogResponse, EscalationNotificationResponse, ReevaluateResponse,
    ApproachingBreachItem, SweepResponse, EventAcceptedResponse, RuleSummary,
)
from sla.application.escalation import SlaSweepJob
from sla.infrastructure.events import SlaEventConsumer
from sla.infrastructure.wiring import SlaServices, get_runtime

from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/sla", tags=["SLA Tracking"])


# ========== Example payloads for Swagger ==========

SLA_STATUS_EXAMPLE = {
    "ticket_id": "INC-1042",
    "is_tracked": True,
    "status": "warning",
    "elapsed_minutes": 90,
    "remaining_minutes": 390,
    "percent_used": 19,
    "is_paused": False,
    "is_breached": False,
    "is_closed": False,
    "rule_name": "Critical asset incidents",
    "thresholds": {"min_tat": 60, "avg_tat": 240, "max_tat": 480},
    "max_target_time": "2024-01-17T04:00:00Z",
    "sla_cycle": 1
}

SWEEP_EXAMPLE = {
    "status": "success",
    "succeeded": 42,
    "failed": 0,
    "escalations_triggered": 3,
    "notifications": {"sent": 3, "partial": 0, "failed": 0},
    "duration_ms": 184,
    "errors": []
}


# ========== Dependencies ==========

async def get_sla_services(session: AsyncSession = Depends(get_session)) -> SlaServices:
    """Get SLA services bound to the request session."""
    return get_runtime().services(session)


def get_sweep_job(request: Request) -> SlaSweepJob:
    job = getattr(request.app.state, "sweep_job", None)
    if job is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="SLA sweep job not available")
    return job


def get_event_consumer(request: Request) -> SlaEventConsumer:
    consumer = getattr(request.app.state, "event_consumer", None)
    if consumer is None or not consumer.is_running:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="SLA event consumer not running")
    return consumer


# ========== Ticket status ==========

@router.get(
    "/tickets/{ticket_id}/status",
    response_model=SlaStatusResponse,
    summary="Get ticket SLA status",
    description="""
    Current SLA status of a ticket, recomputed before it is returned.

    Untracked tickets return `is_tracked: false` with status `not_tracked`.
    `percent_used` is capped at 100.
    """,
    responses={200: {"content": {"application/json": {"example": SLA_STATUS_EXAMPLE}}}}
)
async def get_ticket_status(ticket_id: str, services: SlaServices = Depends(get_sla_services)):
    result = await services.hooks.get_sla_status(ticket_id)
    if result is None:
        return SlaStatusResponse.not_tracked(ticket_id)
    return SlaStatusResponse(**result)


@router.post(
    "/tickets/status/bulk",
    response_model=BulkStatusResponse,
    summary="Get SLA status of several tickets",
    description="Classifies stored elapsed minutes without recomputing. Untracked tickets map to `null`."
)
async def get_bulk_status(request: BulkStatusRequest, services: SlaServices = Depends(get_sla_services)):
    return BulkStatusResponse(statuses=await services.hooks.get_bulk_sla_status(request.ticket_ids))


# ========== Tracking lifecycle ==========

@router.post(
    "/tickets/{ticket_id}/tracking",
    response_model=TrackingResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start SLA tracking",
    description="""
    Match an SLA rule and start the clock for a ticket.

    Supply either a pre-resolved `context` or the `ticket`, which is
    resolved into a context through the ticket service. Unlike the
    lifecycle hooks, failures are returned to the caller.
    """
)
async def initialize_tracking(
    ticket_id: str,
    request: InitializeTrackingRequest,
    services: SlaServices = Depends(get_sla_services),
):
    if request.context is not None:
        context = request.context.to_domain()
    else:
        context = await services.tracking_service.build_context(request.ticket.to_domain())
    tracking = await services.tracking_service.initialize(ticket_id, context)
    return TrackingResponse.model_validate(tracking)


@router.get("/tickets/{ticket_id}/tracking", response_model=TrackingResponse, summary="Get tracking record")
async def get_tracking(ticket_id: str, services: SlaServices = Depends(get_sla_services)):
    tracking = await services.tracking_service.get(ticket_id)
    if tracking is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Ticket {ticket_id} is not tracked")
    return TrackingResponse.model_validate(tracking)


@router.post("/tickets/{ticket_id}/recompute", response_model=TrackingResponse, summary="Recompute elapsed time")
async def recompute(ticket_id: str, services: SlaServices = Depends(get_sla_services)):
    return TrackingResponse.model_validate(await services.tracking_service.recompute_elapsed(ticket_id))


@router.post(
    "/tickets/{ticket_id}/pause",
    response_model=TrackingResponse,
    summary="Pause the SLA clock",
    description="No-op when already paused. Returns 409 when the ticket's rule does not allow pausing."
)
async def pause(
    ticket_id: str,
    request: PauseRequest = PauseRequest(),
    services: SlaServices = Depends(get_sla_services),
):
    tracking = await services.tracking_service.pause(
        ticket_id, reason=request.reason, actor=request.actor, ticket_status=request.ticket_status
    )
    return TrackingResponse.model_validate(tracking)


@router.post("/tickets/{ticket_id}/resume", response_model=TrackingResponse, summary="Resume the SLA clock")
async def resume(
    ticket_id: str,
    request: ResumeRequest = ResumeRequest(),
    services: SlaServices = Depends(get_sla_services),
):
    return TrackingResponse.model_validate(await services.tracking_service.resume(ticket_id, actor=request.actor))


@router.post("/tickets/{ticket_id}/stop", response_model=TrackingResponse, summary="Stop SLA tracking")
async def stop(
    ticket_id: str,
    request: StopRequest = StopRequest(),
    services: SlaServices = Depends(get_sla_services),
):
    return TrackingResponse.model_validate(
        await services.tracking_service.stop(ticket_id, final_status=request.final_status)
    )


@router.post(
    "/tickets/{ticket_id}/reopen",
    response_model=TrackingResponse,
    summary="Reopen SLA tracking",
    description="""
    Revive tracking of a closed ticket.

    - `reset`: discard the record and start again from now
    - `continue`: keep elapsed time; time spent closed does not count
    - `new_sla`: keep the rule, restart all timers and bump `sla_cycle`
    """
)
async def reopen(
    ticket_id: str,
    request: ReopenRequest = ReopenRequest(),
    services: SlaServices = Depends(get_sla_services),
):
    mode = request.mode or ReopenMode(settings.sla_default_reopen_mode)
    context = request.context.to_domain() if request.context else None
    return TrackingResponse.model_validate(await services.tracking_service.reopen(ticket_id, mode, context))


@router.post(
    "/tickets/{ticket_id}/reevaluate",
    response_model=ReevaluateResponse,
    summary="Re-run rule matching",
    description="Reports which rule would apply now. With `apply: true` the ticket switches rules, carrying elapsed time over."
)
async def reevaluate(
    ticket_id: str,
    request: ReevaluateRequest = ReevaluateRequest(),
    services: SlaServices = Depends(get_sla_services),
):
    context = request.context.to_domain() if request.context else None
    report = await services.tracking_service.reevaluate(ticket_id, context)
    applied = False
    if report["changed"] and request.apply:
        await services.tracking_service.apply_rule_change(ticket_id, report["rule"])
        applied = True

    return ReevaluateResponse(
        changed=report["changed"],
        applied=applied,
        rule=RuleSummary.model_validate(report["rule"]),
        previous_rule_id=report["previous_rule_id"],
        escalation_levels=[e.escalation_level for e in report["escalation_rules"]],
        match_reason=report["match_reason"],
        match_context=report["match_context"],
    )


# ========== History ==========

@router.get("/tickets/{ticket_id}/pause-history", response_model=List[PauseLogResponse], summary="Pause history")
async def pause_history(ticket_id: str, services: SlaServices = Depends(get_sla_services)):
    return [PauseLogResponse.model_validate(e) for e in await services.tracking_service.pause_history(ticket_id)]


@router.get(
    "/tickets/{ticket_id}/escalations",
    response_model=List[EscalationNotificationResponse],
    summary="Escalation history"
)
async def escalation_history(ticket_id: str, services: SlaServices = Depends(get_sla_services)):
    return [
        EscalationNotificationResponse(**n.to_dict())
        for n in await services.notification_service.history(ticket_id)
    ]


@router.post(
    "/escalations/{notification_id}/acknowledge",
    response_model=EscalationNotificationResponse,
    summary="Acknowledge an escalation"
)
async def acknowledge_escalation(
    notification_id: str,
    actor: str = Query(..., min_length=1),
    services: SlaServices = Depends(get_sla_services),
):
    notification = await services.notification_service.acknowledge(notification_id, actor)
    if notification is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Notification {notification_id} not found")
    return EscalationNotificationResponse(**notification.to_dict())


@router.get("/escalations/stats", summary="Escalation notification statistics")
async def escalation_stats(services: SlaServices = Depends(get_sla_services)):
    return await services.notification_service.stats()


# ========== Events & sweep ==========

@router.post(
    "/events",
    response_model=EventAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Publish a ticket lifecycle event",
    description="Events are queued and processed in the background through the lifecycle hooks."
)
async def publish_event(event: LifecycleEventRequest, consumer: SlaEventConsumer = Depends(get_event_consumer)):
    consumer.publish(event)
    return EventAcceptedResponse(accepted=True, queue_size=consumer.queue_size)


@router.post(
    "/sweep",
    response_model=SweepResponse,
    summary="Run an SLA sweep now",
    responses={200: {"content": {"application/json": {"example": SWEEP_EXAMPLE}}}}
)
async def run_sweep(job: SlaSweepJob = Depends(get_sweep_job)):
    result = await job.run()
    if result["status"] == "skipped":
        return SweepResponse(status="skipped")
    return SweepResponse(
        status=result["status"],
        succeeded=result["tracking"]["updated"],
        failed=result["tracking"]["errors"],
        escalations_triggered=result["escalations"]["triggered"],
        notifications=result["notifications"],
        duration_ms=result["duration_ms"],
        errors=result["errors"],
    )


@router.get("/sweep/status", summary="SLA sweep job status")
async def sweep_status(request: Request, job: SlaSweepJob = Depends(get_sweep_job)):
    scheduler = getattr(request.app.state, "sla_scheduler", None)
    return {
        **job.get_status(),
        "scheduler_running": bool(scheduler and scheduler.is_running),
        "next_run_time": scheduler.next_run_time if scheduler else None,
    }


# ========== Reporting ==========

@router.get("/breached", response_model=List[TrackingResponse], summary="Breached open tickets")
async def breached(
    limit: int = Query(default=100, ge=1, le=1000),
    services: SlaServices = Depends(get_sla_services),
):
    return [TrackingResponse.model_validate(t) for t in await services.tracking_service.breached(limit)]


@router.get(
    "/approaching-breach",
    response_model=List[ApproachingBreachItem],
    summary="Tickets close to breaching",
    description="Active tickets whose remaining working minutes are within the threshold, soonest first."
)
async def approaching_breach(
    threshold_minutes: Optional[int] = Query(default=None, ge=1),
    limit: int = Query(default=100, ge=1, le=1000),
    services: SlaServices = Depends(get_sla_services),
):
    items = await services.tracking_service.approaching_breach(threshold_minutes, limit)
    return [
        ApproachingBreachItem(
            ticket_id=item["tracking"].ticket_id,
            rule_name=item["rule"].name,
            sla_status=item["tracking"].sla_status,
            elapsed_minutes=item["tracking"].business_elapsed_minutes,
            remaining_minutes=item["remaining_minutes"],
            max_target_time=item["tracking"].max_target_time,
        )
        for item in items
    ]


@router.get("/metrics", summary="SLA metrics")
async def metrics(services: SlaServices = Depends(get_sla_services)):
    return await services.tracking_service.metrics()


@router.post("/cache/invalidate", summary="Invalidate cached calendars")
async def invalidate_cache(
    request: CacheInvalidateRequest = CacheInvalidateRequest(),
    services: SlaServices = Depends(get_sla_services),
):
    invalidated = []
    if request.schedule_id:
        services.calendar_store.invalidate_schedule(request.schedule_id)
        invalidated.append(f"schedule:{request.schedule_id}")
    if request.holiday_calendar_id:
        services.calendar_store.invalidate_holidays(request.holiday_calendar_id)
        invalidated.append(f"holidays:{request.holiday_calendar_id}")
    if not invalidated:
        services.calendar_store.invalidate_all()
        invalidated.append("all")

    logger.info("Calendar cache invalidated", extra={"keys": invalidated})
    return {"invalidated": invalidated}


sla_router = router
