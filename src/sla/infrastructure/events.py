"""
SLA Event Consumer
===================

Bounded queue of ticket lifecycle events processed by a background task.

Each event is handled in its own session through the lifecycle hooks,
so a failing event never affects the ones queued after it.
"""

import asyncio
from typing import Any, Callable, Optional

from config import settings, LifecycleEventType
from core.exceptions import DomainException
from sla.application.dto import LifecycleEventRequest
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


async def dispatch_event(hooks, event: LifecycleEventRequest) -> Any:
    """Route one lifecycle event to its hook."""
    kind = event.event_type
    if kind == LifecycleEventType.TICKET_CREATED:
        return await hooks.on_ticket_created(event.ticket.to_domain(), event.asset_ids or None)
    if kind == LifecycleEventType.STATUS_CHANGED:
        return await hooks.on_status_changed(event.ticket_id, event.old_value, event.new_value, event.actor)
    if kind == LifecycleEventType.PRIORITY_CHANGED:
        return await hooks.on_priority_changed(event.ticket_id, event.old_value, event.new_value)
    if kind == LifecycleEventType.ASSET_LINKED:
        result = None
        for asset_id in event.asset_ids:
            result = await hooks.on_asset_linked(event.ticket_id, asset_id)
        return result
    if kind == LifecycleEventType.TICKET_ASSIGNED:
        return await hooks.on_ticket_assigned(event.ticket_id, event.old_value, event.new_value)
    ticket = event.ticket.to_domain() if event.ticket else None
    return await hooks.on_ticket_reopened(event.ticket_id, ticket, event.mode)


class SlaEventConsumer:
    """
    Background consumer of lifecycle events.

    Args:
        session_factory: Callable returning an ``AsyncSession`` context
        services_factory: Callable building the SLA services for a session
        maxsize: Queue capacity
    """

    def __init__(
        self,
        session_factory: Callable[[], Any],
        services_factory: Callable[[Any], Any],
        maxsize: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self._services_factory = services_factory
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or settings.sla_event_queue_size)
        self._task: Optional[asyncio.Task] = None
        self.processed = 0
        self.failed = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    def publish(self, event: LifecycleEventRequest) -> None:
        """
        Enqueue an event without waiting.

        Raises:
            DomainException: If the queue is full
        """
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull as e:
            raise DomainException(
                "SLA event queue is full",
                {"ticket_id": event.ticket_id, "queue_size": self._queue.qsize()},
            ) from e

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._consume(), name="sla-event-consumer")
        logger.info("SLA event consumer started")

    async def stop(self) -> None:
        """Drain queued events, then stop the consumer task."""
        if self._task is None:
            return
        await self._queue.join()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("SLA event consumer stopped", extra={"processed": self.processed, "failed": self.failed})

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.process(event)
            finally:
                self._queue.task_done()

    async def process(self, event: LifecycleEventRequest) -> Any:
        """Handle one event in its own session."""
        try:
            async with self._session_factory() as session:
                services = self._services_factory(session)
                result = await dispatch_event(services.hooks, event)
                await session.commit()
            self.processed += 1
            return result
        except Exception as e:
            self.failed += 1
            logger.error(
                "SLA event processing failed",
                extra={"event_type": event.event_type.value, "ticket_id": event.ticket_id, "error": str(e)},
                exc_info=True,
            )
            return None
