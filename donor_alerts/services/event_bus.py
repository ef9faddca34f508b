# donor_alerts/services/event_bus.py
"""
In-process event bus.

Store writes publish typed events here; components subscribe handlers per
event type. publish() only enqueues; delivery happens in run() (background
loop) or drain() (tests, one-off scripts).

Every handler returns a HandlerResult. A failed result marked retryable is
redelivered to that same handler up to `max_redeliveries` times, anything
else is logged and dropped.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Type

from donor_alerts.models.events import DomainEvent
from donor_alerts.models.result import HandlerResult

logger = logging.getLogger(__name__)

Handler = Callable[[DomainEvent], Awaitable[HandlerResult]]
# (event, handler or None for "all subscribers", attempt)
_Item = Tuple[DomainEvent, Optional[Handler], int]


def _handler_name(handler: Handler) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


class EventBus:
    def __init__(self, max_redeliveries: int = 2, concurrency: int = 10):
        self.max_redeliveries = max_redeliveries
        self.concurrency = concurrency
        self._handlers: Dict[Type[DomainEvent], List[Handler]] = {}
        self._queue: "asyncio.Queue[_Item]" = asyncio.Queue()

    def subscribe(self, event_type: Type[DomainEvent], handler: Handler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug("Subscribed %s to %s", _handler_name(handler), event_type.__name__)

    def handlers_for(self, event_type: Type[DomainEvent]) -> List[Handler]:
        return list(self._handlers.get(event_type, []))

    def publish(self, event: DomainEvent) -> None:
        self._queue.put_nowait((event, None, 0))

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _call(
        self, event: DomainEvent, handler: Handler, attempt: int, redeliver: bool = True
    ) -> HandlerResult:
        name = _handler_name(handler)
        try:
            result = await handler(event)
        except Exception as e:
            # handlers are expected to return failures, not raise them
            logger.exception("Handler %s raised on %s", name, type(event).__name__)
            result = HandlerResult.from_exception(e, error_code="HANDLER_CRASHED")

        if result.success:
            return result

        if not redeliver:
            logger.warning(
                "Handler %s failed on %s %s: %s [%s]",
                name, type(event).__name__, event.event_id, result.error, result.error_code,
            )
        elif result.retryable and attempt < self.max_redeliveries:
            logger.warning(
                "Handler %s failed on %s %s (%s), redelivering (attempt %d/%d)",
                name, type(event).__name__, event.event_id, result.error,
                attempt + 1, self.max_redeliveries,
            )
            self._queue.put_nowait((event, handler, attempt + 1))
        else:
            logger.error(
                "Handler %s failed on %s %s: %s [%s]; dropping",
                name, type(event).__name__, event.event_id, result.error, result.error_code,
            )
        return result

    async def dispatch(
        self,
        event: DomainEvent,
        handler: Optional[Handler] = None,
        attempt: int = 0,
        redeliver: bool = True,
    ) -> List[HandlerResult]:
        """
        Runs the handlers for one event now, concurrently. With
        redeliver=False failures are only reported back, the caller owns the
        retry (used by the Service Bus consumer, which abandons the message).
        """
        if handler is not None:
            return [await self._call(event, handler, attempt, redeliver)]

        handlers = self.handlers_for(type(event))
        if not handlers:
            logger.warning("No handlers registered for %s", type(event).__name__)
            return []
        logger.debug("Dispatching %s %s", type(event).__name__, event.event_id)
        return list(
            await asyncio.gather(*(self._call(event, h, attempt, redeliver) for h in handlers))
        )

    async def drain(self) -> List[HandlerResult]:
        """
        Delivers until the queue is empty, including events published by the
        handlers themselves. Returns every handler result in delivery order.
        """
        results: List[HandlerResult] = []
        while not self._queue.empty():
            event, handler, attempt = self._queue.get_nowait()
            try:
                results.extend(await self.dispatch(event, handler, attempt))
            finally:
                self._queue.task_done()
        return results

    async def run(self) -> None:
        """Background delivery loop; up to `concurrency` events in flight."""
        semaphore = asyncio.Semaphore(self.concurrency)
        in_flight = set()

        async def deliver(item: _Item) -> None:
            event, handler, attempt = item
            try:
                await self.dispatch(event, handler, attempt)
            finally:
                self._queue.task_done()
                semaphore.release()

        logger.info("Event bus started")
        try:
            while True:
                item = await self._queue.get()
                await semaphore.acquire()
                task = asyncio.create_task(deliver(item))
                in_flight.add(task)
                task.add_done_callback(in_flight.discard)
        except asyncio.CancelledError:
            for task in in_flight:
                task.cancel()
            logger.info("Event bus stopped")
            raise
