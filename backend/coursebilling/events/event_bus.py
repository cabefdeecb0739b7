"""
In-process event bus.

Publishers hand events to a bounded queue and return immediately; a few worker
tasks dispatch them to the subscribed handlers.
"""
import asyncio
import inspect
from collections import Counter, defaultdict
from typing import Any, Callable, Dict, List, Optional

from ..core.logging_config import get_logger
from .event_types import Event, EventType

logger = get_logger(__name__)

Handler = Callable[[Event], Any]


class EventBus:
    """
    Fire-and-forget publish/subscribe.

    A full queue drops the event. A handler that raises is logged and counted,
    and the remaining handlers for that event still run.
    """

    def __init__(self, max_queue_size: int = 10_000) -> None:
        self.max_queue_size = max_queue_size
        self._handlers: Dict[EventType, List[Handler]] = defaultdict(list)
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._counts: Counter = Counter()

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    @property
    def queue(self) -> asyncio.Queue:
        # Created lazily so the queue binds to the running loop
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.max_queue_size)
        return self._queue

    def subscribe(self, event_type: EventType, handler: Handler) -> None:
        if not callable(handler):
            raise TypeError(f"Handler for {event_type.value} is not callable: {handler!r}")
        self._handlers[event_type].append(handler)

    async def initialize(self, num_workers: int = 2) -> None:
        """Start the dispatch workers."""
        if self.is_running:
            return
        self._workers = [
            asyncio.create_task(self._work(), name=f"event-bus-{n}")
            for n in range(num_workers)
        ]
        logger.info(f"Event bus started with {num_workers} workers")

    async def shutdown(self, timeout: float = 10) -> None:
        """Let queued events finish (up to `timeout`), then stop the workers."""
        if not self.is_running:
            return
        try:
            await asyncio.wait_for(self.queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Event bus stopped with {self.queue.qsize()} events still queued")

        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        logger.info(f"Event bus stopped: {self.get_metrics()}")

    def publish_nowait(self, event_type: EventType, data: Dict[str, Any]) -> Optional[str]:
        """
        Queue an event.

        Returns:
            The event id, or None when the queue was full
        """
        event = Event(type=event_type, data=data)
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self._counts["dropped"] += 1
            logger.warning(f"Event queue full; dropped {event_type.value}")
            return None
        self._counts["published"] += 1
        return event.id

    async def _work(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                await self.dispatch(event)
            finally:
                self.queue.task_done()

    async def dispatch(self, event: Event) -> None:
        """Run every handler for `event`, isolating failures."""
        for handler in tuple(self._handlers.get(event.type, ())):
            name = getattr(handler, "__name__", repr(handler))
            try:
                if inspect.iscoroutinefunction(handler):
                    await handler(event)
                else:
                    await asyncio.to_thread(handler, event)
            except Exception as e:
                self._counts["failed"] += 1
                logger.error(f"{name} failed on {event.type.value} event {event.id}: {e}", exc_info=True)
        self._counts["processed"] += 1

    def get_metrics(self) -> Dict[str, int]:
        return {key: self._counts[key] for key in ("published", "processed", "failed", "dropped")}
