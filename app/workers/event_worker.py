"""
In-process event queue drained by a single consumer task.

The queue only schedules work. Durable inbox rows are the source of truth,
and ``recover`` callbacks rebuild the queue from them after a restart.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from app.core.logging import get_logger

logger = get_logger(__name__)

EventHandler = Callable[[str], Awaitable[object]]


class EventWorker:
    """One asyncio queue, one consumer: events are handled strictly in order"""

    def __init__(self, handler: EventHandler, name: str = "webhook-events"):
        self.name = name
        self._handler = handler
        self._queue: asyncio.Queue[str] | None = None
        self._consumer: asyncio.Task | None = None
        self._timers: set[asyncio.TimerHandle] = set()

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    @property
    def queue_size(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._consumer = asyncio.create_task(self._consume(), name=f"{self.name}-consumer")
        logger.info("Event worker started", extra_data={"worker": self.name})

    async def stop(self) -> None:
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()

        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        logger.info("Event worker stopped", extra_data={"worker": self.name})

    def enqueue(self, event_id: str) -> None:
        if self._queue is None:
            logger.debug("Event worker not running, event left for recovery", extra_data={"event_id": event_id})
            return
        self._queue.put_nowait(event_id)

    def enqueue_later(self, event_id: str, delay_seconds: float) -> None:
        """Re-enqueue after a delay using the loop timer"""
        if self._queue is None:
            return
        loop = asyncio.get_running_loop()
        timer: asyncio.TimerHandle | None = None

        def _fire() -> None:
            self._timers.discard(timer)
            self.enqueue(event_id)

        timer = loop.call_later(max(0.0, delay_seconds), _fire)
        self._timers.add(timer)

    async def join(self) -> None:
        """Wait until every queued event has been handled"""
        if self._queue is not None:
            await self._queue.join()

    async def _consume(self) -> None:
        assert self._queue is not None
        while True:
            event_id = await self._queue.get()
            try:
                await self._handler(event_id)
            except Exception as e:
                # The handler persists its own failures; anything escaping here is a bug
                logger.error(
                    "Unhandled error in event worker",
                    extra_data={"worker": self.name, "event_id": event_id, "error": str(e)},
                    exc_info=True,
                )
            finally:
                self._queue.task_done()
