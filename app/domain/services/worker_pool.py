"""
Event Worker Pool - מספר חסום של workers שמרוקנים תור של event ids.

ה-webhook מאושר אחרי הרישום ב-log; העיבוד עצמו רץ כאן. אירוע שלא
עובד בגלל קריסה נשאר pending/processing ונאסף ע"י replay_stalled.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from app.core.logging import get_logger

logger = get_logger(__name__)

EventProcessor = Callable[[str], Awaitable[Any]]


class EventWorkerPool:
    """``concurrency`` asyncio tasks draining one queue"""

    def __init__(self, process: EventProcessor, *, concurrency: int = 4):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.process = process
        self.concurrency = concurrency
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"event-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("Event worker pool started", extra_data={"concurrency": self.concurrency})

    def enqueue(self, event_id: str) -> None:
        self._queue.put_nowait(event_id)

    async def _worker(self, index: int) -> None:
        while True:
            event_id = await self._queue.get()
            try:
                await self.process(event_id)
            except Exception:
                # האירוע נשאר פתוח ב-log; replay_stalled ינסה שוב
                logger.error(
                    "Event worker failed to process event",
                    extra_data={"event_id": event_id, "worker": index},
                    exc_info=True,
                )
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued event has been processed"""
        await self._queue.join()

    async def stop(self) -> None:
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        if self._queue.qsize():
            logger.warning(
                "Event worker pool stopped with queued events, left for replay",
                extra_data={"queued": self._queue.qsize()},
            )
        logger.info("Event worker pool stopped")
