"""
Dispatch Scheduler - מתי לשלוח בקשת משלוח לשליחויות.

dispatch_due_at = promised_time − lead buffer, ונשמר על שורת ה-Delivery.
הטיימרים בזיכרון הם רק אופטימיזציה: מקור האמת הוא ה-DB, וסריקה
תקופתית (וגם סריקת recovery בהפעלה) יורה כל משלוח שזמנו הגיע ועדיין
לא נשלח. כל ירי נרשם כאירוע delivery.dispatch ועובר ב-Retry Executor.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.clock import Clock, system_clock
from app.core.logging import get_logger
from app.db.models.delivery import Delivery, DeliveryStatus
from app.db.models.webhook_event import EventSource
from app.domain.events import LoggedEvent
from app.domain.services.retry_executor import ExecutionOutcome, RetryExecutor
from app.domain.services.webhook_log_service import WebhookLogService

logger = get_logger(__name__)

DISPATCH_EVENT_TYPE = "delivery.dispatch"
# משלוח שזמנו פחות מדקה קדימה יוצא מיד
IMMEDIATE_FIRE_SECONDS = 60.0

DispatchHandler = Callable[[LoggedEvent], Awaitable[None]]


def compute_dispatch_due_at(
    promised_time: datetime | None,
    lead_buffer: timedelta,
    now: datetime,
) -> datetime:
    """promised_time − lead_buffer; no promised time means dispatch now"""
    if promised_time is None:
        return now
    return promised_time - lead_buffer


class DispatchScheduler:
    """Timers for near deliveries plus a periodic scan of persisted due times"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        executor: RetryExecutor,
        handler: DispatchHandler,
        *,
        clock: Clock = system_clock,
        scan_interval_seconds: float = 60.0,
        horizon_seconds: float = 6 * 3600,
    ):
        self.session_factory = session_factory
        self.executor = executor
        self.handler = handler
        self.clock = clock
        self.scan_interval_seconds = scan_interval_seconds
        self.horizon_seconds = horizon_seconds

        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._in_flight: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._scan_task: asyncio.Task | None = None

    # ==================== Timers ====================

    def schedule_dispatch(self, external_delivery_id: str, due_at: datetime) -> None:
        """Arm a timer for ``due_at``; due (or nearly due) deliveries fire at once"""
        delay = (due_at - self.clock.now()).total_seconds()
        # טיימר קודם (due time ישן) לא יורה אחרי תזמון מחדש
        self.cancel(external_delivery_id)

        if delay <= IMMEDIATE_FIRE_SECONDS:
            self._spawn_fire(external_delivery_id)
            return

        if delay > self.horizon_seconds:
            # רחוק מדי לטיימר — הסריקה התקופתית תתפוס אותו כשיתקרב
            logger.debug(
                "Dispatch beyond scheduling horizon, left to periodic scan",
                extra_data={"external_delivery_id": external_delivery_id, "delay_seconds": delay},
            )
            return

        loop = asyncio.get_running_loop()
        self._timers[external_delivery_id] = loop.call_later(delay, self._on_timer, external_delivery_id)
        logger.info(
            "Dispatch scheduled",
            extra_data={
                "external_delivery_id": external_delivery_id,
                "due_at": due_at.isoformat(),
                "delay_seconds": round(delay, 1),
            },
        )

    def cancel(self, external_delivery_id: str) -> bool:
        handle = self._timers.pop(external_delivery_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def _on_timer(self, external_delivery_id: str) -> None:
        self._timers.pop(external_delivery_id, None)
        self._spawn_fire(external_delivery_id)

    def _spawn_fire(self, external_delivery_id: str) -> None:
        if external_delivery_id in self._in_flight:
            return
        task = asyncio.create_task(self.fire(external_delivery_id))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Dispatch trigger crashed, left for the next scan",
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    # ==================== Firing ====================

    async def fire(self, external_delivery_id: str) -> ExecutionOutcome | None:
        """
        Log a dispatch event and run it through the Retry Executor.

        Returns None when the delivery already has a dispatch in flight
        (in this process, or an open event from another one).
        """
        if external_delivery_id in self._in_flight:
            return None
        self._in_flight.add(external_delivery_id)
        try:
            async with self.session_factory() as db:
                log = WebhookLogService(db)
                if await log.has_open_event(EventSource.DISPATCH_SCHEDULER, external_delivery_id):
                    logger.debug(
                        "Dispatch already open, skipping",
                        extra_data={"external_delivery_id": external_delivery_id},
                    )
                    return None
                event = await log.record(
                    EventSource.DISPATCH_SCHEDULER,
                    DISPATCH_EVENT_TYPE,
                    {"external_delivery_id": external_delivery_id},
                    resource_key=external_delivery_id,
                )
            return await self.executor.execute(event.id, self.handler)
        finally:
            self._in_flight.discard(external_delivery_id)

    # ==================== Scanning ====================

    async def scan_once(self) -> int:
        """
        Fire every due, undispatched delivery and arm timers for near ones.

        Returns the number of deliveries fired.
        """
        now = self.clock.now()
        horizon = now + timedelta(seconds=self.horizon_seconds)
        async with self.session_factory() as db:
            result = await db.execute(
                select(Delivery.external_delivery_id, Delivery.dispatch_due_at)
                .where(
                    Delivery.dispatched_at.is_(None),
                    Delivery.dispatch_failed_at.is_(None),
                    Delivery.dispatch_due_at.is_not(None),
                    Delivery.dispatch_due_at <= horizon,
                    Delivery.status == DeliveryStatus.PENDING,
                )
                .order_by(Delivery.dispatch_due_at)
            )
            rows = result.all()

        fired = 0
        for external_id, due_at in rows:
            if due_at <= now:
                if external_id not in self._in_flight:
                    self._spawn_fire(external_id)
                    fired += 1
            elif external_id not in self._timers:
                self.schedule_dispatch(external_id, due_at)

        if fired:
            logger.info("Due deliveries fired by scan", extra_data={"fired": fired})
        return fired

    async def _scan_loop(self) -> None:
        while True:
            await self.clock.sleep(self.scan_interval_seconds)
            try:
                await self.scan_once()
            except Exception:
                logger.error("Dispatch scan failed, retrying next interval", exc_info=True)

    async def start(self) -> int:
        """Recovery scan, then the periodic scan loop"""
        fired = await self.scan_once()
        logger.info(
            "Dispatch scheduler started",
            extra_data={"recovered": fired, "armed_timers": len(self._timers)},
        )
        self._scan_task = asyncio.create_task(self._scan_loop())
        return fired

    async def wait_idle(self) -> None:
        """Wait for every spawned dispatch to finish"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        if self._scan_task is not None:
            self._scan_task.cancel()
            try:
                await self._scan_task
            except asyncio.CancelledError:
                pass
            self._scan_task = None
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        await self.wait_idle()
        logger.info("Dispatch scheduler stopped")

    @property
    def armed_timers(self) -> int:
        return len(self._timers)
