"""
Celery Tasks - משימות תקופתיות של מנוע ה-dispatch.

כל task בונה DispatchEngine משלו על engine DB חדש (event loop חדש לכל
task). ה-worker pool לא רץ כאן, לכן אירועים מעובדים inline בתוך ה-task.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, contextmanager
from typing import AsyncIterator

from app.core.config import settings
from app.core.logging import get_logger, set_correlation_id
from app.db.database import task_session_factory
from app.domain.engine import DispatchEngine
from app.workers.celery_app import celery_app

logger = get_logger(__name__)

# נעילה למניעת polling מקבילי כש-beat מתזמן לפני שההרצה הקודמת הסתיימה
_POLL_LOCK_KEY = "order_poll:lock"


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # סגירת Redis singleton לפני סגירת ה-loop - מונע שימוש חוזר
            # ב-client שמחובר ל-event loop סגור בהרצה הבאה
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@asynccontextmanager
async def task_engine() -> AsyncIterator[DispatchEngine]:
    """DispatchEngine ל-task בודד; ה-HTTP clients וה-DB engine נסגרים בסוף"""
    async with task_session_factory() as session_factory:
        engine = DispatchEngine(settings, session_factory)
        try:
            yield engine
        finally:
            await engine.stop()


@celery_app.task(name="app.workers.tasks.scan_due_dispatches")
def scan_due_dispatches():
    """Fire every delivery whose dispatch time has arrived"""

    async def _scan():
        async with task_engine() as engine:
            fired = await engine.scheduler.scan_once()
            await engine.scheduler.wait_idle()
            return {"fired": fired}

    return run_async(_scan())


@celery_app.task(name="app.workers.tasks.replay_stalled_webhook_events")
def replay_stalled_webhook_events(limit: int = 100):
    async def _replay():
        async with task_engine() as engine:
            replayed = await engine.replay_stalled(limit=limit)
            return {"replayed": replayed}

    return run_async(_replay())


@celery_app.task(name="app.workers.tasks.cleanup_old_webhook_events")
def cleanup_old_webhook_events():
    """ניקוי אירועים סופיים ישנים מ-WEBHOOK_EVENT_RETENTION_DAYS"""

    async def _cleanup():
        async with task_engine() as engine:
            deleted = await engine.prune_events()
            logger.info(
                "Cleaned up old webhook events",
                extra_data={"deleted": deleted, "retention_days": settings.WEBHOOK_EVENT_RETENTION_DAYS},
            )
            return {"deleted": deleted}

    return run_async(_cleanup())


@celery_app.task(name="app.workers.tasks.poll_platform_orders")
def poll_platform_orders():
    """
    FetchOrders - גיבוי ל-webhooks שלא הגיעו.

    ה-cursor של ההרצה המוצלחת האחרונה נשמר ב-Redis; בלי cursor נשלפות
    הזמנות מ-ORDER_POLLING_LOOKBACK_MINUTES האחרונות.
    """
    from app.core.redis_client import get_poll_cursor, get_redis, set_poll_cursor

    async def _poll():
        redis = await get_redis()
        lock_ttl = max(int(settings.ORDER_POLLING_INTERVAL_SECONDS), 60)
        if not await redis.set(_POLL_LOCK_KEY, "1", nx=True, ex=lock_ttl):
            logger.info("Order polling already running, skipped")
            return {"recorded": 0, "skipped": True}
        try:
            async with task_engine() as engine:
                started_at = engine.clock.now()
                since = await get_poll_cursor(redis)
                recorded = await engine.poll_orders(since=since)
                await set_poll_cursor(redis, started_at)
                return {"recorded": recorded, "skipped": False}
        finally:
            await redis.delete(_POLL_LOCK_KEY)

    return run_async(_poll())
