"""
בדיקות ל-Celery Workers — app/workers/tasks.py

מכסה:
- beat schedule של המשימות התקופתיות
- סריקת dispatches שהגיע זמנם
- replay לאירועים תקועים
- ניקוי אירועי webhook ישנים
- order polling: cursor ב-Redis ונעילה נגד הרצות מקבילות
- ניהול event loop ב-Celery
"""
import asyncio
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.core.config import settings
from app.core.redis_client import POLL_CURSOR_KEY, get_poll_cursor
from app.workers import tasks
from app.workers.celery_app import celery_app


@contextmanager
def _patch_run_async_for_test():
    """
    מוק ל-run_async שמריץ את ה-coroutine ב-loop חדש בתוך thread נפרד,
    כך שהטאסקים רצים גם כש-pytest-asyncio כבר מחזיק event loop.
    """
    import concurrent.futures

    def _test_run_async(coro):
        from app.core.logging import set_correlation_id
        set_correlation_id()

        def _run_in_thread():
            new_loop = asyncio.new_event_loop()
            try:
                return new_loop.run_until_complete(coro)
            finally:
                new_loop.close()

        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(_run_in_thread)
            return future.result(timeout=30)

    with patch("app.workers.tasks.run_async", side_effect=_test_run_async):
        yield


class FakeRedis:
    """Redis בזיכרון — רק הפקודות שה-polling task משתמש בהן"""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: Any, nx: bool = False, ex: int | None = None) -> bool:
        if nx and key in self.data:
            return False
        self.data[key] = str(value)
        return True

    async def delete(self, key: str) -> int:
        return 1 if self.data.pop(key, None) is not None else 0


def _mock_engine(now: datetime = datetime(2026, 3, 1, 12, 0)) -> MagicMock:
    engine = MagicMock()
    engine.scheduler.scan_once = AsyncMock(return_value=2)
    engine.scheduler.wait_idle = AsyncMock()
    engine.replay_stalled = AsyncMock(return_value=3)
    engine.prune_events = AsyncMock(return_value=7)
    engine.poll_orders = AsyncMock(return_value=4)
    engine.clock.now = MagicMock(return_value=now)
    return engine


@contextmanager
def _patched_task_engine(engine: MagicMock):
    @asynccontextmanager
    async def _fake_task_engine():
        yield engine

    with patch("app.workers.tasks.task_engine", _fake_task_engine), _patch_run_async_for_test():
        yield


# ============================================================================
# Beat schedule
# ============================================================================


class TestBeatSchedule:

    @pytest.mark.unit
    def test_periodic_tasks_registered(self) -> None:
        schedule = celery_app.conf.beat_schedule
        registered = {entry["task"] for entry in schedule.values()}
        assert {
            "app.workers.tasks.scan_due_dispatches",
            "app.workers.tasks.replay_stalled_webhook_events",
            "app.workers.tasks.cleanup_old_webhook_events",
        } <= registered
        for task_name in registered:
            assert task_name in celery_app.tasks

    @pytest.mark.unit
    def test_scan_interval_from_settings(self) -> None:
        entry = celery_app.conf.beat_schedule["scan-due-dispatches-every-minute"]
        assert entry["schedule"] == settings.DISPATCH_SCAN_INTERVAL_SECONDS

    @pytest.mark.unit
    def test_acks_late_for_crash_safety(self) -> None:
        assert celery_app.conf.task_acks_late is True
        assert celery_app.conf.task_serializer == "json"


# ============================================================================
# משימות תחזוקה
# ============================================================================


class TestMaintenanceTasks:

    @pytest.mark.unit
    def test_scan_due_dispatches(self) -> None:
        engine = _mock_engine()
        with _patched_task_engine(engine):
            result = tasks.scan_due_dispatches()

        assert result == {"fired": 2}
        engine.scheduler.wait_idle.assert_awaited_once()

    @pytest.mark.unit
    def test_replay_stalled_passes_limit(self) -> None:
        engine = _mock_engine()
        with _patched_task_engine(engine):
            result = tasks.replay_stalled_webhook_events(limit=10)

        assert result == {"replayed": 3}
        engine.replay_stalled.assert_awaited_once_with(limit=10)

    @pytest.mark.unit
    def test_cleanup_old_webhook_events(self) -> None:
        engine = _mock_engine()
        with _patched_task_engine(engine):
            result = tasks.cleanup_old_webhook_events()

        assert result == {"deleted": 7}


# ============================================================================
# Order polling
# ============================================================================


class TestPollPlatformOrders:

    @pytest.mark.unit
    def test_first_run_uses_lookback_and_saves_cursor(self) -> None:
        """בלי cursor — since=None (ה-engine משתמש ב-lookback), ואז נשמר cursor"""
        engine = _mock_engine()
        redis = FakeRedis()
        with _patched_task_engine(engine), patch(
            "app.core.redis_client.get_redis", new=AsyncMock(return_value=redis)
        ):
            result = tasks.poll_platform_orders()

        assert result == {"recorded": 4, "skipped": False}
        engine.poll_orders.assert_awaited_once_with(since=None)
        assert redis.data[POLL_CURSOR_KEY] == "2026-03-01T12:00:00"
        assert tasks._POLL_LOCK_KEY not in redis.data

    @pytest.mark.unit
    def test_next_run_starts_from_cursor(self) -> None:
        engine = _mock_engine(now=datetime(2026, 3, 1, 12, 5))
        redis = FakeRedis()
        redis.data[POLL_CURSOR_KEY] = "2026-03-01T12:00:00"
        with _patched_task_engine(engine), patch(
            "app.core.redis_client.get_redis", new=AsyncMock(return_value=redis)
        ):
            tasks.poll_platform_orders()

        engine.poll_orders.assert_awaited_once_with(since=datetime(2026, 3, 1, 12, 0))
        assert redis.data[POLL_CURSOR_KEY] == "2026-03-01T12:05:00"

    @pytest.mark.unit
    def test_skipped_while_previous_run_holds_lock(self) -> None:
        engine = _mock_engine()
        redis = FakeRedis()
        redis.data[tasks._POLL_LOCK_KEY] = "1"
        with _patched_task_engine(engine), patch(
            "app.core.redis_client.get_redis", new=AsyncMock(return_value=redis)
        ):
            result = tasks.poll_platform_orders()

        assert result == {"recorded": 0, "skipped": True}
        engine.poll_orders.assert_not_awaited()

    @pytest.mark.unit
    def test_failed_poll_keeps_cursor_and_releases_lock(self) -> None:
        engine = _mock_engine()
        engine.poll_orders = AsyncMock(side_effect=RuntimeError("db down"))
        redis = FakeRedis()
        with _patched_task_engine(engine), patch(
            "app.core.redis_client.get_redis", new=AsyncMock(return_value=redis)
        ):
            with pytest.raises(RuntimeError):
                tasks.poll_platform_orders()

        assert POLL_CURSOR_KEY not in redis.data
        assert tasks._POLL_LOCK_KEY not in redis.data

    @pytest.mark.unit
    async def test_invalid_cursor_ignored(self) -> None:
        redis = FakeRedis()
        redis.data[POLL_CURSOR_KEY] = "yesterday"
        assert await get_poll_cursor(redis) is None


# ============================================================================
# Event loop
# ============================================================================


class TestEventLoopHandling:

    @pytest.mark.unit
    def test_get_event_loop_closes_loop(self) -> None:
        def _in_thread():
            with tasks.get_event_loop() as loop:
                assert loop.run_until_complete(asyncio.sleep(0, result="done")) == "done"
            return loop

        import concurrent.futures
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            loop = pool.submit(_in_thread).result(timeout=10)

        assert loop.is_closed()
