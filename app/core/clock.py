"""
Clock abstraction for the scheduler, retry loop and rate limiters.

All persisted timestamps are naive UTC datetimes (SQLite in tests drops
tzinfo, PostgreSQL columns are ``timestamp without time zone``).
"""
import asyncio
import time
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC now"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC"""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Clock:
    """Wall clock + monotonic clock + non-blocking sleep"""

    def now(self) -> datetime:
        return utcnow()

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)


system_clock = Clock()
