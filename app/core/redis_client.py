"""
Redis Client - async singleton.

משמש לבדיקת readiness ולשמירת ה-cursor של order polling בין הרצות
של Celery beat. משתמש ב-REDIS_URL מהקונפיגורציה.
"""
import asyncio
from datetime import datetime
from urllib.parse import urlparse

import redis.asyncio as aioredis

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

POLL_CURSOR_KEY = "order_poll:last_run"

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def _mask_redis_url(url: str) -> str:
    """מסתיר סיסמה מ-REDIS_URL ללוגים (redis://:****@host:6379)."""
    parsed = urlparse(url)
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":****@")
    return url


async def get_redis() -> aioredis.Redis:
    """מחזיר Redis client singleton (async, connection pool)."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        # בדיקה חוזרת אחרי נעילה
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        await client.ping()
        _redis_client = client
        logger.info("Redis client initialized", extra_data={"url": _mask_redis_url(settings.REDIS_URL)})
    return _redis_client


async def close_redis() -> None:
    """סגירת חיבור Redis - לקרוא ב-shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


async def get_poll_cursor(client: aioredis.Redis) -> datetime | None:
    """זמן ההרצה המוצלחת האחרונה של order polling (naive UTC)"""
    raw = await client.get(POLL_CURSOR_KEY)
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        logger.warning("Invalid order poll cursor ignored", extra_data={"value": raw})
        return None


async def set_poll_cursor(client: aioredis.Redis, value: datetime) -> None:
    await client.set(POLL_CURSOR_KEY, value.isoformat())
