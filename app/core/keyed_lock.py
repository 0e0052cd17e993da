"""
Per-key asyncio locks.

Events for the same order are serialized; events for different orders
run concurrently. Locks are dropped once nobody holds or waits on them.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class KeyedLock:
    """Hands out one ``asyncio.Lock`` per key, reference counted"""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._refs[key] = self._refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                # אף אחד לא מחזיק/ממתין — מונע דליפת זיכרון ממפתחות חד-פעמיים
                del self._refs[key]
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


def order_lock_key(store_id: str, platform_order_id: str) -> str:
    return f"order:{store_id}:{platform_order_id}"
