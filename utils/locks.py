"""
Per-id asyncio locks — serializes every mutation of one goal or session.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict


class KeyedLocks:
    """Hands out one asyncio.Lock per key.

    Locks are created lazily and dropped when released with nobody waiting.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = defaultdict(int)

    def holding(self, key: str) -> "_Held":
        return _Held(self, key)

    async def _acquire(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] += 1
        try:
            await lock.acquire()
        finally:
            self._waiters[key] -= 1

    def _release(self, key: str) -> None:
        lock = self._locks[key]
        lock.release()
        if self._waiters[key] <= 0:
            self._waiters.pop(key, None)
            self._locks.pop(key, None)


class _Held:
    def __init__(self, owner: KeyedLocks, key: str):
        self._owner = owner
        self._key = key

    async def __aenter__(self):
        await self._owner._acquire(self._key)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._owner._release(self._key)
        return False
