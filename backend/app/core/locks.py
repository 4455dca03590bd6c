"""
Per-entity async locks.

Each key (``sos:{alert_id}``, ``guardian-user:{user_id}`` ...) maps to its
own ``asyncio.Lock``. Mutations of one entity are serialised while unrelated
entities proceed concurrently. Idle locks are dropped once no coroutine
holds or waits on them, so the table does not grow with entity count.

Usage:
    locks = KeyedLock()
    async with locks.hold(f"follow-me:{user_id}"):
        ...
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class KeyedLock:
    """A table of asyncio locks keyed by entity id."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
