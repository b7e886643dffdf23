"""Per-memory-id asyncio locks."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedLocks:
    """One ``asyncio.Lock`` per key, created on demand and dropped when idle.

    ``hold`` acquires several keys in sorted order so two writers touching
    overlapping id sets cannot deadlock. Locks are not re-entrant.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    def _ref(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
            self._refs[key] = 0
        self._refs[key] += 1
        return lock

    def _unref(self, key: str) -> None:
        self._refs[key] -= 1
        if self._refs[key] == 0:
            del self._refs[key]
            del self._locks[key]

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        ordered = sorted({k for k in keys if k})
        acquired: list[str] = []
        try:
            for key in ordered:
                lock = self._ref(key)
                try:
                    await lock.acquire()
                except BaseException:
                    self._unref(key)
                    raise
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
                self._unref(key)

    def __len__(self) -> int:
        return len(self._locks)
