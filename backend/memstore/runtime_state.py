"""
Process-local runtime helpers for the memory store.

This module provides:
1) A logical millisecond clock that never runs backwards inside a process.
2) Per-record write lanes so updates to one id serialize while different ids
   proceed independently.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict


def _wall_clock_ms() -> int:
    return time.time_ns() // 1_000_000


class LogicalClock:
    """Millisecond timestamps, strictly increasing per clock instance."""

    def __init__(self) -> None:
        self._last = 0

    def now(self) -> int:
        current = _wall_clock_ms()
        if current <= self._last:
            current = self._last + 1
        self._last = current
        return current

    def after(self, previous: int) -> int:
        """A timestamp later than both ``previous`` and every earlier reading."""
        current = self.now()
        if current <= previous:
            current = previous + 1
            self._last = current
        return current


class RowLockRegistry:
    """
    Per-record asyncio locks:
    - The same id: writers queue up behind one lock.
    - Different ids: independent locks, no contention.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}
        self._guard = asyncio.Lock()

    async def _acquire_lock(self, record_id: str) -> asyncio.Lock:
        async with self._guard:
            lock = self._locks.get(record_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[record_id] = lock
            self._holders[record_id] = self._holders.get(record_id, 0) + 1
            return lock

    async def _release_lock(self, record_id: str) -> None:
        async with self._guard:
            remaining = self._holders.get(record_id, 1) - 1
            if remaining <= 0:
                self._holders.pop(record_id, None)
                self._locks.pop(record_id, None)
            else:
                self._holders[record_id] = remaining

    @asynccontextmanager
    async def hold(self, record_id: str) -> AsyncIterator[None]:
        lock = await self._acquire_lock(record_id)
        try:
            async with lock:
                yield
        finally:
            await self._release_lock(record_id)

    async def status(self) -> Dict[str, Any]:
        async with self._guard:
            return {
                "tracked_ids": len(self._locks),
                "locked_ids": sum(1 for lock in self._locks.values() if lock.locked()),
            }
