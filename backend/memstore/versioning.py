"""
Optimistic versioning and the version-history ledger.

Update protocol, per record id:

    LOCKED  (per-id lane + write transaction)
      -> read stored version
      -> mismatch: StaleVersionError, caller rolls back and reports False
      -> match:    ledger entry for the stored payload,
                   write candidate with version + 1 and a fresh updated_at
    RELEASED (transaction ends, lane released)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Optional

from .errors import NotFoundError, StaleVersionError
from .records import MemoryRecord, VersionHistoryEntry
from .runtime_state import LogicalClock, RowLockRegistry


class VersionController:
    def __init__(
        self,
        adapter: Any,
        clock: Optional[LogicalClock] = None,
        locks: Optional[RowLockRegistry] = None,
    ) -> None:
        self._adapter = adapter
        self.clock = clock or LogicalClock()
        self.locks = locks or RowLockRegistry()

    def stamp_initial(self, record: MemoryRecord) -> MemoryRecord:
        record.version = 1
        if record.created_at is None:
            record.created_at = self.clock.now()
        record.updated_at = record.created_at
        return record

    @asynccontextmanager
    async def locked(self, record_id: str) -> AsyncIterator[None]:
        async with self.locks.hold(record_id):
            yield

    async def apply(
        self,
        conn: Any,
        candidate: MemoryRecord,
        expected_version: int,
        *,
        reason: Optional[str] = None,
        unique_key: Optional[str] = None,
    ) -> MemoryRecord:
        """Write ``candidate`` as the next version; must run inside a transaction."""
        current = await self._adapter.get_by_id(conn, candidate.id)
        if current is None:
            raise NotFoundError(candidate.id)
        if current.version != expected_version:
            raise StaleVersionError(candidate.id, expected_version, current.version)

        await self._adapter.insert_history(
            conn,
            VersionHistoryEntry(
                record_id=current.id,
                version=current.version,
                payload=current.payload.snapshot(),
                created_at=current.updated_at or current.created_at or 0,
                reason=reason,
            ),
        )
        candidate.version = expected_version + 1
        candidate.created_at = current.created_at
        candidate.updated_at = self.clock.after(current.updated_at or 0)
        if not await self._adapter.update_record(
            conn, candidate, expected_version, unique_key
        ):
            raise StaleVersionError(candidate.id, expected_version, None)
        return candidate

    async def history(self, conn: Any, record_id: str) -> List[VersionHistoryEntry]:
        return await self._adapter.list_history(conn, record_id)
