"""
Nesting-level transaction coordination on a single connection.

Level 1 is a real transaction; every deeper level is a savepoint named
``sp_<level>``. Work scheduled with ``after_commit`` runs only once the
outermost transaction has committed, and is discarded with any level that
rolls back.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, List, Tuple

logger = logging.getLogger(__name__)

AfterCommit = Callable[[], Awaitable[None]]


def savepoint_name(level: int) -> str:
    return f"sp_{level}"


class TransactionCoordinator:
    def __init__(self, adapter: Any, connection: Any) -> None:
        self._adapter = adapter
        self._connection = connection
        self._level = 0
        self._after_commit: List[Tuple[int, AfterCommit]] = []

    @property
    def level(self) -> int:
        return self._level

    @property
    def connection(self) -> Any:
        return self._connection

    @property
    def in_transaction(self) -> bool:
        return self._level > 0

    async def begin(self) -> None:
        next_level = self._level + 1
        if next_level == 1:
            await self._adapter.begin(self._connection)
        else:
            await self._adapter.savepoint(self._connection, savepoint_name(next_level))
        self._level = next_level

    async def commit(self) -> None:
        level = self._level
        if level == 0:
            logger.warning("commit requested with no open transaction; ignoring")
            return
        try:
            if level > 1:
                await self._adapter.release_savepoint(
                    self._connection, savepoint_name(level)
                )
            else:
                await self._adapter.commit(self._connection)
        except Exception:
            self._level = level - 1
            self._discard_from(level)
            if level == 1:
                await self._abandon()
            raise

        self._level = level - 1
        if level > 1:
            self._after_commit = [
                (level - 1 if owner == level else owner, callback)
                for owner, callback in self._after_commit
            ]
            return
        pending, self._after_commit = self._after_commit, []
        for _, callback in pending:
            try:
                await callback()
            except Exception:
                logger.exception("after-commit hook failed")

    async def rollback(self) -> None:
        level = self._level
        if level == 0:
            logger.warning("rollback requested with no open transaction; ignoring")
            return
        try:
            if level > 1:
                await self._adapter.rollback_to_savepoint(
                    self._connection, savepoint_name(level)
                )
            else:
                await self._adapter.rollback(self._connection)
        finally:
            self._level = level - 1
            self._discard_from(level)

    def after_commit(self, callback: AfterCommit) -> None:
        """Run ``callback`` once the outermost transaction commits."""
        if self._level == 0:
            raise RuntimeError("after_commit requires an open transaction")
        self._after_commit.append((self._level, callback))

    @asynccontextmanager
    async def scope(self) -> AsyncIterator["TransactionCoordinator"]:
        await self.begin()
        try:
            yield self
        except BaseException:
            await self.rollback()
            raise
        await self.commit()

    def _discard_from(self, level: int) -> None:
        self._after_commit = [
            (owner, callback) for owner, callback in self._after_commit if owner < level
        ]

    async def _abandon(self) -> None:
        # A failed COMMIT can leave the transaction open on the connection.
        try:
            await self._adapter.rollback(self._connection)
        except Exception as exc:
            logger.warning("rollback after failed commit also failed: %s", exc)
