"""
Message brokers carrying memory change events.

``LocalBroker`` fans events out inside one process. ``DatabaseBroker`` writes
events to the ``memory_events`` outbox table and polls it, so every process
sharing the database file sees every event at least once.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from .errors import TransientStorageError, ValidationError
from .records import MemoryEvent

logger = logging.getLogger(__name__)

Handler = Callable[[MemoryEvent], Awaitable[None]]


class MessageBroker(Protocol):
    async def publish(self, topic: str, event: MemoryEvent) -> None:
        ...

    def subscribe(self, topic: str, handler: Handler) -> None:
        ...

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        ...

    async def start(self) -> None:
        ...

    async def close(self) -> None:
        ...


class _HandlerTable:
    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = {}

    def subscribe(self, topic: str, handler: Handler) -> None:
        handlers = self._handlers.setdefault(topic, [])
        if handler not in handlers:
            handlers.append(handler)

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        handlers = self._handlers.get(topic)
        if not handlers or handler not in handlers:
            return
        handlers.remove(handler)
        if not handlers:
            del self._handlers[topic]

    def handlers_for(self, topic: str) -> List[Handler]:
        return list(self._handlers.get(topic, ()))

    async def dispatch(self, topic: str, event: MemoryEvent) -> bool:
        """
        Run every handler for ``topic``; handler errors are logged, not raised.

        Returns False when a handler hit a ``TransientStorageError`` and the
        event should be delivered again.
        """
        delivered = True
        for handler in self.handlers_for(topic):
            try:
                # Each handler gets its own copy, as if it came off the wire.
                await handler(MemoryEvent.from_dict(event.to_dict()))
            except TransientStorageError as exc:
                delivered = False
                logger.warning(
                    "handler for %s deferred %s: %s", topic, event.record_id, exc
                )
            except Exception:
                logger.exception("handler for %s failed on %s", topic, event.record_id)
        return delivered


class LocalBroker(_HandlerTable):
    """In-process pub/sub; handlers run in subscription order."""

    async def publish(self, topic: str, event: MemoryEvent) -> None:
        await self.dispatch(topic, event)

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None


class DatabaseBroker(_HandlerTable):
    """Outbox-table broker shared by every process using the same database."""

    def __init__(
        self,
        adapter: Any,
        *,
        poll_interval_sec: float = 0.5,
        retention_sec: float = 3600.0,
        batch_size: int = 200,
    ) -> None:
        super().__init__()
        self._adapter = adapter
        self.poll_interval_sec = max(0.05, poll_interval_sec)
        self.retention_sec = max(0.0, retention_sec)
        self.batch_size = max(1, batch_size)
        self._last_seq: Optional[int] = None
        self._last_prune = 0.0
        self._runner: Optional[asyncio.Task] = None
        self._guard = asyncio.Lock()
        self._poll_lock = asyncio.Lock()

    async def publish(self, topic: str, event: MemoryEvent) -> None:
        async with self._adapter.connect() as conn:
            await self._adapter.insert_event(
                conn,
                topic,
                event.origin_process_id,
                event.to_dict(),
                int(time.time() * 1000),
            )

    async def start(self) -> None:
        await self._ensure_cursor()
        async with self._guard:
            if self._runner is None or self._runner.done():
                self._runner = asyncio.create_task(
                    self._run_loop(), name="memstore-event-poller"
                )

    async def close(self) -> None:
        async with self._guard:
            runner, self._runner = self._runner, None
        if runner is None:
            return
        runner.cancel()
        try:
            await runner
        except asyncio.CancelledError:
            pass

    async def _ensure_cursor(self) -> int:
        if self._last_seq is None:
            # Start from "now": events written before this broker existed
            # are already reflected in the shared tables.
            async with self._adapter.connect() as conn:
                self._last_seq = await self._adapter.last_event_seq(conn)
        return self._last_seq

    async def poll_once(self) -> int:
        """
        Dispatch events written since the last poll, in ``seq`` order.

        Returns how many were fully delivered. Delivery stops at the first event
        a handler deferred, so it is retried before anything newer.
        """
        async with self._poll_lock:
            last_seq = await self._ensure_cursor()
            async with self._adapter.connect() as conn:
                rows = await self._adapter.fetch_events_after(
                    conn, last_seq, self.batch_size
                )
            dispatched = 0
            for seq, topic, payload in rows:
                try:
                    event = MemoryEvent.from_dict(json.loads(payload))
                except (ValidationError, AttributeError, TypeError, ValueError) as exc:
                    logger.warning("skipping malformed event %s: %s", seq, exc)
                    self._last_seq = seq
                    continue
                if not await self.dispatch(topic, event):
                    # The cursor stays before this event; the next poll retries it.
                    break
                self._last_seq = seq
                dispatched += 1
            await self._maybe_prune()
            return dispatched

    async def _maybe_prune(self) -> None:
        if self.retention_sec <= 0:
            return
        now = time.time()
        if now - self._last_prune < max(self.retention_sec / 10.0, 1.0):
            return
        self._last_prune = now
        async with self._adapter.connect() as conn:
            removed = await self._adapter.prune_events(
                conn, int((now - self.retention_sec) * 1000)
            )
        if removed:
            logger.debug("pruned %d delivered events", removed)

    async def _run_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval_sec)
            try:
                await self.poll_once()
            except TransientStorageError as exc:
                logger.warning("event poll failed, retrying: %s", exc)
            except Exception:
                logger.exception("event poll failed")
