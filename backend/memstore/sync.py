"""
Cross-process propagation of memory change events.

Every event is stamped with the publishing process id. Local subscribers are
notified directly at publish time; the copy that comes back through the
broker is recognised by its origin and dropped, so nothing is applied or
re-broadcast twice.

Records seen in recent events, published here or applied from a peer, are kept
for ``recent_ttl_sec`` so callers can inspect what just went by.
"""

from __future__ import annotations

import inspect
import logging
import os
import socket
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .broker import MessageBroker
from .records import EVENT_KINDS, MemoryEvent

logger = logging.getLogger(__name__)

ALL_TYPES = "*"
TOPICS = tuple(f"memory.{kind}" for kind in EVENT_KINDS)

Subscriber = Callable[[MemoryEvent], Any]
ApplyRemote = Callable[[MemoryEvent], Awaitable[None]]


def default_process_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class CrossProcessSync:
    def __init__(
        self,
        broker: MessageBroker,
        *,
        process_id: Optional[str] = None,
        apply_remote: Optional[ApplyRemote] = None,
        recent_ttl_sec: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.broker = broker
        self.process_id = process_id or default_process_id()
        self._apply_remote = apply_remote
        self._subscribers: Dict[str, List[Subscriber]] = {}
        self._started = False
        self.suppressed_echoes = 0
        self.applied_remote = 0
        self.recent_ttl_sec = max(0.0, recent_ttl_sec)
        self._clock = clock
        self._recent: Dict[str, Tuple[float, Dict[str, Any]]] = {}

    async def start(self) -> None:
        if self._started:
            return
        for topic in TOPICS:
            self.broker.subscribe(topic, self.on_receive)
        await self.broker.start()
        self._started = True

    async def stop(self) -> None:
        if not self._started:
            return
        for topic in TOPICS:
            self.broker.unsubscribe(topic, self.on_receive)
        await self.broker.close()
        self._started = False

    def subscribe(self, record_type: str, callback: Subscriber) -> None:
        callbacks = self._subscribers.setdefault(record_type, [])
        if callback not in callbacks:
            callbacks.append(callback)

    def unsubscribe(self, record_type: str, callback: Subscriber) -> None:
        callbacks = self._subscribers.get(record_type)
        if not callbacks or callback not in callbacks:
            return
        callbacks.remove(callback)
        if not callbacks:
            del self._subscribers[record_type]

    async def publish(self, event: MemoryEvent) -> None:
        event.origin_process_id = self.process_id
        self._remember(event)
        await self._notify(event)
        try:
            await self.broker.publish(event.topic, event)
        except Exception:
            # The change is already committed; peers converge on the next event.
            logger.exception(
                "broadcast of %s event for %s failed", event.kind, event.record_id
            )

    async def on_receive(self, event: MemoryEvent) -> None:
        if event.origin_process_id == self.process_id:
            self.suppressed_echoes += 1
            return
        if self._apply_remote is not None:
            await self._apply_remote(event)
        self.applied_remote += 1
        self._remember(event)
        await self._notify(event)

    async def _notify(self, event: MemoryEvent) -> None:
        callbacks = list(self._subscribers.get(event.type, ())) + list(
            self._subscribers.get(ALL_TYPES, ())
        )
        for callback in callbacks:
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "subscriber %r failed on %s event for %s",
                    callback,
                    event.kind,
                    event.record_id,
                )

    def _remember(self, event: MemoryEvent) -> None:
        self._prune_recent()
        if event.kind == "deleted" or not event.record:
            self._recent.pop(event.record_id, None)
            return
        self._recent[event.record_id] = (self._clock(), dict(event.record))

    def _prune_recent(self) -> None:
        cutoff = self._clock() - self.recent_ttl_sec
        for record_id in [k for k, (seen, _) in self._recent.items() if seen < cutoff]:
            del self._recent[record_id]

    def recent(self, record_id: str) -> Optional[Dict[str, Any]]:
        """Snapshot of ``record_id`` from a recent event, or None once it expired."""
        self._prune_recent()
        entry = self._recent.get(record_id)
        return dict(entry[1]) if entry else None

    def recent_records(self) -> List[Dict[str, Any]]:
        self._prune_recent()
        return [dict(snapshot) for _, snapshot in self._recent.values()]

    def status(self) -> Dict[str, Any]:
        self._prune_recent()
        return {
            "process_id": self.process_id,
            "broker": type(self.broker).__name__,
            "started": self._started,
            "subscribed_types": sorted(self._subscribers),
            "suppressed_echoes": self.suppressed_echoes,
            "applied_remote": self.applied_remote,
            "recent": len(self._recent),
        }
