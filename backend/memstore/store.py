"""
MemoryStore: the public façade over storage, versioning and sync.

Create flow:

    validate -> version 1 -> id -> partition -> uniqueness pre-check
      -> embedding attach -> transaction(reserve key, insert) -> broadcast

Every operation runs on one pooled connection. ``transaction()`` makes that
connection request-scoped: store calls made inside it share the connection,
nest as savepoints, and broadcast their events only after the outermost
commit, once the connection is back in the pool.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from sqlalchemy.exc import SQLAlchemyError

from .broker import DatabaseBroker, LocalBroker, MessageBroker
from .config import StoreSettings
from .db.sqlite_adapter import SQLiteAdapter
from .embedding import FALLBACK_FLAG, EmbeddingNormalizer, EmbeddingProvider, build_provider
from .errors import (
    ConflictError,
    MemoryStoreError,
    NotFoundError,
    StaleVersionError,
    ValidationError,
)
from .logging_utils import logged_call
from .partition import RoomPartitioner
from .records import (
    MemoryEvent,
    MemoryRecord,
    Page,
    SearchQuery,
    VersionHistoryEntry,
    derive_record_id,
    merge_payload,
    parse_payload,
)
from .retrieval import RetrievalEngine
from .runtime_state import LogicalClock
from .sync import CrossProcessSync, Subscriber
from .transaction import TransactionCoordinator
from .uniqueness import UniquenessEnforcer
from .versioning import VersionController

logger = logging.getLogger(__name__)


@dataclass
class _Scope:
    store: "MemoryStore"
    conn: Any
    tx: TransactionCoordinator
    ready: List[MemoryEvent] = field(default_factory=list)


_active_scope: ContextVar[Optional[_Scope]] = ContextVar(
    "memstore_active_scope", default=None
)


class MemoryStore:
    def __init__(
        self,
        adapter: SQLiteAdapter,
        *,
        settings: Optional[StoreSettings] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
        broker: Optional[MessageBroker] = None,
        clock: Optional[LogicalClock] = None,
    ) -> None:
        self.settings = settings or StoreSettings()
        self.adapter = adapter
        self.provider = embedding_provider
        self.clock = clock or LogicalClock()
        self.versions = VersionController(adapter, clock=self.clock)
        self.partitioner = RoomPartitioner(self.settings.global_partition)
        self.uniqueness = UniquenessEnforcer(adapter)
        self.normalizer = EmbeddingNormalizer(
            self.settings.vector_dimension,
            embedding_provider,
            enabled=self.settings.vectors_active,
            cache_lookup=self._cached_embedding,
        )
        self.retrieval = RetrievalEngine(
            adapter,
            self.normalizer,
            match_threshold=self.settings.match_threshold,
            default_limit=self.settings.default_search_limit,
            fallback_min_fetch=self.settings.fallback_min_fetch,
            fallback_buffer=self.settings.fallback_buffer,
            fuzzy_max_chars=self.settings.fuzzy_cache_max_chars,
            fuzzy_max_distance=self.settings.fuzzy_cache_max_distance,
        )
        self.sync = CrossProcessSync(
            broker or LocalBroker(),
            process_id=self.settings.process_id or None,
            apply_remote=self._apply_remote,
            recent_ttl_sec=self.settings.recent_sync_ttl_sec,
        )
        self._started = False

    @property
    def process_id(self) -> str:
        return self.sync.process_id

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        if self._started:
            return
        await self.adapter.init_db()
        await self.sync.start()
        self._started = True

    async def close(self) -> None:
        await self.sync.stop()
        if self.provider is not None:
            await self.provider.aclose()
        await self.adapter.close()
        self._started = False

    async def __aenter__(self) -> "MemoryStore":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # =========================================================================
    # Connection scoping
    # =========================================================================

    def _current_scope(self) -> Optional[_Scope]:
        scope = _active_scope.get()
        if scope is not None and scope.store is self:
            return scope
        return None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_Scope]:
        """
        Group store calls in one transaction.

        Nested calls become savepoints on the same connection. Events queued
        inside are broadcast after the outermost commit; a rollback drops them.
        """
        scope = self._current_scope()
        if scope is not None:
            async with scope.tx.scope():
                yield scope
            return

        async with self.adapter.connect() as conn:
            scope = _Scope(self, conn, TransactionCoordinator(self.adapter, conn))
            token = _active_scope.set(scope)
            try:
                async with scope.tx.scope():
                    yield scope
            finally:
                _active_scope.reset(token)

        for event in scope.ready:
            await self.sync.publish(event)

    @asynccontextmanager
    async def _reader(self) -> AsyncIterator[Any]:
        scope = self._current_scope()
        if scope is not None:
            yield scope.conn
            return
        async with self.adapter.connect() as conn:
            yield conn

    def _emit(self, scope: _Scope, kind: str, record: MemoryRecord) -> None:
        event = MemoryEvent(
            kind=kind,
            type=record.type,
            partition=record.partition or "",
            agent_id=record.agent_id,
            timestamp=self.clock.now(),
            record_id=record.id or "",
            version=record.version,
            record=None if kind == "deleted" else record.to_dict(),
        )

        async def _queue() -> None:
            scope.ready.append(event)

        scope.tx.after_commit(_queue)

    # =========================================================================
    # Core operations
    # =========================================================================

    @staticmethod
    def _coerce(record: Union[MemoryRecord, Mapping[str, Any]]) -> MemoryRecord:
        if isinstance(record, MemoryRecord):
            return record
        if isinstance(record, Mapping):
            return MemoryRecord.from_dict(record)
        raise ValidationError("record must be a MemoryRecord or a mapping")

    @logged_call("store.create")
    async def create(
        self,
        record: Union[MemoryRecord, Mapping[str, Any]],
        *,
        privileged: bool = False,
    ) -> str:
        """Persist a new record and return its id; ``ConflictError`` if taken."""
        record = self._coerce(record)
        if not record.agent_id or not str(record.agent_id).strip():
            raise ValidationError("agent_id is required")

        self.versions.stamp_initial(record)
        if not record.id:
            record.id = derive_record_id(record.type, record.created_at)
        record.partition = self.partitioner.assign(
            record.type,
            record.agent_id,
            override=record.partition,
            privileged=privileged,
        )
        UniquenessEnforcer.composite_key(record)

        # Fail fast before paying for an embedding; repeated under the lock.
        async with self._reader() as conn:
            await self.uniqueness.check_and_reserve(conn, record)
        await self.normalizer.attach(record)

        async with self.transaction() as scope:
            unique_key = await self.uniqueness.check_and_reserve(scope.conn, record)
            await self.adapter.insert_record(scope.conn, record, unique_key)
            self._emit(scope, "created", record)
        return record.id

    @logged_call("store.get")
    async def get(self, record_id: str) -> MemoryRecord:
        async with self._reader() as conn:
            record = await self.adapter.get_by_id(conn, record_id)
        if record is None:
            raise NotFoundError(record_id)
        return record

    @logged_call("store.update")
    async def update(
        self,
        record_id: str,
        patch: Mapping[str, Any],
        expected_version: int,
        *,
        reason: Optional[str] = None,
    ) -> bool:
        """
        Apply ``patch`` when the stored version equals ``expected_version``.

        Returns False when another writer got there first; the caller should
        re-read and retry with the new version.
        """
        current = await self.get(record_id)
        if not current.rules.versioned:
            raise ValidationError(f"{current.type} records are append-only")
        if current.version != expected_version:
            logger.info(
                "stale update of %s: expected v%s, stored v%s",
                record_id,
                expected_version,
                current.version,
            )
            return False

        candidate = replace(
            current, payload=merge_payload(current.type, current.payload, patch)
        )
        if candidate.text != current.text:
            candidate.embedding = None
            await self.normalizer.attach(candidate)

        try:
            async with self.versions.locked(record_id):
                async with self.transaction() as scope:
                    unique_key = await self.uniqueness.check_and_reserve(
                        scope.conn, candidate, exclude_id=record_id
                    )
                    written = await self.versions.apply(
                        scope.conn,
                        candidate,
                        expected_version,
                        reason=reason,
                        unique_key=unique_key,
                    )
                    self._emit(scope, "updated", written)
        except StaleVersionError as exc:
            logger.info("update of %s lost the race: %s", record_id, exc)
            return False
        return True

    @logged_call("store.remove")
    async def remove(self, record_id: str) -> None:
        async with self.versions.locked(record_id):
            async with self.transaction() as scope:
                record = await self.adapter.get_by_id(scope.conn, record_id)
                if record is None:
                    raise NotFoundError(record_id)
                await self.adapter.delete_record(scope.conn, record_id)
                self._emit(scope, "deleted", record)

    async def search(
        self, query: Union[SearchQuery, Mapping[str, Any]]
    ) -> List[MemoryRecord]:
        """Semantic or recency search inside one room; empty on failure."""
        if isinstance(query, Mapping):
            query = SearchQuery(**query)
        if not query.partition:
            raise ValidationError("search needs a partition")
        try:
            vector = await self.retrieval.query_vector(query)
            async with self._reader() as conn:
                return await self.retrieval.search(conn, query, vector)
        except (MemoryStoreError, SQLAlchemyError) as exc:
            logger.warning("search in %s failed: %s", query.partition, exc)
            return []

    @logged_call("store.paginate")
    async def paginate(
        self,
        partition: str,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Page:
        size = self.settings.default_page_size if limit is None else int(limit)
        if size <= 0:
            raise ValidationError("page limit must be positive")
        size = min(size, self.settings.max_page_size)
        async with self._reader() as conn:
            rows = await self.adapter.get_by_partition(
                conn, partition, size + 1, cursor=cursor
            )
        items = rows[:size]
        return Page(
            items=items,
            has_more=len(rows) > size,
            next_cursor=items[-1].id if items else None,
        )

    def subscribe(self, record_type: str, callback: Subscriber) -> None:
        self.sync.subscribe(record_type, callback)

    def unsubscribe(self, record_type: str, callback: Subscriber) -> None:
        self.sync.unsubscribe(record_type, callback)

    # =========================================================================
    # History and bulk reads
    # =========================================================================

    async def history(self, record_id: str) -> List[VersionHistoryEntry]:
        async with self._reader() as conn:
            if await self.adapter.get_by_id(conn, record_id) is None:
                raise NotFoundError(record_id)
            return await self.versions.history(conn, record_id)

    async def get_version(self, record_id: str, version: int) -> MemoryRecord:
        async with self._reader() as conn:
            current = await self.adapter.get_by_id(conn, record_id)
            if current is None:
                raise NotFoundError(record_id)
            if current.version == version:
                return current
            entries = await self.versions.history(conn, record_id)
        for entry in entries:
            if entry.version == version:
                return replace(
                    current,
                    payload=parse_payload(current.type, entry.payload),
                    embedding=None,
                    version=entry.version,
                    updated_at=entry.created_at,
                )
        raise NotFoundError(f"{record_id}@v{version}")

    async def get_many(self, record_ids: Iterable[str]) -> List[MemoryRecord]:
        async with self._reader() as conn:
            return await self.adapter.get_many(conn, record_ids)

    async def list_partitions(
        self, partitions: Sequence[str], limit: Optional[int] = None
    ) -> List[MemoryRecord]:
        size = min(
            self.settings.max_page_size,
            self.settings.default_page_size if limit is None else max(0, int(limit)),
        )
        async with self._reader() as conn:
            return await self.adapter.get_by_partitions(conn, list(partitions), size)

    async def count(self, partition: str, *, type: Optional[str] = None) -> int:
        async with self._reader() as conn:
            return await self.adapter.count(conn, partition, type)

    # =========================================================================
    # Maintenance
    # =========================================================================

    @logged_call("store.remove_all")
    async def remove_all(self, partition: str) -> int:
        async with self.transaction() as scope:
            total = await self.adapter.count(scope.conn, partition)
            records = await self.adapter.get_by_partition(scope.conn, partition, total)
            for record in records:
                await self.adapter.delete_record(scope.conn, record.id)
                self._emit(scope, "deleted", record)
        if records:
            logger.info("removed %d records from %s", len(records), partition)
        return len(records)

    @logged_call("store.normalize_stored_embeddings")
    async def normalize_stored_embeddings(self) -> int:
        """Pad or truncate stored vectors left over from another dimension."""
        async with self.transaction() as scope:
            records = await self.adapter.list_with_embedding_dim_mismatch(
                scope.conn, self.normalizer.dimension
            )
            for record in records:
                record.embedding = self.normalizer.normalize(record.embedding or [])
                await self.adapter.update_embedding(scope.conn, record)
        if records:
            logger.info(
                "normalized %d stored embeddings to %d dimensions",
                len(records),
                self.normalizer.dimension,
            )
        return len(records)

    async def reembed(self, partition: Optional[str] = None) -> int:
        """Retry embeddings for records stored with a fallback vector."""
        async with self._reader() as conn:
            flagged = await self.adapter.list_embedding_fallbacks(conn, partition)

        repaired = 0
        for record in flagged:
            record.embedding = None
            await self.normalizer.attach(record)
            if record.payload.metadata.get(FALLBACK_FLAG):
                continue
            async with self.versions.locked(record.id):
                async with self.transaction() as scope:
                    stored = await self.adapter.get_by_id(scope.conn, record.id)
                    # An update landed meanwhile; its own embedding wins.
                    if stored is None or stored.version != record.version:
                        continue
                    await self.adapter.update_embedding(scope.conn, record)
            repaired += 1
        if flagged:
            logger.info("re-embedded %d of %d flagged records", repaired, len(flagged))
        return repaired

    # =========================================================================
    # Replication
    # =========================================================================

    async def _apply_remote(self, event: MemoryEvent) -> None:
        """Apply a peer's change: insert-if-absent, newer-wins, delete-if-present."""
        incoming: Optional[MemoryRecord] = None
        try:
            if not await self._needs_replication(event):
                logger.debug(
                    "replicated %s of %s v%s already applied",
                    event.kind,
                    event.record_id,
                    event.version,
                )
                return
            if event.kind != "deleted":
                if not event.record:
                    logger.debug("event for %s carries no snapshot", event.record_id)
                    return
                incoming = MemoryRecord.from_dict(event.record)
                await self.normalizer.attach(incoming)
            async with self.versions.locked(event.record_id):
                async with self.transaction() as scope:
                    await self._replicate(scope.conn, event, incoming)
        except (ConflictError, ValidationError) as exc:
            logger.warning(
                "skipping replicated %s of %s: %s", event.kind, event.record_id, exc
            )

    async def _needs_replication(self, event: MemoryEvent) -> bool:
        """Read-only pre-check; ``_replicate`` repeats it under the row lock."""
        async with self._reader() as conn:
            local = await self.adapter.get_by_id(conn, event.record_id)
            if event.kind == "deleted":
                return local is not None and local.version <= event.version
            if local is None:
                return not await self.adapter.is_id_issued(conn, event.record_id)
            return event.version > local.version

    async def _replicate(
        self, conn: Any, event: MemoryEvent, incoming: Optional[MemoryRecord]
    ) -> None:
        local = await self.adapter.get_by_id(conn, event.record_id)
        if incoming is None:
            if local is not None and local.version <= event.version:
                await self.adapter.delete_record(conn, event.record_id)
            return

        unique_key = UniquenessEnforcer.composite_key(incoming)
        if local is None:
            if await self.adapter.is_id_issued(conn, incoming.id):
                # Already seen here and deleted since.
                return
            await self.adapter.insert_record(conn, incoming, unique_key)
            return
        if incoming.version <= local.version:
            return
        await self.adapter.insert_history(
            conn,
            VersionHistoryEntry(
                record_id=local.id,
                version=local.version,
                payload=local.payload.snapshot(),
                created_at=local.updated_at or local.created_at or 0,
                reason="replicated",
            ),
        )
        await self.adapter.update_record(conn, incoming, local.version, unique_key)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _cached_embedding(self, content: str) -> Optional[List[float]]:
        async with self._reader() as conn:
            matches = await self.retrieval.fuzzy_cache_lookup(conn, content)
        return matches[0][0] if matches else None

    async def status(self) -> Dict[str, Any]:
        return {
            "embeddings": {
                "enabled": self.normalizer.enabled,
                "dimension": self.normalizer.dimension,
                "provider": type(self.provider).__name__ if self.provider else None,
            },
            "sync": self.sync.status(),
            "locks": await self.versions.locks.status(),
            "in_memory_database": self.adapter.is_memory_database,
        }


def build_store(settings: Optional[StoreSettings] = None) -> MemoryStore:
    """Wire adapter, embedding provider and broker from settings."""
    settings = settings or StoreSettings.from_env()
    adapter = SQLiteAdapter(
        settings.database_url,
        pool_size=settings.pool_size,
        busy_timeout_sec=settings.busy_timeout_sec,
    )
    if settings.broker_backend == "database":
        broker: MessageBroker = DatabaseBroker(
            adapter,
            poll_interval_sec=settings.broker_poll_interval_sec,
            retention_sec=settings.event_retention_sec,
        )
    else:
        if settings.broker_backend != "local":
            logger.warning(
                "unknown broker backend %r, using the in-process broker",
                settings.broker_backend,
            )
        broker = LocalBroker()
    return MemoryStore(
        adapter,
        settings=settings,
        embedding_provider=build_provider(settings),
        broker=broker,
    )
