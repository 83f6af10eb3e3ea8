"""
SQLite adapter for the memory store.

This module implements storage on SQLAlchemy async + aiosqlite with:
- Raw transaction primitives (BEGIN IMMEDIATE / COMMIT / ROLLBACK / SAVEPOINT)
  issued on pooled connections switched to driver-level autocommit
- Record, version-history, issued-id and outbox-event tables
- Python-side cosine similarity for vector search
- A ``levenshtein`` SQL function for approximate text matching
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import math
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import (
    BigInteger,
    Column,
    Index,
    Integer,
    String,
    Text,
    and_,
    delete,
    event,
    func,
    insert,
    or_,
    select,
    text,
    update,
)
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncConnection, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import AsyncAdaptedQueuePool, StaticPool

from ..errors import ConflictError, TransientStorageError, ValidationError
from ..logging_utils import logged_call
from ..records import MemoryRecord, VersionHistoryEntry, parse_payload
from .migration_runner import apply_pending_migrations

logger = logging.getLogger(__name__)

Base = declarative_base()

LEVENSHTEIN_MAX_CHARS = 255
_BUSY_MARKERS = ("database is locked", "database is busy")


class MemoryRow(Base):
    __tablename__ = "memories"

    id = Column(String(64), primary_key=True)
    type = Column(String(64), nullable=False)
    partition = Column(String(255), nullable=False)
    owner_id = Column(String(255), nullable=True)
    agent_id = Column(String(255), nullable=False)
    payload = Column(Text, nullable=False)
    content_text = Column(Text, nullable=False, default="")
    embedding = Column(Text, nullable=True)
    embedding_dim = Column(Integer, nullable=True)
    vector_ready = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    unique_key = Column(String(64), nullable=True)
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)

    __table_args__ = (
        Index("uq_memories_type_unique_key", "type", "unique_key", unique=True),
        Index("ix_memories_partition_created", "partition", "created_at"),
    )


class MemoryVersionRow(Base):
    __tablename__ = "memory_versions"

    record_id = Column(String(64), primary_key=True)
    version = Column(Integer, primary_key=True)
    payload = Column(Text, nullable=False)
    created_at = Column(BigInteger, nullable=False)
    reason = Column(Text, nullable=True)


class IssuedIdRow(Base):
    """Every id ever handed out; kept after hard deletes so ids are never reused."""

    __tablename__ = "issued_ids"

    id = Column(String(64), primary_key=True)
    issued_at = Column(BigInteger, nullable=False)


class MemoryEventRow(Base):
    __tablename__ = "memory_events"
    __table_args__ = {"sqlite_autoincrement": True}

    seq = Column(Integer, primary_key=True, autoincrement=True)
    topic = Column(String(64), nullable=False)
    origin = Column(String(128), nullable=True)
    payload = Column(Text, nullable=False)
    created_at = Column(BigInteger, nullable=False)


memories = MemoryRow.__table__
memory_versions = MemoryVersionRow.__table__
issued_ids = IssuedIdRow.__table__
memory_events = MemoryEventRow.__table__


def levenshtein(left: Optional[str], right: Optional[str]) -> Optional[int]:
    """Edit distance between two strings of at most 255 characters."""
    if left is None or right is None:
        return None
    if len(left) > LEVENSHTEIN_MAX_CHARS or len(right) > LEVENSHTEIN_MAX_CHARS:
        raise ValueError(
            f"levenshtein arguments are limited to {LEVENSHTEIN_MAX_CHARS} characters"
        )
    if left == right:
        return 0
    if len(left) < len(right):
        left, right = right, left
    previous = list(range(len(right) + 1))
    for i, left_char in enumerate(left, start=1):
        current = [i]
        for j, right_char in enumerate(right, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (left_char != right_char),
                )
            )
        previous = current
    return previous[-1]


def cosine_similarity(v1: Sequence[float], v2: Sequence[float]) -> float:
    length = min(len(v1), len(v2))
    if length == 0:
        return 0.0
    dot = sum(v1[i] * v2[i] for i in range(length))
    norm1 = math.sqrt(sum(v * v for v in v1[:length]))
    norm2 = math.sqrt(sum(v * v for v in v2[:length]))
    if norm1 <= 0 or norm2 <= 0:
        return 0.0
    return float(dot / (norm1 * norm2))


def is_zero_vector(vector: Optional[Sequence[float]]) -> bool:
    return not vector or not any(vector)


def _is_busy_error(exc: BaseException) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return any(marker in message for marker in _BUSY_MARKERS)


def _storage_call(fn):
    """Log the call and turn driver failures into ``TransientStorageError``."""

    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except IntegrityError:
            raise
        except DBAPIError as exc:
            raise TransientStorageError(
                f"{fn.__name__} failed: {getattr(exc, 'orig', exc)}"
            ) from exc

    return logged_call(f"sqlite.{fn.__name__}")(wrapper)


def _dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def record_from_row(row: Mapping[str, Any]) -> MemoryRecord:
    payload = json.loads(row["payload"]) if row["payload"] else {}
    embedding = json.loads(row["embedding"]) if row["embedding"] else None
    return MemoryRecord(
        type=row["type"],
        agent_id=row["agent_id"],
        payload=parse_payload(row["type"], payload),
        id=row["id"],
        owner_id=row["owner_id"],
        partition=row["partition"],
        embedding=[float(v) for v in embedding] if embedding is not None else None,
        version=int(row["version"]),
        created_at=int(row["created_at"]),
        updated_at=int(row["updated_at"]),
    )


def _record_values(record: MemoryRecord, unique_key: Optional[str]) -> Dict[str, Any]:
    return {
        "id": record.id,
        "type": record.type,
        "partition": record.partition,
        "owner_id": record.owner_id,
        "agent_id": record.agent_id,
        "payload": _dump_json(record.payload.snapshot()),
        "content_text": record.text,
        "embedding": _dump_json(record.embedding) if record.embedding is not None else None,
        "embedding_dim": len(record.embedding) if record.embedding is not None else None,
        "vector_ready": 0 if is_zero_vector(record.embedding) else 1,
        "version": record.version,
        "unique_key": unique_key,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


class SQLiteAdapter:
    """
    Async SQLite storage for memory records.

    Every method that touches rows takes the ``AsyncConnection`` to run on, so
    callers decide whether it runs inside their transaction or standalone.

    An in-memory database lives on one shared connection, so ``connect()``
    hands it out to one caller at a time. Callers must not nest ``connect()``
    there; code already holding a connection passes it down instead.
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 5,
        busy_timeout_sec: float = 5.0,
        busy_retries: int = 3,
        pool_timeout_sec: float = 30.0,
    ) -> None:
        self.database_url = database_url
        self._busy_timeout_sec = max(0.0, busy_timeout_sec)
        self._busy_retries = max(1, busy_retries)
        options: Dict[str, Any] = {
            "echo": False,
            "connect_args": {"timeout": self._busy_timeout_sec},
        }
        if self.is_memory_database:
            options["poolclass"] = StaticPool
        else:
            options["poolclass"] = AsyncAdaptedQueuePool
            options["pool_size"] = max(1, pool_size)
            options["max_overflow"] = 0
            options["pool_timeout"] = max(0.0, pool_timeout_sec)
        self.engine = create_async_engine(database_url, **options)
        self._memory_lock: Optional[asyncio.Lock] = (
            asyncio.Lock() if self.is_memory_database else None
        )
        event.listen(self.engine.sync_engine, "connect", self._on_connect)

    @property
    def is_memory_database(self) -> bool:
        return ":memory:" in self.database_url or self.database_url.rstrip("/").endswith(
            "sqlite+aiosqlite:"
        )

    def _on_connect(self, dbapi_connection, connection_record) -> None:
        dbapi_connection.create_function("levenshtein", 2, levenshtein)
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_sec * 1000)}")
            cursor.execute("PRAGMA foreign_keys=ON")
        finally:
            cursor.close()

    async def init_db(self) -> List[str]:
        """Create tables, then apply pending SQL migrations."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        if self.is_memory_database:
            return []
        return await apply_pending_migrations(self.database_url)

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[AsyncConnection]:
        """A pooled connection on which transactions are issued explicitly."""
        if self._memory_lock is None:
            async with self.engine.connect() as conn:
                await conn.execution_options(isolation_level="AUTOCOMMIT")
                yield conn
            return
        async with self._memory_lock:
            async with self.engine.connect() as conn:
                await conn.execution_options(isolation_level="AUTOCOMMIT")
                yield conn

    # =========================================================================
    # Raw transaction primitives
    # =========================================================================

    @_storage_call
    async def begin(self, conn: AsyncConnection) -> None:
        # IMMEDIATE takes the write lock up front; the version check and the
        # write that follows it cannot interleave with another writer.
        for attempt in range(1, self._busy_retries + 1):
            try:
                await conn.exec_driver_sql("BEGIN IMMEDIATE")
                return
            except OperationalError as exc:
                if not _is_busy_error(exc) or attempt >= self._busy_retries:
                    raise
                logger.info("database busy on BEGIN, retry %d", attempt)
                await asyncio.sleep(0.1 * attempt)

    @_storage_call
    async def commit(self, conn: AsyncConnection) -> None:
        await conn.exec_driver_sql("COMMIT")

    @_storage_call
    async def rollback(self, conn: AsyncConnection) -> None:
        await conn.exec_driver_sql("ROLLBACK")

    @_storage_call
    async def savepoint(self, conn: AsyncConnection, name: str) -> None:
        await conn.exec_driver_sql(f"SAVEPOINT {name}")

    @_storage_call
    async def release_savepoint(self, conn: AsyncConnection, name: str) -> None:
        await conn.exec_driver_sql(f"RELEASE SAVEPOINT {name}")

    @_storage_call
    async def rollback_to_savepoint(self, conn: AsyncConnection, name: str) -> None:
        await conn.exec_driver_sql(f"ROLLBACK TO SAVEPOINT {name}")
        await conn.exec_driver_sql(f"RELEASE SAVEPOINT {name}")

    @_storage_call
    async def query(
        self,
        conn: AsyncConnection,
        sql: str,
        params: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        result = await conn.execute(text(sql), dict(params or {}))
        if not result.returns_rows:
            return []
        return [dict(row) for row in result.mappings().all()]

    # =========================================================================
    # Records
    # =========================================================================

    @_storage_call
    async def get_by_id(
        self, conn: AsyncConnection, record_id: str
    ) -> Optional[MemoryRecord]:
        result = await conn.execute(select(memories).where(memories.c.id == record_id))
        row = result.mappings().first()
        return record_from_row(row) if row else None

    @_storage_call
    async def get_many(
        self, conn: AsyncConnection, record_ids: Iterable[str]
    ) -> List[MemoryRecord]:
        ids = list(dict.fromkeys(record_ids))
        if not ids:
            return []
        result = await conn.execute(select(memories).where(memories.c.id.in_(ids)))
        by_id = {row["id"]: record_from_row(row) for row in result.mappings().all()}
        return [by_id[record_id] for record_id in ids if record_id in by_id]

    @_storage_call
    async def get_by_partition(
        self,
        conn: AsyncConnection,
        partition: str,
        limit: int,
        cursor: Optional[str] = None,
        types: Optional[Sequence[str]] = None,
    ) -> List[MemoryRecord]:
        """Newest first (``created_at`` then ``id``), strictly after ``cursor``."""
        stmt = select(memories).where(memories.c.partition == partition)
        if types:
            stmt = stmt.where(memories.c.type.in_(list(types)))
        if cursor:
            anchor = (
                await conn.execute(
                    select(memories.c.created_at).where(memories.c.id == cursor)
                )
            ).first()
            if anchor is None:
                raise ValidationError(f"unknown cursor: {cursor}")
            stmt = stmt.where(
                or_(
                    memories.c.created_at < anchor.created_at,
                    and_(
                        memories.c.created_at == anchor.created_at,
                        memories.c.id < cursor,
                    ),
                )
            )
        stmt = stmt.order_by(memories.c.created_at.desc(), memories.c.id.desc()).limit(
            max(0, limit)
        )
        result = await conn.execute(stmt)
        return [record_from_row(row) for row in result.mappings().all()]

    @_storage_call
    async def get_by_partitions(
        self, conn: AsyncConnection, partitions: Sequence[str], limit: int
    ) -> List[MemoryRecord]:
        if not partitions:
            return []
        stmt = (
            select(memories)
            .where(memories.c.partition.in_(list(partitions)))
            .order_by(memories.c.created_at.desc(), memories.c.id.desc())
            .limit(max(0, limit))
        )
        result = await conn.execute(stmt)
        return [record_from_row(row) for row in result.mappings().all()]

    @_storage_call
    async def count(
        self, conn: AsyncConnection, partition: str, record_type: Optional[str] = None
    ) -> int:
        stmt = select(func.count()).select_from(memories).where(
            memories.c.partition == partition
        )
        if record_type:
            stmt = stmt.where(memories.c.type == record_type)
        return int((await conn.execute(stmt)).scalar_one())

    @_storage_call
    async def find_by_unique_key(
        self, conn: AsyncConnection, record_type: str, unique_key: str
    ) -> Optional[str]:
        result = await conn.execute(
            select(memories.c.id).where(
                and_(memories.c.type == record_type, memories.c.unique_key == unique_key)
            )
        )
        return result.scalar_one_or_none()

    @_storage_call
    async def is_id_issued(self, conn: AsyncConnection, record_id: str) -> bool:
        result = await conn.execute(
            select(issued_ids.c.id).where(issued_ids.c.id == record_id)
        )
        return result.first() is not None

    @_storage_call
    async def insert_record(
        self,
        conn: AsyncConnection,
        record: MemoryRecord,
        unique_key: Optional[str] = None,
    ) -> None:
        try:
            await conn.execute(
                insert(issued_ids).values(id=record.id, issued_at=record.created_at)
            )
            await conn.execute(insert(memories).values(**_record_values(record, unique_key)))
        except IntegrityError as exc:
            existing_id = record.id
            if unique_key is not None:
                existing_id = (
                    await conn.execute(
                        select(memories.c.id).where(
                            and_(
                                memories.c.type == record.type,
                                memories.c.unique_key == unique_key,
                            )
                        )
                    )
                ).scalar_one_or_none() or record.id
            raise ConflictError(
                f"{record.type} record already exists", existing_id=existing_id
            ) from exc

    @_storage_call
    async def update_record(
        self,
        conn: AsyncConnection,
        record: MemoryRecord,
        expected_version: int,
        unique_key: Optional[str] = None,
    ) -> bool:
        values = _record_values(record, unique_key)
        for immutable in ("id", "type", "agent_id", "owner_id", "partition", "created_at"):
            values.pop(immutable)
        try:
            result = await conn.execute(
                update(memories)
                .where(
                    and_(
                        memories.c.id == record.id,
                        memories.c.version == expected_version,
                    )
                )
                .values(**values)
            )
        except IntegrityError as exc:
            existing_id = (
                await self.find_by_unique_key(conn, record.type, unique_key)
                if unique_key
                else None
            )
            raise ConflictError(
                f"{record.type} record already exists", existing_id=existing_id
            ) from exc
        return result.rowcount == 1

    @_storage_call
    async def update_embedding(
        self, conn: AsyncConnection, record: MemoryRecord
    ) -> None:
        """Rewrite derived embedding data without touching the version."""
        await conn.execute(
            update(memories)
            .where(memories.c.id == record.id)
            .values(
                payload=_dump_json(record.payload.snapshot()),
                embedding=_dump_json(record.embedding)
                if record.embedding is not None
                else None,
                embedding_dim=len(record.embedding) if record.embedding is not None else None,
                vector_ready=0 if is_zero_vector(record.embedding) else 1,
            )
        )

    @_storage_call
    async def delete_record(self, conn: AsyncConnection, record_id: str) -> bool:
        """Hard delete of the record and its ledger; the id stays issued."""
        result = await conn.execute(delete(memories).where(memories.c.id == record_id))
        await conn.execute(
            delete(memory_versions).where(memory_versions.c.record_id == record_id)
        )
        return result.rowcount == 1

    @_storage_call
    async def list_with_embedding_dim_mismatch(
        self, conn: AsyncConnection, dimension: int
    ) -> List[MemoryRecord]:
        result = await conn.execute(
            select(memories).where(
                and_(
                    memories.c.embedding.is_not(None),
                    memories.c.embedding_dim != dimension,
                )
            )
        )
        return [record_from_row(row) for row in result.mappings().all()]

    @_storage_call
    async def list_embedding_fallbacks(
        self, conn: AsyncConnection, partition: Optional[str] = None
    ) -> List[MemoryRecord]:
        stmt = select(memories).where(
            func.json_extract(memories.c.payload, "$.metadata.embeddingFallback") == 1
        )
        if partition:
            stmt = stmt.where(memories.c.partition == partition)
        result = await conn.execute(stmt)
        return [record_from_row(row) for row in result.mappings().all()]

    # =========================================================================
    # Similarity
    # =========================================================================

    @_storage_call
    async def vector_search(
        self,
        conn: AsyncConnection,
        vector: Sequence[float],
        partition: str,
        threshold: float,
        limit: int,
        types: Optional[Sequence[str]] = None,
    ) -> List[Tuple[MemoryRecord, float]]:
        if is_zero_vector(vector) or limit <= 0:
            return []
        stmt = select(memories).where(
            and_(memories.c.partition == partition, memories.c.vector_ready == 1)
        )
        if types:
            stmt = stmt.where(memories.c.type.in_(list(types)))
        result = await conn.execute(stmt)

        scored: List[Tuple[MemoryRecord, float]] = []
        for row in result.mappings().all():
            record = record_from_row(row)
            score = cosine_similarity(vector, record.embedding or [])
            if score >= threshold:
                scored.append((record, score))
        scored.sort(key=lambda item: (-item[1], -(item[0].created_at or 0)))
        return scored[:limit]

    @_storage_call
    async def fuzzy_embedding_lookup(
        self,
        conn: AsyncConnection,
        content: str,
        *,
        dimension: int,
        max_distance: int,
        max_chars: int,
        limit: int = 10,
    ) -> List[Tuple[List[float], int]]:
        """Stored vectors whose text is within ``max_distance`` edits of ``content``."""
        rows = await conn.execute(
            text(
                "SELECT embedding, "
                "levenshtein(substr(content_text, 1, :max_chars), :content) AS score "
                "FROM memories "
                "WHERE vector_ready = 1 AND embedding_dim = :dimension "
                "AND abs(length(substr(content_text, 1, :max_chars)) - :content_len) "
                "<= :max_distance "
                "ORDER BY score ASC LIMIT :limit"
            ),
            {
                "content": content,
                "content_len": len(content),
                "max_chars": max_chars,
                "dimension": dimension,
                "max_distance": max_distance,
                "limit": limit,
            },
        )
        matches: List[Tuple[List[float], int]] = []
        for row in rows.mappings().all():
            if row["score"] is None or row["score"] > max_distance:
                continue
            matches.append(([float(v) for v in json.loads(row["embedding"])], int(row["score"])))
        return matches

    # =========================================================================
    # Version history
    # =========================================================================

    @_storage_call
    async def insert_history(
        self, conn: AsyncConnection, entry: VersionHistoryEntry
    ) -> None:
        await conn.execute(
            insert(memory_versions).values(
                record_id=entry.record_id,
                version=entry.version,
                payload=_dump_json(entry.payload),
                created_at=entry.created_at,
                reason=entry.reason,
            )
        )

    @_storage_call
    async def list_history(
        self, conn: AsyncConnection, record_id: str
    ) -> List[VersionHistoryEntry]:
        result = await conn.execute(
            select(memory_versions)
            .where(memory_versions.c.record_id == record_id)
            .order_by(memory_versions.c.version.asc())
        )
        return [
            VersionHistoryEntry(
                record_id=row["record_id"],
                version=int(row["version"]),
                payload=json.loads(row["payload"]),
                created_at=int(row["created_at"]),
                reason=row["reason"],
            )
            for row in result.mappings().all()
        ]

    # =========================================================================
    # Outbox events
    # =========================================================================

    @_storage_call
    async def insert_event(
        self,
        conn: AsyncConnection,
        topic: str,
        origin: Optional[str],
        payload: Mapping[str, Any],
        created_at: int,
    ) -> int:
        result = await conn.execute(
            insert(memory_events).values(
                topic=topic,
                origin=origin,
                payload=_dump_json(dict(payload)),
                created_at=created_at,
            )
        )
        return int(result.inserted_primary_key[0])

    @_storage_call
    async def fetch_events_after(
        self, conn: AsyncConnection, seq: int, limit: int = 200
    ) -> List[Tuple[int, str, str]]:
        """Raw ``(seq, topic, payload JSON)`` rows; decoding is left to the caller."""
        result = await conn.execute(
            select(memory_events.c.seq, memory_events.c.topic, memory_events.c.payload)
            .where(memory_events.c.seq > seq)
            .order_by(memory_events.c.seq.asc())
            .limit(limit)
        )
        return [
            (int(row["seq"]), row["topic"], row["payload"])
            for row in result.mappings().all()
        ]

    @_storage_call
    async def last_event_seq(self, conn: AsyncConnection) -> int:
        result = await conn.execute(select(func.max(memory_events.c.seq)))
        return int(result.scalar_one_or_none() or 0)

    @_storage_call
    async def prune_events(self, conn: AsyncConnection, older_than: int) -> int:
        result = await conn.execute(
            delete(memory_events).where(memory_events.c.created_at < older_than)
        )
        return int(result.rowcount or 0)
