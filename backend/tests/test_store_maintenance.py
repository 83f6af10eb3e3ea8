import logging
from pathlib import Path
from typing import List

import pytest

from memstore.broker import DatabaseBroker, LocalBroker
from memstore.config import StoreSettings
from memstore.db.sqlite_adapter import SQLiteAdapter, is_zero_vector
from memstore.embedding import FALLBACK_FLAG, HashEmbeddingProvider
from memstore.errors import ValidationError
from memstore.records import MemoryEvent, MemoryRecord
from memstore.store import MemoryStore, build_store


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


class _FlakyProvider(HashEmbeddingProvider):
    def __init__(self, dimension: int) -> None:
        super().__init__(dimension)
        self.fail = True

    async def embed(self, text: str) -> List[float]:
        if self.fail:
            raise RuntimeError("provider offline")
        return await super().embed(text)


async def _make_store(tmp_path: Path, provider=None, **overrides) -> MemoryStore:
    settings = StoreSettings(
        database_url=_sqlite_url(tmp_path / "memory.db"), vector_dimension=8, **overrides
    )
    store = MemoryStore(
        SQLiteAdapter(settings.database_url),
        settings=settings,
        embedding_provider=provider,
    )
    await store.start()
    return store


def _message(text: str, agent_id: str = "agent-1") -> MemoryRecord:
    return MemoryRecord.new("message", agent_id=agent_id, payload={"text": text})


@pytest.mark.asyncio
async def test_paginate_walks_partition_newest_first(tmp_path: Path) -> None:
    store = await _make_store(tmp_path)
    try:
        ids = [await store.create(_message(f"note {i}")) for i in range(5)]
        await store.create(_message("elsewhere", agent_id="agent-2"))

        walked = []
        cursor = None
        while True:
            page = await store.paginate("agent:agent-1", cursor=cursor, limit=2)
            walked.extend(record.id for record in page.items)
            if not page.has_more:
                break
            cursor = page.next_cursor

        assert walked == list(reversed(ids))

        empty = await store.paginate("agent:nobody")
        assert (empty.items, empty.has_more, empty.next_cursor) == ([], False, None)
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_paginate_rejects_unknown_cursor_and_caps_limit(tmp_path: Path) -> None:
    store = await _make_store(tmp_path, max_page_size=3)
    try:
        for i in range(5):
            await store.create(_message(f"note {i}"))

        page = await store.paginate("agent:agent-1", limit=50)
        assert len(page.items) == 3
        assert page.has_more is True

        with pytest.raises(ValidationError):
            await store.paginate("agent:agent-1", cursor="no-such-id")
        with pytest.raises(ValidationError):
            await store.paginate("agent:agent-1", limit=0)
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_bulk_reads(tmp_path: Path) -> None:
    store = await _make_store(tmp_path)
    try:
        first = await store.create(_message("one"))
        second = await store.create(_message("two", agent_id="agent-2"))
        vote = await store.create(
            MemoryRecord.new(
                "vote",
                agent_id="agent-1",
                owner_id="user-1",
                payload={"proposal_id": "p-1", "choice": "yes"},
            )
        )

        assert await store.count("agent:agent-1") == 1
        assert await store.count("global", type="vote") == 1
        assert await store.count("global", type="message") == 0

        fetched = await store.get_many([second, "missing", first])
        assert [record.id for record in fetched] == [second, first]

        merged = await store.list_partitions(["agent:agent-1", "global"])
        assert {record.id for record in merged} == {first, vote}
        assert await store.list_partitions([]) == []
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_remove_all_clears_partition_and_broadcasts(tmp_path: Path) -> None:
    store = await _make_store(tmp_path)
    seen: List[MemoryEvent] = []
    store.subscribe("message", seen.append)
    try:
        for i in range(3):
            await store.create(_message(f"note {i}"))
        keep = await store.create(_message("keep", agent_id="agent-2"))

        assert await store.remove_all("agent:agent-1") == 3
        assert await store.count("agent:agent-1") == 0
        assert (await store.get(keep)).text == "keep"
        assert [event.kind for event in seen].count("deleted") == 3
        assert await store.remove_all("agent:agent-1") == 0
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_normalize_stored_embeddings_pads_old_vectors(tmp_path: Path) -> None:
    store = await _make_store(tmp_path)
    try:
        legacy = MemoryRecord.new(
            "message",
            agent_id="agent-1",
            payload={"text": "stored before the dimension changed"},
            id="legacy-vector",
            partition="agent:agent-1",
            embedding=[0.5, 0.5, 0.5, 0.5],
        )
        store.versions.stamp_initial(legacy)
        async with store.adapter.connect() as conn:
            await store.adapter.insert_record(conn, legacy)

        assert await store.normalize_stored_embeddings() == 1
        repaired = await store.get("legacy-vector")
        assert len(repaired.embedding) == 8
        assert repaired.embedding[4:] == [0.0, 0.0, 0.0, 0.0]
        assert repaired.version == 1
        assert await store.normalize_stored_embeddings() == 0
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_reembed_repairs_fallback_vectors(tmp_path: Path) -> None:
    provider = _FlakyProvider(8)
    store = await _make_store(tmp_path, provider=provider)
    try:
        record_id = await store.create(_message("needs a real vector"))
        degraded = await store.get(record_id)
        assert degraded.payload.metadata[FALLBACK_FLAG] is True
        assert is_zero_vector(degraded.embedding)

        assert await store.reembed() == 0

        provider.fail = False
        assert await store.reembed("agent:agent-1") == 1

        repaired = await store.get(record_id)
        assert FALLBACK_FLAG not in repaired.payload.metadata
        assert not is_zero_vector(repaired.embedding)
        assert repaired.version == 1
        assert await store.reembed() == 0
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_build_store_selects_broker(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    url = _sqlite_url(tmp_path / "memory.db")

    database_store = build_store(StoreSettings(database_url=url, broker_backend="database"))
    with caplog.at_level(logging.WARNING, logger="memstore.store"):
        fallback_store = build_store(StoreSettings(database_url=url, broker_backend="kafka"))
    try:
        assert isinstance(database_store.sync.broker, DatabaseBroker)
        assert isinstance(fallback_store.sync.broker, LocalBroker)
        assert "unknown broker backend" in caplog.text
        assert isinstance(database_store.provider, HashEmbeddingProvider)
    finally:
        await database_store.close()
        await fallback_store.close()
