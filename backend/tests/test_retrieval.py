import asyncio
from pathlib import Path
from typing import List, Optional

import pytest

from memstore.config import StoreSettings
from memstore.db.sqlite_adapter import SQLiteAdapter, cosine_similarity, levenshtein
from memstore.embedding import EmbeddingNormalizer, HashEmbeddingProvider
from memstore.errors import TransientStorageError
from memstore.records import MemoryRecord, SearchQuery
from memstore.retrieval import RetrievalEngine
from memstore.store import MemoryStore


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


class _CountingProvider(HashEmbeddingProvider):
    def __init__(self, dimension: int) -> None:
        super().__init__(dimension)
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        return await super().embed(text)


async def _make_store(
    tmp_path: Path, provider: Optional[HashEmbeddingProvider] = None, **overrides
) -> MemoryStore:
    settings = StoreSettings(
        database_url=_sqlite_url(tmp_path / "memory.db"),
        vector_dimension=provider.dimension if provider else 8,
        **overrides,
    )
    store = MemoryStore(
        SQLiteAdapter(settings.database_url),
        settings=settings,
        embedding_provider=provider,
    )
    await store.start()
    return store


def _message(text: str, **fields) -> MemoryRecord:
    return MemoryRecord.new(
        "message", agent_id=fields.pop("agent_id", "agent-1"), payload={"text": text}, **fields
    )


@pytest.mark.asyncio
async def test_fallback_keeps_newest_user_message(tmp_path: Path) -> None:
    store = await _make_store(tmp_path)
    try:
        user_id = await store.create(_message("what did we decide?", owner_id="user-1"))
        agent_ids = [
            await store.create(_message(f"agent note {i}", owner_id="agent-1"))
            for i in range(10)
        ]

        results = await store.search(SearchQuery(partition="agent:agent-1", limit=3))

        # limit + buffer
        assert len(results) == 5
        assert results[0].id == user_id
        assert [r.id for r in results[1:]] == list(reversed(agent_ids))[:4]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_fallback_orders_newest_first_and_skips_noise(tmp_path: Path) -> None:
    store = await _make_store(tmp_path)
    try:
        first = await store.create(_message("first"))
        await store.create(
            MemoryRecord.new("system_message", agent_id="agent-1", payload={"text": "boot"})
        )
        await store.create(_message("   "))
        second = await store.create(_message("second"))
        await store.create(
            MemoryRecord.new(
                "memory_error", agent_id="agent-1", payload={"text": "db hiccup", "error": "x"}
            )
        )

        results = await store.search({"partition": "agent:agent-1", "limit": 10})

        assert [r.id for r in results] == [second, first]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_fallback_when_user_message_already_present(tmp_path: Path) -> None:
    store = await _make_store(tmp_path)
    try:
        older_id = await store.create(_message("older agent note"))
        user_id = await store.create(_message("newest from user", owner_id="user-7"))

        results = await store.search(SearchQuery(partition="agent:agent-1", limit=1))

        assert [r.id for r in results] == [user_id, older_id]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_fallback_respects_type_filter(tmp_path: Path) -> None:
    store = await _make_store(tmp_path)
    try:
        await store.create(_message("plain message"))
        note_id = await store.create(
            MemoryRecord.new("note", agent_id="agent-1", payload={"text": "a note"})
        )

        results = await store.search(
            SearchQuery(partition="agent:agent-1", types=["note"])
        )

        assert [r.id for r in results] == [note_id]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_semantic_search_ranks_by_similarity(tmp_path: Path) -> None:
    store = await _make_store(tmp_path, provider=HashEmbeddingProvider(64))
    try:
        cat_id = await store.create(_message("the cat sat on the mat"))
        await store.create(_message("quarterly treasury report approved"))
        await store.create(_message("   "))

        results = await store.search(
            SearchQuery(partition="agent:agent-1", text="cat sat on mat")
        )

        assert results
        assert results[0].id == cat_id
        assert all(r.text.strip() for r in results)
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_semantic_search_stays_inside_partition(tmp_path: Path) -> None:
    store = await _make_store(tmp_path, provider=HashEmbeddingProvider(64))
    try:
        await store.create(_message("the cat sat on the mat", agent_id="agent-2"))

        results = await store.search(
            SearchQuery(partition="agent:agent-1", text="the cat sat on the mat")
        )

        assert results == []
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_near_duplicate_text_reuses_cached_vector(tmp_path: Path) -> None:
    provider = _CountingProvider(32)
    store = await _make_store(tmp_path, provider=provider)
    try:
        first_id = await store.create(_message("hello world"))
        second_id = await store.create(_message("hello world!"))

        assert provider.calls == ["hello world"]
        first = await store.get(first_id)
        second = await store.get(second_id)
        assert second.embedding == first.embedding

        async with store.adapter.connect() as conn:
            matches = await store.retrieval.fuzzy_cache_lookup(conn, "hello worlds")
        assert matches
        assert matches[0][1] == 1
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_semantic_search_on_single_connection_pool(tmp_path: Path) -> None:
    settings = StoreSettings(
        database_url=_sqlite_url(tmp_path / "memory.db"), vector_dimension=32
    )
    store = MemoryStore(
        SQLiteAdapter(settings.database_url, pool_size=1, pool_timeout_sec=1.0),
        settings=settings,
        embedding_provider=HashEmbeddingProvider(32),
    )
    await store.start()
    try:
        door_id = await store.create(_message("blue door"))

        # The query vector comes from the text cache, which needs a connection too.
        results = await asyncio.wait_for(
            store.search(SearchQuery(partition="agent:agent-1", text="blue door")), 10
        )

        assert [r.id for r in results][:1] == [door_id]
    finally:
        await store.close()



class _BrokenAdapter:
    async def fuzzy_embedding_lookup(self, *args, **kwargs):
        raise TransientStorageError("database is locked")


@pytest.mark.asyncio
async def test_fuzzy_lookup_failure_returns_empty() -> None:
    engine = RetrievalEngine(_BrokenAdapter(), EmbeddingNormalizer(8, HashEmbeddingProvider(8)))

    assert await engine.fuzzy_cache_lookup(None, "some text") == []
    assert await engine.fuzzy_cache_lookup(None, "   ") == []


@pytest.mark.asyncio
async def test_search_failure_returns_empty(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    store = await _make_store(tmp_path)
    try:
        await store.create(_message("something"))

        async def _explode(*_args, **_kwargs):
            raise TransientStorageError("disk I/O error")

        monkeypatch.setattr(store.retrieval, "search", _explode)
        assert await store.search(SearchQuery(partition="agent:agent-1")) == []
    finally:
        await store.close()


def test_levenshtein_limits_and_values() -> None:
    assert levenshtein("kitten", "sitting") == 3
    assert levenshtein("same", "same") == 0
    assert levenshtein(None, "x") is None
    with pytest.raises(ValueError):
        levenshtein("a" * 256, "a")


def test_cosine_similarity_of_zero_vector_is_zero() -> None:
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
