"""
Record retrieval: vector similarity with a recency fallback.

Semantic search runs when vectors are active and the query produces a
non-zero vector. Otherwise the fallback returns the newest meaningful records
of the room, and the newest user-authored record is never lost to truncation.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence, Tuple

from .db.sqlite_adapter import is_zero_vector
from .embedding import EmbeddingNormalizer
from .records import MemoryRecord, SearchQuery

logger = logging.getLogger(__name__)


class RetrievalEngine:
    def __init__(
        self,
        adapter: Any,
        normalizer: EmbeddingNormalizer,
        *,
        match_threshold: float = 0.1,
        default_limit: int = 10,
        fallback_min_fetch: int = 30,
        fallback_buffer: int = 2,
        fuzzy_max_chars: int = 250,
        fuzzy_max_distance: int = 2,
    ) -> None:
        self._adapter = adapter
        self._normalizer = normalizer
        self.match_threshold = match_threshold
        self.default_limit = default_limit
        self.fallback_min_fetch = fallback_min_fetch
        self.fallback_buffer = fallback_buffer
        self.fuzzy_max_chars = fuzzy_max_chars
        self.fuzzy_max_distance = fuzzy_max_distance

    @property
    def semantic_enabled(self) -> bool:
        return self._normalizer.enabled

    async def search(
        self,
        conn: Any,
        query: SearchQuery,
        vector: Optional[Sequence[float]] = None,
    ) -> List[MemoryRecord]:
        """
        Semantic search when ``vector`` is given, recency fallback otherwise.

        ``vector`` comes from ``query_vector``, which must run before ``conn``
        is taken: its cache lookup borrows a connection of its own.
        """
        limit = query.limit if query.limit is not None else self.default_limit
        if limit <= 0:
            return []
        if vector is not None:
            threshold = (
                query.threshold if query.threshold is not None else self.match_threshold
            )
            return await self.search_semantic(
                conn, vector, query.partition, threshold, limit, types=query.types
            )
        return await self.search_fallback(conn, query.partition, limit, types=query.types)

    async def query_vector(self, query: SearchQuery) -> Optional[List[float]]:
        if not self.semantic_enabled:
            return None
        if query.embedding is not None:
            vector = self._normalizer.normalize(query.embedding)
        elif query.text.strip():
            vector, degrade_reasons = await self._normalizer.embed_text(query.text.strip())
            if degrade_reasons:
                logger.info(
                    "query embedding degraded (%s); using recency fallback",
                    ";".join(degrade_reasons),
                )
                return None
        else:
            return None
        return None if is_zero_vector(vector) else vector

    async def search_semantic(
        self,
        conn: Any,
        vector: Sequence[float],
        partition: str,
        threshold: float,
        limit: int,
        *,
        types: Optional[Sequence[str]] = None,
    ) -> List[MemoryRecord]:
        scored = await self._adapter.vector_search(
            conn, vector, partition, threshold, limit, types=types
        )
        return [record for record, _ in scored]

    async def search_fallback(
        self,
        conn: Any,
        partition: str,
        limit: int,
        *,
        types: Optional[Sequence[str]] = None,
    ) -> List[MemoryRecord]:
        if limit <= 0:
            return []
        fetched = await self._adapter.get_by_partition(
            conn, partition, max(self.fallback_min_fetch, 2 * limit), types=types
        )
        # Timestamps can arrive out of order; never trust insertion order.
        ordered = sorted(
            fetched, key=lambda r: (r.created_at or 0, r.id or ""), reverse=True
        )
        capacity = limit + self.fallback_buffer
        results = [r for r in ordered if not r.is_system and r.text.strip()][:capacity]

        newest_user = next((r for r in ordered if r.is_user_authored), None)
        if newest_user is not None and all(r.id != newest_user.id for r in results):
            results.insert(0, newest_user)
            del results[capacity:]
        return results

    async def fuzzy_cache_lookup(
        self, conn: Any, content: str
    ) -> List[Tuple[List[float], int]]:
        """Cached vectors for near-identical text; empty on any failure."""
        truncated = content[: self.fuzzy_max_chars]
        if not truncated.strip():
            return []
        try:
            return await self._adapter.fuzzy_embedding_lookup(
                conn,
                truncated,
                dimension=self._normalizer.dimension,
                max_distance=self.fuzzy_max_distance,
                max_chars=self.fuzzy_max_chars,
            )
        except Exception as exc:
            logger.warning("fuzzy embedding cache lookup failed: %s", exc)
            return []
