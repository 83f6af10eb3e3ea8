"""
Embedding providers and the dimension-enforcing normalizer.

Every vector that reaches storage has exactly ``D`` components. When vectors
are disabled, missing, or the provider fails, the record gets a zero vector
and (for failures) an ``embeddingFallback`` annotation in its payload
metadata; embedding trouble never fails a write.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import httpx

from .config import StoreSettings
from .errors import EmbeddingDegradedError, EmbeddingProviderError
from .records import MemoryRecord

logger = logging.getLogger(__name__)

FALLBACK_FLAG = "embeddingFallback"
FALLBACK_REASON = "embeddingError"
_RETRYABLE_STATUS = {429, 500, 502, 503, 504}
_MAX_RETRY_DELAY_SEC = 30.0

CacheLookup = Callable[[str], Awaitable[Optional[List[float]]]]


class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> List[float]:
        ...

    async def aclose(self) -> None:
        ...


# =============================================================================
# Providers
# =============================================================================


def hash_embedding(content: str, dim: int) -> List[float]:
    """Deterministic bag-of-tokens vector; similar texts share components."""
    vector = [0.0] * dim
    normalized = re.sub(r"\s+", " ", content.strip().lower())
    tokens = re.findall(r"[a-z0-9_]+", normalized)
    if not tokens and normalized:
        tokens = list(normalized)

    for token in tokens:
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        for i in range(0, 8, 2):
            idx = digest[i] % dim
            sign = -1.0 if (digest[i + 1] & 1) else 1.0
            weight = 1.0 + (digest[(i + 2) % len(digest)] / 255.0)
            vector[idx] += sign * weight

    norm = math.sqrt(sum(v * v for v in vector))
    if norm <= 0:
        return [0.0] * dim
    return [v / norm for v in vector]


class HashEmbeddingProvider:
    def __init__(self, dimension: int) -> None:
        self.dimension = dimension

    async def embed(self, text: str) -> List[float]:
        return hash_embedding(text, self.dimension)

    async def aclose(self) -> None:
        return None


def extract_embedding(payload: Any) -> Optional[List[float]]:
    """Pull the first vector out of an OpenAI-style or bare response body."""
    candidates: List[Any] = []
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, list) and data:
            first_item = data[0]
            if isinstance(first_item, dict):
                candidates.append(first_item.get("embedding"))
            elif isinstance(first_item, list):
                candidates.append(first_item)
        candidates.append(payload.get("embedding"))
    elif isinstance(payload, list):
        candidates.append(payload)

    for candidate in candidates:
        if not isinstance(candidate, list) or not candidate:
            continue
        try:
            return [float(v) for v in candidate]
        except (TypeError, ValueError):
            continue
    return None


def _join_api_url(base: str, endpoint: str) -> str:
    return f"{base.rstrip('/')}/{endpoint.lstrip('/')}"


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("retry-after")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


class RemoteEmbeddingProvider:
    """
    OpenAI-compatible ``POST {base}/embeddings`` client.

    Rate limits (429, honoring ``Retry-After``) and 5xx responses are retried
    with exponential backoff; everything else fails fast. One ``AsyncClient``
    is shared by every call.
    """

    def __init__(
        self,
        api_base: str,
        model: str,
        *,
        api_key: str = "",
        timeout_sec: float = 8.0,
        max_retries: int = 3,
        backoff_base_sec: float = 1.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_base = api_base
        self.model = model
        self.api_key = api_key
        self.max_retries = max(0, max_retries)
        self.backoff_base_sec = max(0.0, backoff_base_sec)
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_sec))

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _backoff(self, attempt: int) -> float:
        return min(_MAX_RETRY_DELAY_SEC, self.backoff_base_sec * (2 ** attempt))

    async def embed(self, text: str) -> List[float]:
        if not self.api_base or not self.model:
            raise EmbeddingProviderError("embedding_config_missing")

        url = _join_api_url(self.api_base, "/embeddings")
        payload = {"model": self.model, "input": text}
        attempt = 0
        while True:
            try:
                response = await self._client.post(
                    url, json=payload, headers=self._headers()
                )
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                if attempt >= self.max_retries:
                    raise EmbeddingProviderError(
                        f"embedding_request_failed: {exc}"
                    ) from exc
                await asyncio.sleep(self._backoff(attempt))
                attempt += 1
                continue

            if response.status_code in _RETRYABLE_STATUS:
                if attempt >= self.max_retries:
                    raise EmbeddingProviderError(
                        f"embedding_http_{response.status_code}"
                    )
                delay = _retry_after_seconds(response)
                if delay is None:
                    delay = self._backoff(attempt)
                logger.info(
                    "embedding provider returned %s, retrying in %.1fs",
                    response.status_code,
                    delay,
                )
                await asyncio.sleep(min(delay, _MAX_RETRY_DELAY_SEC))
                attempt += 1
                continue

            if response.status_code >= 400:
                raise EmbeddingProviderError(f"embedding_http_{response.status_code}")
            try:
                parsed = response.json()
            except ValueError as exc:
                raise EmbeddingProviderError("embedding_response_invalid") from exc
            embedding = extract_embedding(parsed)
            if embedding is None:
                raise EmbeddingProviderError("embedding_response_invalid")
            return embedding

    async def aclose(self) -> None:
        await self._client.aclose()


def build_provider(settings: StoreSettings) -> Optional[EmbeddingProvider]:
    if not settings.vectors_active:
        return None
    if settings.embedding_backend in {"api", "openai", "router"}:
        return RemoteEmbeddingProvider(
            settings.embedding_api_base,
            settings.embedding_model,
            api_key=settings.embedding_api_key,
            timeout_sec=settings.embedding_timeout_sec,
            max_retries=settings.embedding_max_retries,
        )
    if settings.embedding_backend not in {"hash", "local"}:
        logger.warning(
            "unknown embedding backend %r, using local hash embeddings",
            settings.embedding_backend,
        )
    return HashEmbeddingProvider(settings.vector_dimension)


# =============================================================================
# Normalizer
# =============================================================================


class EmbeddingNormalizer:
    def __init__(
        self,
        dimension: int,
        provider: Optional[EmbeddingProvider] = None,
        *,
        enabled: bool = True,
        cache_lookup: Optional[CacheLookup] = None,
    ) -> None:
        if dimension <= 0:
            raise ValueError("vector dimension must be positive")
        self.dimension = dimension
        self.provider = provider
        self.enabled = enabled and provider is not None
        self.cache_lookup = cache_lookup

    def zero_vector(self) -> List[float]:
        return [0.0] * self.dimension

    def normalize(self, vector: Sequence[float]) -> List[float]:
        """Zero-pad or truncate to the configured dimension."""
        values = [float(v) for v in vector[: self.dimension]]
        if len(values) < self.dimension:
            values.extend([0.0] * (self.dimension - len(values)))
        return values

    async def attach(self, record: MemoryRecord) -> MemoryRecord:
        if not self.enabled:
            record.embedding = self.zero_vector()
            return record

        if record.embedding is not None:
            supplied = len(record.embedding)
            if supplied == self.dimension:
                record.embedding = [float(v) for v in record.embedding]
                return record
            logger.warning(
                "record %s carries a %d-length embedding, expected %d; "
                "storing a zero vector",
                record.id,
                supplied,
                self.dimension,
            )
            record.embedding = self.zero_vector()
            _mark_degraded(record, f"invalid_dimension:{supplied}")
            return record

        content = record.text.strip()
        if not content:
            record.embedding = self.zero_vector()
            return record

        vector, degrade_reasons = await self.embed_text(content)
        record.embedding = vector
        if degrade_reasons:
            _mark_degraded(record, ";".join(degrade_reasons))
        else:
            record.payload.metadata.pop(FALLBACK_FLAG, None)
            record.payload.metadata.pop(FALLBACK_REASON, None)
        return record

    async def embed_text(self, content: str) -> Tuple[List[float], List[str]]:
        """Vector for ``content`` plus the reasons it degraded, if any."""
        if not self.enabled or self.provider is None:
            return self.zero_vector(), ["embedding_disabled"]

        if self.cache_lookup is not None:
            cached = await self.cache_lookup(content)
            if cached is not None and len(cached) == self.dimension:
                return list(cached), []

        degrade_reasons: List[str] = []
        try:
            vector = await self.provider.embed(content)
        except Exception as exc:
            degrade_reasons.append(str(exc) or type(exc).__name__)
        else:
            if len(vector) == self.dimension:
                return [float(v) for v in vector], []
            degrade_reasons.append(f"embedding_dimension_mismatch:{len(vector)}")

        logger.warning(
            "embedding degraded to zero vector: %s",
            EmbeddingDegradedError(";".join(degrade_reasons)),
        )
        return self.zero_vector(), degrade_reasons


def _mark_degraded(record: MemoryRecord, reason: str) -> None:
    record.payload.metadata[FALLBACK_FLAG] = True
    record.payload.metadata[FALLBACK_REASON] = reason
