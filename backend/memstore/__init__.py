"""Versioned memory store for agent records."""

__version__ = "0.1.0"

from .broker import DatabaseBroker, LocalBroker, MessageBroker
from .config import StoreSettings
from .embedding import (
    EmbeddingNormalizer,
    EmbeddingProvider,
    HashEmbeddingProvider,
    RemoteEmbeddingProvider,
)
from .errors import (
    ConflictError,
    EmbeddingDegradedError,
    EmbeddingProviderError,
    MemoryStoreError,
    NotFoundError,
    StaleVersionError,
    TransientStorageError,
    ValidationError,
)
from .records import MemoryEvent, MemoryRecord, Page, SearchQuery, VersionHistoryEntry
from .store import MemoryStore, build_store
from .sync import CrossProcessSync

__all__ = [
    "ConflictError",
    "CrossProcessSync",
    "DatabaseBroker",
    "EmbeddingDegradedError",
    "EmbeddingNormalizer",
    "EmbeddingProvider",
    "EmbeddingProviderError",
    "HashEmbeddingProvider",
    "LocalBroker",
    "MemoryEvent",
    "MemoryRecord",
    "MemoryStore",
    "MemoryStoreError",
    "MessageBroker",
    "NotFoundError",
    "Page",
    "RemoteEmbeddingProvider",
    "SearchQuery",
    "StaleVersionError",
    "StoreSettings",
    "TransientStorageError",
    "ValidationError",
    "VersionHistoryEntry",
    "build_store",
    "__version__",
]
