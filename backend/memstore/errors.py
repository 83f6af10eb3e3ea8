"""Exception taxonomy for the memory store."""

from typing import Optional


class MemoryStoreError(Exception):
    """Base class for every error raised by the store."""


class ValidationError(MemoryStoreError, ValueError):
    """A record or patch is malformed; raised before any I/O happens."""


class ConflictError(MemoryStoreError):
    """The entity already exists (uniqueness key or id). Do not retry blindly."""

    def __init__(self, message: str, existing_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.existing_id = existing_id


class StaleVersionError(ConflictError):
    """The stored version moved past the version the caller read."""

    def __init__(
        self, record_id: str, expected_version: int, current_version: Optional[int]
    ) -> None:
        super().__init__(
            f"stale version for {record_id}: expected {expected_version}, "
            f"stored {current_version}",
            existing_id=record_id,
        )
        self.expected_version = expected_version
        self.current_version = current_version


class NotFoundError(MemoryStoreError, KeyError):
    def __init__(self, record_id: str) -> None:
        super().__init__(record_id)
        self.record_id = record_id

    def __str__(self) -> str:
        return f"memory not found: {self.record_id}"


class TransientStorageError(MemoryStoreError):
    """Adapter-level I/O failure. Safe to retry with backoff."""


class EmbeddingProviderError(MemoryStoreError):
    """The embedding provider could not produce a vector."""


class EmbeddingDegradedError(MemoryStoreError):
    """
    Embedding generation degraded to a zero vector.

    Never raised out of the normalizer; it is built for logging and carries
    the reason recorded in the payload metadata.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
