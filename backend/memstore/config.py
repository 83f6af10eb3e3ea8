"""
Environment-driven settings for the memory store.

All knobs are plain key/value environment variables (optionally loaded from a
``.env`` file found from the current working directory upward).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import List

from dotenv import find_dotenv, load_dotenv

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

_TRUTHY_ENV_VALUES = {"1", "true", "yes", "on", "enabled"}
_DISABLED_BACKENDS = {"none", "off", "disabled", "false", "0"}

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///memory_store.db"
STANDARD_EMBEDDING_MODEL = "text-embedding-ada-002"
STANDARD_VECTOR_DIMENSION = 1536


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, float(raw))
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY_ENV_VALUES


def _first_env(names: List[str], default: str = "") -> str:
    for name in names:
        value = os.getenv(name)
        if value is None:
            continue
        candidate = value.strip()
        if candidate:
            return candidate
    return default


@dataclass(frozen=True)
class StoreSettings:
    database_url: str = DEFAULT_DATABASE_URL
    embeddings_enabled: bool = True
    embedding_backend: str = "hash"
    vector_dimension: int = STANDARD_VECTOR_DIMENSION
    embedding_model: str = STANDARD_EMBEDDING_MODEL
    embedding_api_base: str = ""
    embedding_api_key: str = ""
    embedding_timeout_sec: float = 8.0
    embedding_max_retries: int = 3
    pool_size: int = 5
    busy_timeout_sec: float = 5.0
    fuzzy_cache_max_chars: int = 250
    fuzzy_cache_max_distance: int = 2
    match_threshold: float = 0.1
    default_search_limit: int = 10
    fallback_min_fetch: int = 30
    fallback_buffer: int = 2
    default_page_size: int = 50
    max_page_size: int = 100
    global_partition: str = "global"
    process_id: str = ""
    broker_backend: str = "local"
    broker_poll_interval_sec: float = 0.5
    event_retention_sec: float = 3600.0
    recent_sync_ttl_sec: float = 60.0
    api_key: str = ""
    allow_insecure_local: bool = False

    @property
    def vectors_active(self) -> bool:
        """True when records get real (non-zero) embeddings."""
        return self.embeddings_enabled and (
            self.embedding_backend not in _DISABLED_BACKENDS
        )

    def with_overrides(self, **changes) -> "StoreSettings":
        return replace(self, **changes)

    @classmethod
    def from_env(cls) -> "StoreSettings":
        backend = (
            os.getenv("MEMORY_EMBEDDING_BACKEND", "hash").strip().lower() or "hash"
        )
        enabled = _env_bool("MEMORY_EMBEDDINGS_ENABLED", True)
        # Legacy kill switch, wins over everything else.
        if _env_bool("DISABLE_EMBEDDINGS", False):
            enabled = False

        if backend == "openai":
            api_base = _first_env(
                ["OPENAI_BASE_URL", "OPENAI_API_BASE", "MEMORY_EMBEDDING_API_BASE"]
            )
            api_key = _first_env(["OPENAI_API_KEY", "MEMORY_EMBEDDING_API_KEY"])
        else:
            api_base = _first_env(
                ["MEMORY_EMBEDDING_API_BASE", "OPENAI_BASE_URL", "OPENAI_API_BASE"]
            )
            api_key = _first_env(["MEMORY_EMBEDDING_API_KEY", "OPENAI_API_KEY"])

        max_page_size = _env_int("MEMORY_MAX_PAGE_SIZE", 100, minimum=1)
        return cls(
            database_url=_first_env(
                ["MEMORY_DATABASE_URL", "DATABASE_URL"], DEFAULT_DATABASE_URL
            ),
            embeddings_enabled=enabled,
            embedding_backend=backend,
            vector_dimension=_env_int(
                "MEMORY_VECTOR_DIMENSION",
                _env_int("VECTOR_DIMENSION", STANDARD_VECTOR_DIMENSION, minimum=1),
                minimum=1,
            ),
            embedding_model=_first_env(
                ["MEMORY_EMBEDDING_MODEL", "OPENAI_EMBEDDING_MODEL"],
                STANDARD_EMBEDDING_MODEL,
            ),
            embedding_api_base=api_base,
            embedding_api_key=api_key,
            embedding_timeout_sec=_env_float(
                "MEMORY_EMBEDDING_TIMEOUT_SEC", 8.0, minimum=1.0
            ),
            embedding_max_retries=_env_int("MEMORY_EMBEDDING_MAX_RETRIES", 3),
            pool_size=_env_int("MEMORY_DB_POOL_SIZE", 5, minimum=1),
            busy_timeout_sec=_env_float("MEMORY_DB_BUSY_TIMEOUT_SEC", 5.0),
            fuzzy_cache_max_chars=_env_int(
                "MEMORY_FUZZY_CACHE_MAX_CHARS", 250, minimum=1
            ),
            fuzzy_cache_max_distance=_env_int("MEMORY_FUZZY_CACHE_MAX_DISTANCE", 2),
            match_threshold=_env_float("MEMORY_MATCH_THRESHOLD", 0.1),
            default_search_limit=_env_int("MEMORY_SEARCH_LIMIT", 10, minimum=1),
            fallback_min_fetch=_env_int("MEMORY_FALLBACK_MIN_FETCH", 30, minimum=1),
            fallback_buffer=_env_int("MEMORY_FALLBACK_BUFFER", 2),
            default_page_size=min(
                max_page_size, _env_int("MEMORY_PAGE_SIZE", 50, minimum=1)
            ),
            max_page_size=max_page_size,
            global_partition=_first_env(["MEMORY_GLOBAL_PARTITION"], "global"),
            process_id=_first_env(["MEMORY_PROCESS_ID"]),
            broker_backend=(
                os.getenv("MEMORY_BROKER_BACKEND", "local").strip().lower() or "local"
            ),
            broker_poll_interval_sec=_env_float(
                "MEMORY_BROKER_POLL_INTERVAL_SEC", 0.5, minimum=0.05
            ),
            event_retention_sec=_env_float("MEMORY_EVENT_RETENTION_SEC", 3600.0),
            recent_sync_ttl_sec=_env_float("MEMORY_RECENT_SYNC_TTL_SEC", 60.0),
            api_key=_first_env(["MEMORY_API_KEY"]),
            allow_insecure_local=_env_bool(
                "MEMORY_API_KEY_ALLOW_INSECURE_LOCAL", False
            ),
        )
