from .migration_runner import MigrationRunner, apply_pending_migrations
from .sqlite_adapter import SQLiteAdapter, cosine_similarity, is_zero_vector, levenshtein

__all__ = [
    "MigrationRunner",
    "SQLiteAdapter",
    "apply_pending_migrations",
    "cosine_similarity",
    "is_zero_vector",
    "levenshtein",
]
