"""
SQL migration runner for the memory store database.

Migrations live in ``memstore/db/migrations`` and are named
``NNNN_description.sql``. Each applied file is recorded in
``schema_migrations`` together with a line-ending-insensitive checksum, so an
edited migration is detected instead of silently skipped. Concurrent
processes booting against the same file serialize on a ``.migrate.lock``
file lock.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import unquote

from filelock import FileLock, Timeout

logger = logging.getLogger(__name__)

_SQLITE_URL_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")
_MIGRATION_NAME = re.compile(r"^(?P<version>\d{4,})_(?P<label>.+)\.sql$")
_ADD_COLUMN = re.compile(r"^ALTER\s+TABLE\s+\S+\s+ADD\s+COLUMN\s", re.IGNORECASE)
DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


@dataclass(frozen=True)
class Migration:
    version: str
    label: str
    path: Path
    checksum: str


def sqlite_file_from_url(database_url: str) -> Optional[Path]:
    """Local database file behind a sqlite URL; ``None`` for in-memory URLs."""
    for prefix in _SQLITE_URL_PREFIXES:
        if not database_url.startswith(prefix):
            continue
        raw_path = unquote(database_url[len(prefix) :].split("?", 1)[0])
        if not raw_path or raw_path == ":memory:":
            return None
        return Path(raw_path)
    raise ValueError(
        f"unsupported database url for migrations: {database_url!r} "
        "(expected sqlite+aiosqlite:///... or sqlite:///...)"
    )


def checksum(content: bytes) -> str:
    try:
        text = content.decode("utf-8")
    except UnicodeDecodeError:
        return hashlib.sha256(content).hexdigest()
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def split_statements(script: str) -> List[str]:
    """
    Split a script on semicolons that sit outside quoted literals.

    ``--`` comments outside literals are dropped, so every statement starts
    with its SQL keyword.
    """
    statements: List[str] = []
    current: List[str] = []
    quote: Optional[str] = None
    index = 0
    while index < len(script):
        char = script[index]
        if quote is None and script.startswith("--", index):
            newline = script.find("\n", index)
            index = len(script) if newline < 0 else newline
            continue
        if quote is None and char in ("'", '"'):
            quote = char
        elif quote == char:
            quote = None
        if char == ";" and quote is None:
            statements.append("".join(current))
            current = []
        else:
            current.append(char)
        index += 1
    statements.append("".join(current))
    return [stmt.strip() for stmt in statements if stmt.strip()]


class MigrationRunner:
    def __init__(
        self,
        database_url: str,
        migrations_dir: Optional[Path] = None,
        lock_timeout_seconds: Optional[float] = None,
    ) -> None:
        self.database_url = database_url
        self.database_file = sqlite_file_from_url(database_url)
        self.migrations_dir = Path(migrations_dir or DEFAULT_MIGRATIONS_DIR)
        if lock_timeout_seconds is None:
            try:
                lock_timeout_seconds = float(
                    os.getenv("MEMORY_MIGRATION_LOCK_TIMEOUT_SEC", "10")
                )
            except ValueError:
                lock_timeout_seconds = 10.0
        self.lock_timeout_seconds = max(0.0, lock_timeout_seconds)

    @property
    def lock_file_path(self) -> Optional[Path]:
        if self.database_file is None:
            return None
        configured = os.getenv("MEMORY_MIGRATION_LOCK_FILE", "").strip()
        if configured:
            candidate = Path(configured).expanduser()
            if not candidate.is_absolute():
                candidate = self.database_file.parent / candidate
            return candidate
        return self.database_file.parent / f"{self.database_file.name}.migrate.lock"

    def discover(self) -> List[Migration]:
        if not self.migrations_dir.is_dir():
            return []
        found: List[Migration] = []
        for path in sorted(self.migrations_dir.glob("*.sql")):
            match = _MIGRATION_NAME.match(path.name)
            if not match or path.name.endswith(".rollback.sql"):
                continue
            found.append(
                Migration(
                    version=match.group("version"),
                    label=match.group("label"),
                    path=path,
                    checksum=checksum(path.read_bytes()),
                )
            )
        return found

    async def apply_pending(self) -> List[str]:
        return await asyncio.to_thread(self._apply_pending_sync)

    def _apply_pending_sync(self) -> List[str]:
        migrations = self.discover()
        # In-memory databases are built from the current models on every boot.
        if not migrations or self.database_file is None:
            return []
        self.database_file.parent.mkdir(parents=True, exist_ok=True)
        lock_path = self.lock_file_path
        lock = FileLock(str(lock_path), timeout=self.lock_timeout_seconds)
        try:
            with lock:
                return self._apply(migrations)
        except Timeout as exc:
            raise RuntimeError(
                f"timed out after {self.lock_timeout_seconds}s waiting for "
                f"migration lock {lock_path}"
            ) from exc

    def _apply(self, migrations: List[Migration]) -> List[str]:
        applied: List[str] = []
        with sqlite3.connect(self.database_file) as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_migrations ("
                "version TEXT PRIMARY KEY, applied_at TEXT NOT NULL, "
                "checksum TEXT NOT NULL)"
            )
            recorded: Dict[str, str] = dict(
                conn.execute("SELECT version, checksum FROM schema_migrations")
            )
            for migration in migrations:
                previous = recorded.get(migration.version)
                if previous is not None:
                    if previous != migration.checksum:
                        raise RuntimeError(
                            f"migration {migration.version} changed after it was "
                            f"applied (recorded {previous}, found {migration.checksum})"
                        )
                    continue
                self._run_script(conn, migration)
                conn.execute(
                    "INSERT INTO schema_migrations(version, applied_at, checksum) "
                    "VALUES (?, ?, ?)",
                    (
                        migration.version,
                        datetime.now(timezone.utc).isoformat(),
                        migration.checksum,
                    ),
                )
                conn.commit()
                applied.append(migration.version)
                logger.info("applied migration %s_%s", migration.version, migration.label)
        return applied

    @staticmethod
    def _run_script(conn: sqlite3.Connection, migration: Migration) -> None:
        script = migration.path.read_text(encoding="utf-8")
        for statement in split_statements(script):
            try:
                conn.execute(statement)
            except sqlite3.OperationalError as exc:
                # Columns already created from the current models.
                if _ADD_COLUMN.match(statement) and "duplicate column name" in str(
                    exc
                ).lower():
                    continue
                raise


async def apply_pending_migrations(
    database_url: str, migrations_dir: Optional[Path] = None
) -> List[str]:
    runner = MigrationRunner(database_url=database_url, migrations_dir=migrations_dir)
    return await runner.apply_pending()
