import asyncio
import sqlite3
from pathlib import Path

import pytest
from filelock import FileLock

from memstore.db.migration_runner import (
    MigrationRunner,
    checksum,
    split_statements,
    sqlite_file_from_url,
)
from memstore.db.sqlite_adapter import SQLiteAdapter

_TAGS_TABLE = (
    "CREATE TABLE IF NOT EXISTS memory_tags ("
    "record_id VARCHAR(64) NOT NULL, tag VARCHAR(64) NOT NULL);"
)


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


@pytest.fixture
def tags_migrations(tmp_path: Path) -> Path:
    """A migrations directory holding a single ``0001`` file."""
    migrations_dir = tmp_path / "migrations"
    migrations_dir.mkdir()
    (migrations_dir / "0001_memory_tags.sql").write_text(_TAGS_TABLE, encoding="utf-8")
    # Files that do not follow the NNNN_label.sql naming are ignored.
    (migrations_dir / "notes.sql").write_text("SELECT broken", encoding="utf-8")
    return migrations_dir


def _seed_pre_vector_ready_store(db_path: Path) -> None:
    # Shape of a store database from before vector_ready existed.
    with sqlite3.connect(db_path) as conn:
        conn.execute(
            """
            CREATE TABLE memories (
                id VARCHAR(64) PRIMARY KEY,
                type VARCHAR(64) NOT NULL,
                partition VARCHAR(255) NOT NULL,
                owner_id VARCHAR(255),
                agent_id VARCHAR(255) NOT NULL,
                payload TEXT NOT NULL,
                content_text TEXT NOT NULL,
                embedding TEXT,
                embedding_dim INTEGER,
                version INTEGER NOT NULL,
                unique_key VARCHAR(64),
                created_at BIGINT NOT NULL,
                updated_at BIGINT NOT NULL
            )
            """
        )
        rows = [
            ("with-vector", '{"text": "hi"}', "hi", "[0.0, 0.5]", 1),
            ("zero-vector", '{"text": ""}', "", "[0.0, 0.0]", 2),
        ]
        conn.executemany(
            "INSERT INTO memories (id, type, partition, agent_id, payload, content_text, "
            "embedding, embedding_dim, version, created_at, updated_at) "
            "VALUES (?, 'message', 'agent:a', 'a', ?, ?, ?, 2, 1, ?, ?)",
            [(rid, payload, text, vector, ts, ts) for rid, payload, text, vector, ts in rows],
        )


def _schema_names(db_path: Path, kind: str) -> set:
    with sqlite3.connect(db_path) as conn:
        return {
            name
            for (name,) in conn.execute(
                "SELECT name FROM sqlite_master WHERE type = ?", (kind,)
            ).fetchall()
        }


@pytest.mark.asyncio
@pytest.mark.parametrize("suffix", ["", "?cache=shared"])
async def test_pending_migrations_are_recorded_once(
    tmp_path: Path, tags_migrations: Path, suffix: str
) -> None:
    db_path = tmp_path / "store.db"
    runner = MigrationRunner(_sqlite_url(db_path) + suffix, migrations_dir=tags_migrations)

    assert await runner.apply_pending() == ["0001"]
    assert await runner.apply_pending() == []
    assert "memory_tags" in _schema_names(db_path, "table")
    with sqlite3.connect(db_path) as conn:
        recorded = conn.execute("SELECT version, checksum FROM schema_migrations").fetchall()
    assert recorded == [
        ("0001", checksum((tags_migrations / "0001_memory_tags.sql").read_bytes()))
    ]


@pytest.mark.asyncio
async def test_edited_migration_is_refused(tmp_path: Path, tags_migrations: Path) -> None:
    runner = MigrationRunner(_sqlite_url(tmp_path / "store.db"), migrations_dir=tags_migrations)
    await runner.apply_pending()

    (tags_migrations / "0001_memory_tags.sql").write_text(
        _TAGS_TABLE.replace("tag VARCHAR(64)", "tag TEXT"), encoding="utf-8"
    )

    with pytest.raises(RuntimeError, match="changed after it was applied"):
        await runner.apply_pending()


def test_checksum_ignores_line_endings() -> None:
    assert checksum(b"SELECT 1;\r\nSELECT 2;\r\n") == checksum(b"SELECT 1;\nSELECT 2;\n")
    assert checksum(b"SELECT 1;") != checksum(b"SELECT 2;")


def test_split_statements_keeps_quoted_semicolons_and_drops_comments() -> None:
    script = (
        "-- header; it's only a note\n"
        "INSERT INTO t VALUES ('a;b', '-- not a comment');\n"
        "SELECT 1; -- trailing\n"
        "-- footer\n"
    )
    assert split_statements(script) == [
        "INSERT INTO t VALUES ('a;b', '-- not a comment')",
        "SELECT 1",
    ]


@pytest.mark.asyncio
async def test_commented_add_column_tolerates_existing_column(tmp_path: Path) -> None:
    db_path = tmp_path / "store.db"
    with sqlite3.connect(db_path) as conn:
        conn.execute("CREATE TABLE memory_tags (record_id TEXT, tag TEXT, weight REAL)")
    migrations_dir = tmp_path / "migrations"
    migrations_dir.mkdir()
    (migrations_dir / "0001_tag_weight.sql").write_text(
        "-- Tables built from today's models already carry weight.\n"
        "ALTER TABLE memory_tags ADD COLUMN weight REAL;\n"
        "UPDATE memory_tags SET weight = 1.0 WHERE weight IS NULL;\n",
        encoding="utf-8",
    )

    runner = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)

    assert await runner.apply_pending() == ["0001"]


def test_sqlite_file_from_url() -> None:
    assert sqlite_file_from_url("sqlite:///data/store.db?mode=rwc") == Path("data/store.db")
    assert sqlite_file_from_url("sqlite+aiosqlite:///:memory:") is None
    with pytest.raises(ValueError):
        sqlite_file_from_url("postgresql://localhost/store")


@pytest.mark.asyncio
async def test_init_db_upgrades_pre_vector_ready_database(tmp_path: Path) -> None:
    db_path = tmp_path / "legacy.db"
    _seed_pre_vector_ready_store(db_path)

    adapter = SQLiteAdapter(_sqlite_url(db_path))
    applied = await adapter.init_db()
    await adapter.close()

    assert applied == ["0001", "0002"]
    with sqlite3.connect(db_path) as conn:
        ready = dict(conn.execute("SELECT id, vector_ready FROM memories").fetchall())
    assert ready == {"with-vector": 1, "zero-vector": 0}
    assert {"memory_versions", "issued_ids", "memory_events"} <= _schema_names(
        db_path, "table"
    )
    assert {"ix_memories_agent_type", "ix_memory_events_created_at"} <= _schema_names(
        db_path, "index"
    )


@pytest.mark.asyncio
async def test_init_db_on_new_database_runs_each_migration_once(tmp_path: Path) -> None:
    db_path = tmp_path / "fresh.db"
    adapter = SQLiteAdapter(_sqlite_url(db_path))
    try:
        assert await adapter.init_db() == ["0001", "0002"]
        assert await adapter.init_db() == []
    finally:
        await adapter.close()

    with sqlite3.connect(db_path) as conn:
        versions = [v for (v,) in conn.execute("SELECT version FROM schema_migrations")]
    assert versions == ["0001", "0002"]


@pytest.mark.asyncio
async def test_two_processes_booting_together_apply_once(
    tmp_path: Path, tags_migrations: Path
) -> None:
    url = _sqlite_url(tmp_path / "shared.db")
    runners = [MigrationRunner(url, migrations_dir=tags_migrations) for _ in range(3)]

    batches = await asyncio.gather(*(runner.apply_pending() for runner in runners))

    assert sorted(batches) == [[], [], ["0001"]]


@pytest.mark.asyncio
async def test_held_migration_lock_times_out(
    tmp_path: Path, tags_migrations: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    lock_path = tmp_path / "held.lock"
    monkeypatch.setenv("MEMORY_MIGRATION_LOCK_FILE", str(lock_path))
    runner = MigrationRunner(
        _sqlite_url(tmp_path / "store.db"),
        migrations_dir=tags_migrations,
        lock_timeout_seconds=0.01,
    )

    with FileLock(str(lock_path), timeout=1):
        with pytest.raises(RuntimeError, match="timed out"):
            await runner.apply_pending()


def test_relative_lock_path_resolves_next_to_database(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    db_path = tmp_path / "dbdir" / "store.db"

    runner = MigrationRunner(_sqlite_url(db_path))

    monkeypatch.setenv("MEMORY_MIGRATION_LOCK_FILE", "locks/migrate.lock")
    assert runner.lock_file_path == db_path.parent / "locks/migrate.lock"

    monkeypatch.delenv("MEMORY_MIGRATION_LOCK_FILE")
    assert runner.lock_file_path == db_path.parent / "store.db.migrate.lock"


@pytest.mark.asyncio
async def test_in_memory_database_is_not_migrated(tags_migrations: Path) -> None:
    runner = MigrationRunner("sqlite+aiosqlite:///:memory:", migrations_dir=tags_migrations)

    assert await runner.apply_pending() == []
