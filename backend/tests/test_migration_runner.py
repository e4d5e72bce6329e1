import sqlite3
from pathlib import Path

import pytest
from filelock import FileLock

from db.migration_runner import MigrationRunner, split_sql_statements, sqlite_path_from_url
from db.sqlite_client import SQLiteClient


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


def _write_migration(migrations_dir: Path, name: str, sql: str) -> Path:
    migrations_dir.mkdir(parents=True, exist_ok=True)
    path = migrations_dir / name
    path.write_text(sql, encoding="utf-8")
    return path


@pytest.mark.asyncio
async def test_migration_runner_applies_and_tracks_versions(tmp_path: Path) -> None:
    db_path = tmp_path / "flywheel.db"
    migrations_dir = tmp_path / "migrations"
    _write_migration(
        migrations_dir,
        "0001_test.sql",
        "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY);",
    )
    _write_migration(migrations_dir, "notes.sql", "this is not a migration;")

    runner = MigrationRunner(database_url=_sqlite_url(db_path), migrations_dir=migrations_dir)
    assert [m.version for m in runner.discover()] == ["0001"]

    assert await runner.apply_pending() == ["0001"]
    assert await runner.apply_pending() == []

    with sqlite3.connect(db_path) as conn:
        rows = conn.execute("SELECT version, checksum FROM schema_migrations").fetchall()
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
    assert [row[0] for row in rows] == ["0001"]
    assert rows[0][1]
    assert "test_table" in tables


@pytest.mark.asyncio
async def test_migration_runner_rejects_edited_migration(tmp_path: Path) -> None:
    db_path = tmp_path / "flywheel.db"
    migrations_dir = tmp_path / "migrations"
    path = _write_migration(
        migrations_dir, "0001_test.sql", "CREATE TABLE IF NOT EXISTS a (id INTEGER);"
    )
    runner = MigrationRunner(database_url=_sqlite_url(db_path), migrations_dir=migrations_dir)
    await runner.apply_pending()

    path.write_text("CREATE TABLE IF NOT EXISTS b (id INTEGER);", encoding="utf-8")

    with pytest.raises(RuntimeError, match="Checksum mismatch"):
        await runner.apply_pending()


@pytest.mark.asyncio
async def test_migration_runner_tolerates_duplicate_add_column(tmp_path: Path) -> None:
    db_path = tmp_path / "flywheel.db"
    with sqlite3.connect(db_path) as conn:
        conn.execute("CREATE TABLE nudges (id TEXT PRIMARY KEY, shown_at TEXT)")
        conn.commit()
    migrations_dir = tmp_path / "migrations"
    _write_migration(
        migrations_dir, "0001_add_shown_at.sql", "ALTER TABLE nudges ADD COLUMN shown_at TEXT;"
    )

    runner = MigrationRunner(database_url=_sqlite_url(db_path), migrations_dir=migrations_dir)

    assert await runner.apply_pending() == ["0001"]


@pytest.mark.asyncio
async def test_migration_runner_times_out_when_lock_is_held(tmp_path: Path) -> None:
    db_path = tmp_path / "flywheel.db"
    migrations_dir = tmp_path / "migrations"
    _write_migration(migrations_dir, "0001_test.sql", "CREATE TABLE t (id INTEGER);")
    lock_path = tmp_path / "migrate.lock"

    runner = MigrationRunner(
        database_url=_sqlite_url(db_path),
        migrations_dir=migrations_dir,
        lock_file_path=lock_path,
        lock_timeout_seconds=0.05,
    )

    with FileLock(str(lock_path)):
        with pytest.raises(RuntimeError, match="Timed out"):
            await runner.apply_pending()


def test_split_sql_statements_keeps_trigger_bodies_whole() -> None:
    script = """
    -- leading comment
    CREATE TABLE t (id INTEGER, note TEXT DEFAULT 'a;b');
    CREATE TRIGGER trg_t_no_delete
    BEFORE DELETE ON t
    BEGIN
        SELECT RAISE(ABORT, 't is append-only');
    END;
    -- trailing comment
    """

    statements = split_sql_statements(script)

    assert len(statements) == 2
    assert statements[0].endswith("DEFAULT 'a;b')")
    assert statements[1].rstrip().endswith("END")
    assert "RAISE(ABORT" in statements[1]


def test_split_sql_statements_ignores_quotes_and_semicolons_in_comments() -> None:
    script = """
    -- Counts nudges since the start of the user's day.
    CREATE INDEX idx_a ON t (a);
    /* the owner's index; kept separate */
    CREATE INDEX idx_b ON t (b);
    CREATE INDEX idx_c ON t (c); -- it's the last one
    """

    statements = split_sql_statements(script)

    assert len(statements) == 3
    assert statements[0].endswith("CREATE INDEX idx_a ON t (a)")
    assert statements[1].endswith("CREATE INDEX idx_b ON t (b)")
    assert statements[2] == "CREATE INDEX idx_c ON t (c)"


def test_bundled_migrations_split_into_single_statements() -> None:
    migrations_dir = Path(__file__).resolve().parents[1] / "db" / "migrations"
    indexes = split_sql_statements(
        (migrations_dir / "0001_claim_and_cadence_indexes.sql").read_text(encoding="utf-8")
    )

    assert len(indexes) == 3
    for statement in indexes:
        assert statement.count("CREATE INDEX") == 1


def test_sqlite_path_from_url() -> None:
    assert sqlite_path_from_url("sqlite+aiosqlite:///:memory:") is None
    assert sqlite_path_from_url("sqlite:////tmp/x.db") == Path("/tmp/x.db")
    with pytest.raises(ValueError):
        sqlite_path_from_url("postgresql://localhost/db")


@pytest.mark.asyncio
async def test_init_db_makes_memory_ledger_append_only(tmp_path: Path) -> None:
    db_path = tmp_path / "flywheel.db"
    client = SQLiteClient(_sqlite_url(db_path))
    await client.init_db()
    try:
        block = await client.create_block(
            user_id="user-a",
            block_type="journal_entry",
            source_feature="journal",
            content="Slept badly before the interview.",
            privacy_level="ai-only",
        )
        assert await client.delete_block(user_id="user-a", block_id=block["id"])
        ledger = await client.get_ledger(user_id="user-a", block_id=block["id"])
        assert [entry["operation"] for entry in ledger] == ["create", "delete"]
    finally:
        await client.close()

    with sqlite3.connect(db_path) as conn:
        versions = [row[0] for row in conn.execute("SELECT version FROM schema_migrations")]
        assert "0002" in versions
        with pytest.raises(sqlite3.DatabaseError, match="append-only"):
            conn.execute("DELETE FROM memory_ledger")
        with pytest.raises(sqlite3.DatabaseError, match="append-only"):
            conn.execute("UPDATE memory_ledger SET actor = 'someone'")
