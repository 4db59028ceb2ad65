"""Unit tests for storage/migrate.py - Storage schema migrations."""

import hashlib
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, call

import pytest

from composite.storage import migrate
from composite.storage.migrate import (
    MIGRATION_LOCK_KEY,
    Migration,
    SchemaVersionError,
    load_migrations,
    pending_migrations,
    run_migrations,
)

LOCK = call("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_KEY)
UNLOCK = call("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_KEY)


def checksum(sql):
    return hashlib.sha256(sql.encode("utf-8")).hexdigest()


def mock_pool(applied=None):
    """Pool whose connection reports the given {version: sql} as applied."""
    conn = AsyncMock()
    conn.fetch = AsyncMock(
        return_value=[
            {"version": version, "checksum": checksum(sql)}
            for version, sql in (applied or {}).items()
        ]
    )
    transaction = AsyncMock()
    transaction.__aenter__ = AsyncMock(return_value=transaction)
    transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=transaction)

    pool = AsyncMock()

    @asynccontextmanager
    async def acquire():
        yield conn

    pool.acquire = acquire
    return pool, conn


@pytest.fixture
def migrations_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)
    return tmp_path


class TestBundledMigrations:
    """Tests for the migrations shipped with the package."""

    def test_objects_table_migration_exists(self):
        migrations = load_migrations()

        assert str(migrations[0]) == "001_create_objects"
        assert "CREATE TABLE IF NOT EXISTS objects" in migrations[0].sql
        assert "object_resource_version_seq" in migrations[0].sql

    def test_bundled_migrations_are_consistent(self):
        migrations = load_migrations()
        applied = {m.version: m.checksum for m in migrations}

        assert pending_migrations(migrations, applied) == []


class TestLoadMigrations:
    """Tests for load_migrations()."""

    def test_sorted_by_version(self, migrations_dir):
        (migrations_dir / "010_add_index.sql").write_text("CREATE INDEX i ON t(id);")
        (migrations_dir / "002_initial.sql").write_text("CREATE TABLE t (id INT);")

        migrations = load_migrations()

        assert [(m.version, m.name) for m in migrations] == [
            (2, "initial"),
            (10, "add_index"),
        ]
        assert migrations[0].sql == "CREATE TABLE t (id INT);"

    def test_ignores_other_entries(self, migrations_dir):
        (migrations_dir / "001_valid.sql").write_text("SELECT 1;")
        (migrations_dir / "002_notes.txt").write_text("not a migration")
        (migrations_dir / "schema.sql").write_text("SELECT 1;")
        (migrations_dir / "4_short.sql").write_text("SELECT 1;")
        (migrations_dir / "005_dir.sql").mkdir()

        assert [m.version for m in load_migrations()] == [1]

    def test_explicit_directory(self, tmp_path):
        (tmp_path / "001_a.sql").write_text("SELECT 1;")

        assert [str(m) for m in load_migrations(tmp_path)] == ["001_a"]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_migrations(tmp_path / "missing")

    def test_duplicate_version(self, migrations_dir):
        (migrations_dir / "001_a.sql").write_text("SELECT 1;")
        (migrations_dir / "001_b.sql").write_text("SELECT 2;")

        with pytest.raises(SchemaVersionError, match="share a version"):
            load_migrations()


class TestPendingMigrations:
    """Tests for pending_migrations()."""

    MIGRATIONS = [
        Migration(1, "a", "SELECT 1;"),
        Migration(2, "b", "SELECT 2;"),
        Migration(3, "c", "SELECT 3;"),
    ]

    def test_returns_unapplied_in_order(self):
        applied = {2: checksum("SELECT 2;")}

        pending = pending_migrations(self.MIGRATIONS, applied)

        assert [m.version for m in pending] == [1, 3]

    def test_empty_database(self):
        assert pending_migrations(self.MIGRATIONS, {}) == self.MIGRATIONS

    def test_database_ahead_of_release(self):
        applied = {1: checksum("SELECT 1;"), 4: "0" * 64}

        with pytest.raises(SchemaVersionError, match="004"):
            pending_migrations(self.MIGRATIONS, applied)

    def test_changed_migration(self):
        applied = {1: checksum("SELECT 'edited';")}

        with pytest.raises(SchemaVersionError, match="001_a has changed"):
            pending_migrations(self.MIGRATIONS, applied)


@pytest.mark.asyncio
class TestRunMigrations:
    """Tests for run_migrations()."""

    async def test_applies_pending_under_lock(self, migrations_dir):
        (migrations_dir / "001_a.sql").write_text("SELECT 1;")
        (migrations_dir / "002_b.sql").write_text("SELECT 2;")
        pool, conn = mock_pool(applied={1: "SELECT 1;"})

        assert await run_migrations(pool) == 1

        calls = conn.execute.call_args_list
        assert calls[0] == LOCK
        assert calls[-1] == UNLOCK
        assert call("SELECT 2;") in calls
        assert call("SELECT 1;") not in calls
        insert = calls[-2]
        assert "INSERT INTO composite_schema_history" in insert.args[0]
        assert insert.args[1:] == (2, "b", checksum("SELECT 2;"))
        conn.transaction.assert_called_once()

    async def test_creates_history_table(self, migrations_dir):
        pool, conn = mock_pool()

        assert await run_migrations(pool) == 0

        sql = conn.execute.call_args_list[1].args[0]
        assert "CREATE TABLE IF NOT EXISTS composite_schema_history" in sql

    async def test_up_to_date(self, migrations_dir):
        (migrations_dir / "001_a.sql").write_text("SELECT 1;")
        pool, conn = mock_pool(applied={1: "SELECT 1;"})

        assert await run_migrations(pool) == 0
        conn.transaction.assert_not_called()

    async def test_mismatch_applies_nothing_and_unlocks(self, migrations_dir):
        (migrations_dir / "001_a.sql").write_text("SELECT 1;")
        (migrations_dir / "002_b.sql").write_text("SELECT 2;")
        pool, conn = mock_pool(applied={1: "SELECT 'other';"})

        with pytest.raises(SchemaVersionError):
            await run_migrations(pool)

        conn.transaction.assert_not_called()
        assert conn.execute.call_args_list[-1] == UNLOCK

    async def test_failed_migration_propagates_and_unlocks(self, migrations_dir):
        (migrations_dir / "001_bad.sql").write_text("NOT SQL;")
        pool, conn = mock_pool()

        async def execute(sql, *args):
            if sql == "NOT SQL;":
                raise Exception("syntax error")

        conn.execute = AsyncMock(side_effect=execute)

        with pytest.raises(Exception, match="syntax error"):
            await run_migrations(pool)

        assert conn.execute.call_args_list[-1] == UNLOCK
