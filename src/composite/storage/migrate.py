"""
Schema migrations for the PostgreSQL storage backend.

The objects schema is versioned by the SQL files bundled in migrations/.
Migrators serialize on a PostgreSQL advisory lock, so reconcilers starting
together against one database apply each file once. Every applied file is
recorded in composite_schema_history with a checksum. A database holding a
version this release does not ship, or a different revision of a file it
does ship, is refused before anything is written.
"""

import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_(.+)\.sql$")

# Advisory lock key shared by every migrator of the objects schema.
MIGRATION_LOCK_KEY = 0x636F6D70

CREATE_HISTORY_TABLE = """
    CREATE TABLE IF NOT EXISTS composite_schema_history (
        version INTEGER PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        checksum CHAR(64) NOT NULL,
        applied_at TIMESTAMP NOT NULL DEFAULT NOW()
    )
"""


class SchemaVersionError(Exception):
    """Raised when the database schema does not match the bundled migrations."""


@dataclass(frozen=True)
class Migration:
    """One bundled SQL migration."""

    version: int
    name: str
    sql: str

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.sql.encode("utf-8")).hexdigest()

    def __str__(self) -> str:
        return f"{self.version:03d}_{self.name}"


def load_migrations(directory: Optional[Path] = None) -> List[Migration]:
    """
    Read the migration files of directory in version order.

    Args:
        directory: Defaults to the migrations bundled with this package.

    Raises:
        FileNotFoundError: If the directory doesn't exist.
        SchemaVersionError: If two files share a version.
    """
    directory = directory or MIGRATIONS_DIR
    if not directory.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {directory}")

    by_version: Dict[int, Migration] = {}
    for entry in directory.iterdir():
        match = MIGRATION_PATTERN.match(entry.name)
        if not match or not entry.is_file():
            continue

        migration = Migration(
            version=int(match.group(1)),
            name=match.group(2),
            sql=entry.read_text(encoding="utf-8"),
        )
        if migration.version in by_version:
            raise SchemaVersionError(
                f"Migrations {by_version[migration.version]} and {migration} "
                f"share a version"
            )
        by_version[migration.version] = migration

    return [by_version[version] for version in sorted(by_version)]


def pending_migrations(
    migrations: Sequence[Migration], applied: Dict[int, str]
) -> List[Migration]:
    """
    Return the migrations not yet applied, in version order.

    Args:
        migrations: Every bundled migration.
        applied: Checksums of the applied migrations, by version.

    Raises:
        SchemaVersionError: If the database is ahead of the bundled
            migrations, or an applied migration has changed since.
    """
    known = {migration.version: migration for migration in migrations}

    unknown = sorted(set(applied) - set(known))
    if unknown:
        raise SchemaVersionError(
            f"Storage schema has version {unknown[-1]:03d} applied, which this "
            f"release does not know"
        )

    for version, checksum in applied.items():
        if known[version].checksum != checksum:
            raise SchemaVersionError(
                f"Migration {known[version]} has changed since it was applied"
            )

    return [migration for migration in migrations if migration.version not in applied]


async def run_migrations(pool: asyncpg.Pool, directory: Optional[Path] = None) -> int:
    """
    Bring the objects schema up to date.

    The advisory lock is held on one connection for the whole run. Each
    migration commits together with its history row.

    Returns:
        Number of migrations applied.

    Raises:
        SchemaVersionError: If the database does not match the bundled
            migrations. Nothing is applied.
        asyncpg.PostgresError: If a migration fails. The failing migration
            is rolled back; earlier ones stay applied.
    """
    migrations = load_migrations(directory)

    async with pool.acquire() as conn:
        await conn.execute("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_KEY)
        try:
            await conn.execute(CREATE_HISTORY_TABLE)
            rows = await conn.fetch(
                "SELECT version, checksum FROM composite_schema_history"
            )
            pending = pending_migrations(
                migrations, {row["version"]: row["checksum"] for row in rows}
            )

            for migration in pending:
                async with conn.transaction():
                    await conn.execute(migration.sql)
                    await conn.execute(
                        """
                        INSERT INTO composite_schema_history (version, name, checksum)
                        VALUES ($1, $2, $3)
                        """,
                        migration.version,
                        migration.name,
                        migration.checksum,
                    )
                logger.info(f"Applied storage migration {migration}")
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_KEY)

    if not pending:
        logger.info("Storage schema is up to date")
    return len(pending)
