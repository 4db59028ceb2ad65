"""
PostgreSQL storage backend.

Stores every object as a JSONB document in the objects table, keyed by uid
and unique by (api_group, kind, namespace, name). Labels are duplicated into
their own JSONB column so label selectors can use the @> operator and its
GIN index. Writes lock the target row for the duration of the transaction.
"""

import json
import logging
import uuid
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

import asyncpg

from composite.errors import (
    ConflictError,
    NotFoundError,
    ServiceUnavailableError,
    StorageError,
)
from composite.kinds import GroupVersionKind
from composite.storage import apply
from composite.storage.base import PatchType, StorageClient
from composite.storage.migrate import run_migrations

logger = logging.getLogger(__name__)


@contextmanager
def _storage_errors():
    """Translate driver failures into storage errors."""
    try:
        yield
    except (OSError, asyncpg.PostgresConnectionError, asyncpg.InterfaceError) as e:
        raise ServiceUnavailableError(f"storage unavailable: {e}") from e
    except asyncpg.PostgresError as e:
        raise StorageError(f"storage error: {e}") from e


class PostgresStorage(StorageClient):
    """Storage backend on top of an asyncpg connection pool."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        if self.pool is None:
            raise RuntimeError(
                "Storage not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply storage migrations to bring the schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Storage schema initialized")

    @staticmethod
    def _parse_body(row: asyncpg.Record) -> Dict[str, Any]:
        body = row["body"]
        return json.loads(body) if isinstance(body, str) else dict(body)

    # ==================== Reads ====================

    async def _get(
        self, gvk: GroupVersionKind, namespace: str, name: str
    ) -> Dict[str, Any]:
        self._ensure_connected()
        with _storage_errors():
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT body FROM objects
                    WHERE api_group = $1 AND kind = $2
                      AND namespace = $3 AND name = $4
                    """,
                    gvk.group,
                    gvk.kind,
                    namespace or "",
                    name,
                )

        if not row:
            raise NotFoundError(f'{gvk.kind} "{name}" not found')
        return self._parse_body(row)

    async def _list(
        self,
        gvk: GroupVersionKind,
        namespace: Optional[str],
        label_selector: Dict[str, str],
    ) -> List[Dict[str, Any]]:
        self._ensure_connected()
        query = "SELECT body FROM objects WHERE api_group = $1 AND kind = $2"
        params: List[Any] = [gvk.group, gvk.kind]

        if namespace is not None:
            params.append(namespace)
            query += f" AND namespace = ${len(params)}"

        if label_selector:
            params.append(json.dumps(label_selector))
            query += f" AND labels @> ${len(params)}::jsonb"

        query += " ORDER BY namespace, name"

        with _storage_errors():
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(query, *params)
        return [self._parse_body(row) for row in rows]

    # ==================== Writes ====================

    async def _write(
        self,
        verb: str,
        data: Dict[str, Any],
        dry_run: bool,
        compute,
    ) -> Dict[str, Any]:
        """
        Run a read-modify-write of one object in a transaction.

        compute receives the locked live object (or None) and returns the
        new object, or raises to abort.
        """
        self._ensure_connected()
        group, kind, namespace, name = apply.object_key(data)

        with _storage_errors():
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        """
                        SELECT body FROM objects
                        WHERE api_group = $1 AND kind = $2
                          AND namespace = $3 AND name = $4
                        FOR UPDATE
                        """,
                        group,
                        kind,
                        namespace,
                        name,
                    )
                    live = self._parse_body(row) if row else None
                    new = compute(live)

                    if live is not None and not apply.has_changes(live, new):
                        return live

                    uid = (live or {}).get("metadata", {}).get("uid") or str(
                        uuid.uuid4()
                    )
                    version = await conn.fetchval(
                        "SELECT nextval('object_resource_version_seq')"
                    )
                    apply.stamp(new, uid, str(version))

                    if dry_run:
                        logger.debug(f"Dry run: {verb} {apply.describe(new)}")
                        return new

                    labels = (new.get("metadata") or {}).get("labels") or {}
                    await conn.execute(
                        """
                        INSERT INTO objects (
                            uid, api_group, kind, namespace, name,
                            labels, body, resource_version
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                        ON CONFLICT (uid) DO UPDATE
                        SET labels = EXCLUDED.labels,
                            body = EXCLUDED.body,
                            resource_version = EXCLUDED.resource_version,
                            updated_at = NOW()
                        """,
                        uuid.UUID(uid),
                        group,
                        kind,
                        namespace,
                        name,
                        json.dumps(labels),
                        json.dumps(new),
                        version,
                    )

        logger.debug(f"{verb} {apply.describe(new)}")
        return new

    async def _create(self, data: Dict[str, Any], dry_run: bool) -> Dict[str, Any]:
        apply.validate(data)

        def compute(live):
            if live is not None:
                raise ConflictError(f"{apply.describe(data)} already exists")
            return apply.update_object({"metadata": {}}, data, "create")

        return await self._write("create", data, dry_run, compute)

    async def _update(
        self, data: Dict[str, Any], field_manager: str, dry_run: bool
    ) -> Dict[str, Any]:
        apply.validate(data)

        def compute(live):
            if live is None:
                raise NotFoundError(f"{apply.describe(data)} not found")
            return apply.update_object(live, data, field_manager)

        return await self._write("update", data, dry_run, compute)

    async def _patch(
        self,
        data: Dict[str, Any],
        patch_type: PatchType,
        field_manager: str,
        force: bool,
        dry_run: bool,
        body: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        def compute(live):
            if patch_type is PatchType.APPLY:
                return apply.apply_configuration(live, data, field_manager, force=force)
            if live is None:
                raise NotFoundError(f"{apply.describe(data)} not found")
            patched = apply.merge_patch(live, body or {})
            return apply.update_object(live, patched, field_manager)

        return await self._write(patch_type.name.lower(), data, dry_run, compute)

    async def _delete(
        self, gvk: GroupVersionKind, namespace: str, name: str, dry_run: bool
    ) -> None:
        self._ensure_connected()
        if dry_run:
            query = """
                SELECT 1 FROM objects
                WHERE api_group = $1 AND kind = $2 AND namespace = $3 AND name = $4
            """
        else:
            query = """
                DELETE FROM objects
                WHERE api_group = $1 AND kind = $2 AND namespace = $3 AND name = $4
                RETURNING uid
            """

        with _storage_errors():
            async with self.pool.acquire() as conn:
                found = await conn.fetchval(
                    query, gvk.group, gvk.kind, namespace or "", name
                )

        if found is None:
            raise NotFoundError(f'{gvk.kind} "{name}" not found')
        if not dry_run:
            logger.debug(f"delete {gvk.kind} {namespace}/{name}")
