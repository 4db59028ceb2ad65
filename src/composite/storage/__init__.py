"""
Storage backends for composite reconciliation.

The reconciler depends only on StorageClient. MemoryStorage, PostgresStorage
and HttpStorage are interchangeable implementations of it.
"""

from composite.config import get_config
from composite.storage.base import PatchType, StorageClient
from composite.storage.http import HttpStorage
from composite.storage.memory import MemoryStorage, WriteRecord
from composite.storage.postgres import PostgresStorage

__all__ = [
    "PatchType",
    "StorageClient",
    "HttpStorage",
    "MemoryStorage",
    "PostgresStorage",
    "WriteRecord",
    "create_storage",
]


async def create_storage(config=None) -> StorageClient:
    """
    Build and connect the storage backend selected by configuration.

    Args:
        config: A Config instance. Defaults to the global configuration.
    """
    config = config or get_config()
    backend = config.storage.backend

    if backend == "memory":
        return MemoryStorage()

    if backend == "postgres":
        db = config.database
        storage = PostgresStorage(
            host=db.host,
            port=db.port,
            database=db.database,
            user=db.user,
            password=db.password,
            min_pool_size=db.min_pool_size,
            max_pool_size=db.max_pool_size,
        )
        await storage.connect()
        await storage.initialize_schema()
        return storage

    if backend == "http":
        storage = HttpStorage(
            base_url=config.storage.api_url,
            token=config.storage.api_token,
            timeout=config.storage.request_timeout,
        )
        await storage.connect()
        return storage

    raise ValueError(f"Unknown storage backend: {backend}")
