"""
Configuration module for the composite reconciler.

Loads configuration from environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from composite.state import DEFAULT_DOMAIN

STORAGE_BACKENDS = ("memory", "postgres", "http")


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class ReconcilerConfig:
    """Settings of the reconciliation engine itself."""

    domain: str = DEFAULT_DOMAIN
    field_manager: str = "composite-reconciler"
    dry_run: bool = False

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            domain=os.getenv("COMPOSITE_DOMAIN", DEFAULT_DOMAIN),
            field_manager=os.getenv("COMPOSITE_FIELD_MANAGER", "composite-reconciler"),
            dry_run=_env_bool("COMPOSITE_DRY_RUN"),
        )


@dataclass
class DatabaseConfig:
    """PostgreSQL storage backend configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "composite"
    user: str = "composite"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 5
    max_pool_size: int = 20

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "composite"),
            user=os.getenv("DB_USER", "composite"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
        )


@dataclass
class StorageConfig:
    """Selects and configures the storage backend."""

    backend: str = "memory"
    api_url: str = "http://localhost:8080"
    api_token: str = field(default="", repr=False)
    request_timeout: int = 30

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        backend = os.getenv("STORAGE_BACKEND", "memory").lower()
        if backend not in STORAGE_BACKENDS:
            raise ValueError(
                f"STORAGE_BACKEND must be one of {', '.join(STORAGE_BACKENDS)}, "
                f"got {backend!r}"
            )

        return cls(
            backend=backend,
            api_url=os.getenv("STORAGE_API_URL", "http://localhost:8080"),
            api_token=os.getenv("STORAGE_API_TOKEN", ""),
            request_timeout=int(os.getenv("STORAGE_REQUEST_TIMEOUT", "30")),
        )


@dataclass
class Config:
    """Main configuration object."""

    reconciler: ReconcilerConfig
    storage: StorageConfig
    database: DatabaseConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        storage = StorageConfig.from_env()
        database = (
            DatabaseConfig.from_env()
            if storage.backend == "postgres"
            else DatabaseConfig()
        )
        return cls(
            reconciler=ReconcilerConfig.from_env(),
            storage=storage,
            database=database,
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            reconciler=ReconcilerConfig(),
            storage=StorageConfig(),
            database=DatabaseConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
