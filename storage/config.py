"""Storage configuration for the movement core.

Selects the store backend from the environment:

    MOVEMENT_ENGINE_STORAGE_BACKEND: "memory" or "sqlite" (default: "memory")
    MOVEMENT_ENGINE_DATABASE_URI: SQLite database path (default: "instance/movements.db")
"""

import os
from enum import Enum

from .memory_repo import MemoryStore
from .repository import Store
from .sqlite_repo import SQLiteStore


class StorageBackend(Enum):
    """Available storage backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


DEFAULT_DATABASE_URI = "instance/movements.db"


def get_storage_backend() -> StorageBackend:
    """Get configured storage backend from environment."""
    backend_str = os.environ.get("MOVEMENT_ENGINE_STORAGE_BACKEND", "memory").lower()
    if backend_str == "sqlite":
        return StorageBackend.SQLITE
    return StorageBackend.MEMORY


def get_database_uri() -> str:
    """Get configured database URI from environment."""
    return os.environ.get("MOVEMENT_ENGINE_DATABASE_URI", DEFAULT_DATABASE_URI)


def get_store(backend: StorageBackend | None = None) -> Store:
    """Factory function to create the record store.

    Args:
        backend: Storage backend to use. If None, uses environment config.

    Returns:
        Store instance
    """
    if backend is None:
        backend = get_storage_backend()

    if backend == StorageBackend.SQLITE:
        return SQLiteStore(get_database_uri())
    return MemoryStore()
