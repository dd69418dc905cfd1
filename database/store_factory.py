"""
Store selection from ``database.store_backend``:

    sql      SqlContextStore on database.url (shared by every worker)
    memory   InMemoryContextStore (one process, nothing persisted)

The SQL backend is imported only when chosen, so the memory backend
runs without a database driver installed.
"""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import DatabaseConfig
from database.store_base import BaseContextStore

logger = structlog.get_logger()

BACKENDS = ("sql", "memory")

_instance: Optional[BaseContextStore] = None


def create_store(config: Optional[DatabaseConfig] = None) -> BaseContextStore:
    """Build the configured backend once; later calls return the same store."""
    global _instance
    if _instance is not None:
        return _instance

    backend = (config or DatabaseConfig()).store_backend
    if backend not in BACKENDS:
        raise ValueError(f"Unknown store backend '{backend}', expected one of {BACKENDS}")

    if backend == "sql":
        from database.store import SqlContextStore
        _instance = SqlContextStore()
    else:
        from database.store_memory import InMemoryContextStore
        _instance = InMemoryContextStore()

    logger.info("store_created", backend=backend)
    return _instance


def get_store() -> BaseContextStore:
    return _instance if _instance is not None else create_store()


def reset_store() -> None:
    global _instance
    _instance = None
