"""
Store Factory — One DispatchStore per process, chosen by `database.store_backend`.

    sql     claims, queue and rate windows live in database.url; required
            whenever more than one process dispatches or receives events
    memory  process-local dicts for development and tests; every primitive
            completes without yielding, so it is atomic within one event loop

Usage:
    from database.store_factory import create_store, get_store
    store = create_store(settings.database)          # or {"store_backend": "sql"}
    store = get_store()                              # the same instance later
"""
from __future__ import annotations

import structlog
from typing import Any, Optional, Union

from config.settings import DatabaseConfig
from database.store_base import DispatchStore

logger = structlog.get_logger()

BACKENDS = ("sql", "memory")

_instance: Optional[DispatchStore] = None


def _backend_name(config: Union[DatabaseConfig, dict[str, Any], None]) -> str:
    if isinstance(config, DatabaseConfig):
        return config.store_backend
    return (config or {}).get("store_backend", "memory")


def create_store(config: Union[DatabaseConfig, dict[str, Any], None] = None) -> DispatchStore:
    """Build the store on first call; later calls return the existing instance."""
    global _instance
    if _instance is not None:
        return _instance

    backend = _backend_name(config)
    if backend not in BACKENDS:
        logger.warning("unknown_store_backend", backend=backend, fallback="memory")
        backend = "memory"

    if backend == "sql":
        from database.store import SqlDispatchStore
        _instance = SqlDispatchStore()
    else:
        from database.store_memory import InMemoryDispatchStore
        _instance = InMemoryDispatchStore()

    logger.info("store_created", backend=backend)
    return _instance


def get_store() -> DispatchStore:
    global _instance
    if _instance is None:
        _instance = create_store()
    return _instance


def reset_store() -> None:
    """Forget the singleton (tests)."""
    global _instance
    _instance = None
