"""
Database layer — Multi-backend persistence for the dispatch core.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  tenant = await store.get_tenant("t1")
"""
from database.models import (
    Base, TenantRow, TenantSettingsRow, ProductMappingRow,
    ReplyClaimRow, OutboundQueueRow, RateLimitWindowRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import DispatchStore
from database.store import SqlDispatchStore
from database.store_memory import InMemoryDispatchStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "TenantRow", "TenantSettingsRow", "ProductMappingRow",
    "ReplyClaimRow", "OutboundQueueRow", "RateLimitWindowRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "DispatchStore",
    # Store backends
    "SqlDispatchStore", "InMemoryDispatchStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
