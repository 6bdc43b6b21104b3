"""
Async engine and session scope for the dispatch tables.

PostgreSQL is the production backend: queue claiming relies on
FOR UPDATE SKIP LOCKED, so any number of dispatcher processes can share it.
SQLite is for local runs and tests; it serialises writers with a
database-level lock, so connections wait on that lock instead of failing.

  postgresql:// | postgres://  → postgresql+asyncpg://   (asyncpg)
  sqlite://                    → sqlite+aiosqlite://     (aiosqlite)

Usage:
    await init_db()                    # once at startup
    async with get_session() as db:    # commit on success, rollback on error
        result = await db.execute(...)
    await close_db()                   # at shutdown
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_SCHEMES = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}

# Seconds a SQLite connection waits for the write lock
SQLITE_LOCK_TIMEOUT = 30

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _to_async_url(db_url: str) -> str:
    """Swap a plain scheme for its async driver; anything else passes through."""
    scheme, sep, rest = db_url.partition("://")
    if not sep or scheme not in _ASYNC_SCHEMES:
        return db_url
    return f"{_ASYNC_SCHEMES[scheme]}://{rest}"


def _engine_kwargs(db_url: str, echo: bool = False) -> dict:
    if db_url.startswith("sqlite"):
        return {
            "echo": echo,
            "connect_args": {"check_same_thread": False, "timeout": SQLITE_LOCK_TIMEOUT},
        }

    # Each dispatcher sweep and each inbound event holds a connection briefly
    return {
        "echo": echo,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def redacted_url(engine: AsyncEngine) -> str:
    """Engine URL without credentials, for logs and CLI output."""
    return engine.url.render_as_string(hide_password=True)


def create_engine_for(db_url: str, echo: bool = False) -> AsyncEngine:
    url = _to_async_url(db_url)
    return create_async_engine(url, **_engine_kwargs(url, echo))


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    """The process-wide engine built from settings.database.url."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine_for(settings.database.url, echo=settings.debug)
        logger.info("database_engine_created",
                    dialect=_engine.dialect.name,
                    url=redacted_url(_engine))
    return _engine


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One transaction: commit when the block exits cleanly, roll back otherwise."""
    async with _get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db() -> None:
    engine = get_engine()
    await create_tables(engine)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables.keys()))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("database_closed")
