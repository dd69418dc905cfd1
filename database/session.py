"""
Engine and session scope for SqlContextStore.

Settings carry plain database URLs; each is mapped onto its asyncio
driver before the engine is built:

    postgresql:// or postgres://   asyncpg    (extra: postgres)
    mysql://                       aiomysql   (extra: mysql)
    sqlite://                      aiosqlite

One engine per process. Every store call runs in its own short
transaction via get_session(); the lock compare-and-set depends on that.

    await init_db()                  # create tables, at startup
    async with get_session() as db:
        await db.execute(stmt)
    await close_db()                 # dispose the pool, at shutdown
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from config.settings import DatabaseConfig, get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None


def async_url(url: str) -> str:
    """Swap a sync scheme for its asyncio driver; async URLs pass through."""
    scheme, sep, rest = url.partition("://")
    if not sep:
        return url
    return f"{_ASYNC_DRIVERS.get(scheme, scheme)}://{rest}"


def _pool_options(url: str, config: DatabaseConfig) -> dict:
    if url.startswith("sqlite"):
        # aiosqlite runs the connection on its own thread
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_size": config.pool_size,
        "max_overflow": config.max_overflow,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def get_engine(url: str = None) -> AsyncEngine:
    global _engine
    if _engine is not None:
        return _engine

    config = get_settings().database
    target = async_url(url or config.url)
    _engine = create_async_engine(target, echo=config.echo, **_pool_options(target, config))
    logger.info("database_engine_created", dialect=_engine.dialect.name,
                database=make_url(target).database)
    return _engine


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """One transaction: committed on exit, rolled back on error."""
    global _sessions
    if _sessions is None:
        _sessions = async_sessionmaker(get_engine(), expire_on_commit=False)

    async with _sessions() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(url: str = None) -> None:
    """Create any missing tables."""
    engine = get_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _sessions
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _sessions = None
    logger.info("database_closed")
