"""
Async engine and session scope for the SQL store.

Plain URLs from settings are mapped to their async drivers:
  postgresql:// or postgres://  asyncpg
  mysql:// or mysql+pymysql://  aiomysql
  sqlite://                     aiosqlite

One engine per process. ``close_db`` disposes it so a later ``init_db`` can
point somewhere else (tests switch between throwaway SQLite files this way).
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from config.settings import get_settings
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


def _to_async_url(db_url: str) -> str:
    scheme, sep, rest = db_url.partition("://")
    if not sep or scheme not in _ASYNC_DRIVERS:
        return db_url
    return f"{_ASYNC_DRIVERS[scheme]}://{rest}"


def _engine_options(async_url: str) -> dict:
    settings = get_settings()
    options = {"echo": settings.debug}
    if async_url.startswith("sqlite"):
        return options
    db = settings.database
    return {
        **options,
        "pool_size": db.pool_size,
        "max_overflow": db.max_overflow,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def get_engine(db_url: str = None) -> AsyncEngine:
    """The process engine; db_url only matters when no engine exists yet."""
    global _engine, _sessions
    if _engine is None:
        url = _to_async_url(db_url or get_settings().database.url)
        _engine = create_async_engine(url, **_engine_options(url))
        _sessions = async_sessionmaker(_engine, expire_on_commit=False)
        logger.info("database_engine_created",
                    dialect=_engine.dialect.name,
                    url=make_url(url).render_as_string(hide_password=True))
    return _engine


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Transaction scope: commit on clean exit, roll back and re-raise on error."""
    get_engine()
    async with _sessions() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(db_url: str = None) -> None:
    """Create any missing tables."""
    engine = get_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _sessions
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _sessions = None
    logger.info("database_closed")
