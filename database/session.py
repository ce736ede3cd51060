"""
Async database access for the SQL flow store — PostgreSQL, SQLite.

A Database owns one engine and its session factory, built from a
DatabaseConfig. The SQL store takes a Database explicitly; the module-level
helpers keep a process-wide instance built from settings for the API and
the migration script.

Driver mapping:
  postgresql://  → postgresql+asyncpg://     (requires asyncpg)
  sqlite://      → sqlite+aiosqlite://       (requires aiosqlite)

Usage:
    db = Database(DatabaseConfig(url="sqlite:///./flowbot.db"))
    await db.create_tables()
    async with db.session() as s:
        await s.execute(...)
    await db.dispose()
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import DatabaseConfig, get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = [
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("sqlite://", "sqlite+aiosqlite://"),
]


def _to_async_url(db_url: str) -> str:
    """Convert a sync database URL to its async driver equivalent."""
    for sync_prefix, async_prefix in _ASYNC_DRIVERS:
        if db_url.startswith(sync_prefix):
            return db_url.replace(sync_prefix, async_prefix, 1)
    return db_url


def _engine_kwargs(url: str, config: DatabaseConfig) -> dict:
    if url.startswith("sqlite"):
        # aiosqlite runs on its own thread; pooling options do not apply
        return {"echo": config.echo, "connect_args": {"check_same_thread": False}}
    return {
        "echo": config.echo,
        "pool_size": config.pool_size,
        "max_overflow": config.max_overflow,
        "pool_recycle": config.pool_recycle,
        "pool_pre_ping": True,
    }


class Database:
    """One engine plus a transactional session scope over it."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.url = _to_async_url(config.url)
        self.engine: AsyncEngine = create_async_engine(self.url, **_engine_kwargs(self.url, config))
        self._factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @property
    def display_url(self) -> str:
        """The URL without credentials, safe to log."""
        return self.engine.url.render_as_string(hide_password=True).split("@")[-1]

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Commit on success, roll back and re-raise on error."""
        async with self._factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_initialized", dialect=self.dialect,
                    tables=sorted(Base.metadata.tables))

    async def existing_tables(self) -> list[str]:
        async with self.engine.connect() as conn:
            return await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())

    async def missing_tables(self) -> set[str]:
        return set(Base.metadata.tables) - set(await self.existing_tables())

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.info("database_closed", dialect=self.dialect)


# ── Process-wide instance ─────────────────────────────────

_database: Optional[Database] = None


def get_database() -> Database:
    """Return the process-wide Database, building it from settings on first use."""
    global _database
    if _database is None:
        _database = Database(get_settings().database)
        logger.info("database_engine_created", dialect=_database.dialect,
                    url=_database.display_url)
    return _database


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with get_database().session() as session:
        yield session


async def init_db() -> None:
    """Create all tables on the process-wide database."""
    await get_database().create_tables()


async def close_db() -> None:
    global _database
    if _database is not None:
        await _database.dispose()
        _database = None
