"""Database engine and session factory construction."""
from typing import Any, Dict

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from paygate.config import Settings
from paygate.database.models import Base

# Seconds a SQLite writer waits for a competing transaction to finish
SQLITE_BUSY_TIMEOUT = 30


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """
    Build an async engine for the configured database.

    PostgreSQL (asyncpg) gets a sized, pre-pinged pool. SQLite (aiosqlite)
    keeps its default pool and a busy timeout so concurrent callback
    writers queue instead of failing with "database is locked".
    """
    kwargs: Dict[str, Any] = {"echo": settings.database_echo}
    if settings.database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"timeout": SQLITE_BUSY_TIMEOUT}
    else:
        kwargs.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
    return create_async_engine(settings.database_url, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory shared by every service of one application."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create missing tables. Deployments run the alembic revision instead."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
