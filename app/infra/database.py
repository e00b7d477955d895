"""
Slot store engine and sessions.

The engine, orchestrator and reordering service never share a session: each
transaction opens its own from ``async_session_factory`` (see
``app.core.transactions``). PostgreSQL via asyncpg in deployments, SQLite via
aiosqlite for local runs and tests.
"""

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool

from app.config import settings
from app.models.database import Base

logger = logging.getLogger(__name__)


def make_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Build an async engine for ``url``.

    In-memory SQLite must keep a single connection or every session would see
    an empty database.
    """
    if url.startswith("sqlite"):
        return create_async_engine(
            url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(url, echo=echo, poolclass=NullPool)


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory handed to the store-backed services."""
    # Snapshots are read after commit, so attributes must not expire.
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_schema(bind: AsyncEngine) -> None:
    """Create the slot store tables that do not exist yet."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


engine = make_engine(settings.database_url, echo=settings.debug)
async_session_factory = make_session_factory(engine)


async def init_db() -> None:
    """
    Create the slot store schema on the configured database.

    Development only; deployments manage the schema with migrations.
    """
    await create_schema(engine)


async def close_db() -> None:
    await engine.dispose()


async def check_db_health(
    session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
) -> bool:
    """True when the slot store answers a trivial query."""
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Slot store health check failed: {e}")
        return False
