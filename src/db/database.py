from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from src.core.config import settings


def _engine_kwargs(url: str) -> dict[str, Any]:
    """Pool sizing only applies to server databases."""
    if url.startswith("sqlite"):
        return {"echo": settings.debug}
    return {
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_pre_ping": True,
        "echo": settings.debug,
    }


# =============================================================================
# Async Engine & Session (for FastAPI)
# =============================================================================
engine = create_async_engine(
    settings.database_url,
    **_engine_kwargs(settings.database_url),
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


def create_session_maker(database_url: str) -> async_sessionmaker[AsyncSession]:
    """Create an engine bound session maker for an explicit database URL."""
    return async_sessionmaker(
        create_async_engine(database_url, **_engine_kwargs(database_url)),
        class_=AsyncSession,
        expire_on_commit=False,
    )


def create_worker_session_maker() -> async_sessionmaker[AsyncSession]:
    """Create a fresh async engine and session maker for worker tasks.

    This is needed because Celery workers run in a different event loop
    than where the global engine was created.
    """
    return create_session_maker(settings.database_url)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_tables(bind: AsyncEngine) -> None:
    from src.db.models import Base

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db() -> None:
    """Initialize database tables."""
    await create_tables(engine)


# =============================================================================
# Sync Engine (for Alembic migrations)
# =============================================================================
_sync_engine: Engine | None = None


def get_sync_database_url() -> str:
    """Convert async database URL to sync (asyncpg -> psycopg2, aiosqlite -> pysqlite)."""
    url = settings.database_url
    # postgresql+asyncpg:// -> postgresql+psycopg2://
    if "+asyncpg" in url:
        return url.replace("+asyncpg", "+psycopg2")
    # postgresql:// -> postgresql+psycopg2://
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg2://")
    if "+aiosqlite" in url:
        return url.replace("+aiosqlite", "")
    return url


def get_sync_engine() -> Engine:
    """Get or create the sync database engine (lazy initialization).

    This is lazily initialized to avoid import errors when psycopg2 is not installed.
    """
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = create_engine(
            get_sync_database_url(),
            pool_pre_ping=True,
            echo=settings.debug,
        )
    return _sync_engine
