"""
Database session management for the IntuneGet migration service.

One async engine per process, created in the app lifespan. Request handlers
receive a session from get_db(); background work (matching runs, the
database catalog, audit writes) opens short-lived sessions through
get_db_session(). Both commit on success and roll back on error.
"""

from collections.abc import AsyncGenerator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from intuneget.config import settings
from intuneget.logging_config import get_logger

logger = get_logger(__name__)

# Anything that opens a unit-of-work session: get_db_session or a test factory
SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

_engine: AsyncEngine | None = None
_sessionmaker: async_sessionmaker[AsyncSession] | None = None


async def init_db() -> None:
    """Create the engine and verify the database answers."""
    global _engine, _sessionmaker  # noqa: PLW0603
    pool = settings.db_pool
    logger.info("Initializing database connection", pool_size=pool.size)

    _engine = create_async_engine(
        str(settings.database_url),
        echo=settings.debug,
        pool_pre_ping=True,
        pool_size=pool.size,
        max_overflow=pool.max_overflow,
        pool_recycle=pool.recycle_seconds,
    )
    _sessionmaker = async_sessionmaker(_engine, expire_on_commit=False, autoflush=False)

    async with _engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("Database connection established")


async def close_db() -> None:
    """Dispose of the engine and its pooled connections."""
    global _engine, _sessionmaker  # noqa: PLW0603
    if _engine is None:
        return
    logger.info("Closing database connection pool")
    await _engine.dispose()
    _engine = None
    _sessionmaker = None


@asynccontextmanager
async def _unit_of_work() -> AsyncGenerator[AsyncSession]:
    if _sessionmaker is None:
        raise RuntimeError("Database not initialized: call init_db() first")
    async with _sessionmaker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession]:
    """FastAPI dependency: one session per request."""
    async with _unit_of_work() as session:
        yield session


def get_db_session() -> AbstractAsyncContextManager[AsyncSession]:
    """Session for work outside the request lifecycle."""
    return _unit_of_work()


async def get_db_health() -> bool:
    """Readiness probe: can the pool hand out a working connection."""
    if _engine is None:
        return False
    try:
        async with _engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        logger.error("Database health check failed", error=str(e))
        return False
    return True
