"""
Database engine configuration for Meridian Fee Billing

Async SQLAlchemy 2.0 setup with connection pooling.
Services never touch the module-level engine directly: they receive an
async_sessionmaker in their constructor (see api_server lifespan and tasks).
"""

import logging
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.pool import AsyncAdaptedQueuePool, StaticPool

from config.config import DATABASE_URL, ENVIRONMENT
from src.database.models import Base

logger = logging.getLogger(__name__)


# Global engine and session maker (process-wide defaults for entry points)
engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def build_engine(url: str = DATABASE_URL) -> AsyncEngine:
    """
    Create an async engine for the given URL

    SQLite (tests, local runs) gets a single shared in-process connection;
    PostgreSQL gets the pooled asyncpg setup.
    """
    if url.startswith("sqlite"):
        return create_async_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=False,
        )

    is_production = ENVIRONMENT == "production"

    return create_async_engine(
        url,
        # Connection pooling
        poolclass=AsyncAdaptedQueuePool,
        pool_size=10 if is_production else 5,
        max_overflow=20 if is_production else 10,
        pool_pre_ping=True,  # Verify connections before using
        pool_recycle=3600,  # Recycle connections every hour
        # Logging (disabled - using loguru)
        echo=False,
        echo_pool=False,
        connect_args={
            "statement_cache_size": 0,
            "server_settings": {
                "application_name": "meridian_billing",
                "jit": "off",
            },
        },
    )


def build_session_maker(eng: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session maker with the settings every component expects"""
    return async_sessionmaker(
        eng,
        class_=AsyncSession,
        expire_on_commit=False,  # Important for async!
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """
    Create (once) and return the process-wide async engine

    Returns:
        Configured AsyncEngine instance
    """
    global engine

    if engine is None:
        engine = build_engine(DATABASE_URL)
        logger.info(f"Database engine created - Environment: {ENVIRONMENT}")

    return engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """
    Create (once) and return the process-wide session maker

    Returns:
        Configured async_sessionmaker instance
    """
    global AsyncSessionLocal

    if AsyncSessionLocal is None:
        AsyncSessionLocal = build_session_maker(get_engine())
        logger.info("Session maker created")

    return AsyncSessionLocal


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting database session

    Usage in handlers:
        async def handler(session: AsyncSession = Depends(get_session)):
            ...

    Yields:
        AsyncSession instance
    """
    session_maker = get_session_maker()
    async with session_maker() as session:
        try:
            yield session
        except Exception as e:
            await session.rollback()
            logger.error(f"Session error: {e}", exc_info=True)
            raise


async def init_db(eng: AsyncEngine | None = None) -> None:
    """
    Initialize database - create all tables

    WARNING: This creates tables if they don't exist.
    For production, use Alembic migrations instead.
    """
    eng = eng or get_engine()

    logger.info("Creating database tables...")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables created successfully")


async def drop_db(eng: AsyncEngine | None = None) -> None:
    """
    Drop all database tables

    WARNING: This deletes all data! Only for development/testing.
    """
    if ENVIRONMENT == "production":
        raise RuntimeError("Cannot drop database in production environment!")

    eng = eng or get_engine()

    logger.warning("Dropping all database tables...")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    logger.warning("Database tables dropped")


async def dispose_engine() -> None:
    """
    Dispose database engine and close all connections

    Call this on application shutdown
    """
    global engine, AsyncSessionLocal

    if engine is not None:
        await engine.dispose()
        logger.info("Database engine disposed")
        engine = None
        AsyncSessionLocal = None


async def check_connection(eng: AsyncEngine | None = None) -> bool:
    """
    Check database connection

    Returns:
        True if connection successful, False otherwise
    """
    try:
        eng = eng or get_engine()
        async with eng.connect() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("Database connection check: OK")
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}", exc_info=True)
        return False


if __name__ == "__main__":
    import asyncio
    from config.logging import setup_logging

    setup_logging(log_to_file=False)

    async def test():
        print("Testing database connection...")

        is_connected = await check_connection()
        print(f'Connection: {"OK" if is_connected else "FAILED"}')

        if is_connected:
            print("\nCreating tables...")
            await init_db()
            print("Tables created")

        await dispose_engine()
        print("\nEngine disposed")

    asyncio.run(test())
