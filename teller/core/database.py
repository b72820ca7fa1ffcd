"""
Database configuration and session management.
Uses SQLAlchemy 2.0 with async support.
"""

from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
    AsyncEngine
)
from sqlalchemy.pool import StaticPool

from .config import settings, DatabaseConfig
from .exceptions import DatabaseError
from .logging import get_logger

logger = get_logger(__name__)

# Global engine and session maker
async_engine: Optional[AsyncEngine] = None
async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


async def init_database(database_url: Optional[str] = None) -> None:
    """Initialize the async engine and session maker."""
    global async_engine, async_session_maker

    url = DatabaseConfig.get_database_url(database_url, async_driver=True)
    logger.info("Initializing database connections", dialect=url.split(":", 1)[0])

    engine_kwargs = DatabaseConfig.get_engine_config(url)
    if url.startswith("sqlite") and ":memory:" in url:
        # One shared connection, otherwise every checkout gets an empty database
        engine_kwargs.update(
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

    async_engine = create_async_engine(url, echo=settings.debug, **engine_kwargs)

    if url.startswith("sqlite"):
        _enable_sqlite_savepoints(async_engine)

    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    logger.info("Database connections initialized")


def _enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """
    Let SQLAlchemy emit BEGIN itself so SAVEPOINT works on SQLite.

    BEGIN IMMEDIATE takes the write lock up front: transactions on separate
    connections queue on the busy timeout instead of failing to upgrade.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def is_initialized() -> bool:
    return async_session_maker is not None


async def close_database() -> None:
    """Close database connections."""
    global async_engine, async_session_maker

    logger.info("Closing database connections")

    if async_engine:
        await async_engine.dispose()

    async_engine = None
    async_session_maker = None

    logger.info("Database connections closed")


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Get an async database session with automatic commit and cleanup.

    Usage:
        async with get_async_session() as session:
            # Use session here
            pass
    """
    if not async_session_maker:
        raise DatabaseError("Database not initialized. Call init_database() first.")

    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


class DatabaseManager:
    """Database manager for administrative operations."""

    @staticmethod
    async def create_tables() -> None:
        """Create all tables in the database."""
        from teller.models.base import Base

        if not async_engine:
            raise DatabaseError("Database not initialized")

        logger.info("Creating database tables")
        async with async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    @staticmethod
    async def drop_tables() -> None:
        """Drop all tables in the database."""
        from teller.models.base import Base

        if not async_engine:
            raise DatabaseError("Database not initialized")

        logger.warning("Dropping all database tables")
        async with async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        logger.info("Database tables dropped")

    @staticmethod
    async def health_check() -> bool:
        """Check database connectivity."""
        try:
            async with get_async_session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return False
