"""
Database connection and session management.

The scheduler, queue and metrics recorder share one async engine. Every
service receives a session factory and opens a short-lived session per
operation, so no session is held open across HTTP deliveries.

SQLite Notes:
-------------
1. WAL Mode: concurrent reads while the queue processor writes.
   Checkpointed by the retention service.
2. NullPool: a new connection per operation (required for async SQLite).
3. Busy Timeout (5 seconds): concurrent queue leases wait for the write
   lock instead of failing with "database is locked".

For multi-process workers use PostgreSQL; queue leasing relies only on
conditional single-row UPDATEs and works on any backend.
"""
import sqlite3
from contextlib import asynccontextmanager
from typing import AsyncIterator
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool
from sqlalchemy import event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from loguru import logger
from herald.config import settings
from herald.constants import SQLITE_BUSY_TIMEOUT_MS
from herald.utils.errors import QueueBackendError


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with the pool policy used across Herald."""
    return create_async_engine(
        database_url,
        echo=echo,
        poolclass=NullPool,
        future=True
    )


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    """Create a session factory; sessions keep loaded rows usable after commit."""
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False
    )


# Default engine and session factory for the running service
engine = create_engine(settings.database_url, echo=settings.debug)
AsyncSessionLocal = create_session_factory(engine)

# Base class for models
Base = declarative_base()


@event.listens_for(Engine, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """
    Enable SQLite-specific settings when using SQLite.
    - PRAGMA foreign_keys=ON: enforce scheduled_id / job_id foreign keys
    - PRAGMA journal_mode=WAL: readers don't block the queue writer
    - PRAGMA busy_timeout: wait for locks instead of failing
    - PRAGMA synchronous=NORMAL: safe with WAL and much faster
    """
    # aiosqlite connections arrive wrapped in SQLAlchemy's adapter class
    if isinstance(dbapi_conn, sqlite3.Connection) or type(dbapi_conn).__module__.startswith("sqlalchemy.dialects.sqlite"):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()


async def init_db(bind: AsyncEngine = None):
    """Create all tables and indexes."""
    # Import models so they register on Base.metadata
    import herald.models  # noqa: F401

    bind = bind or engine
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.debug("Database schema initialized")


async def checkpoint_wal(bind: AsyncEngine = None):
    """
    Run a WAL checkpoint to consolidate the write-ahead log.
    Called periodically by the retention service to prevent WAL file growth.
    """
    bind = bind or engine
    if bind.dialect.name != "sqlite":
        return
    try:
        async with bind.begin() as conn:
            await conn.execute(text("PRAGMA wal_checkpoint(TRUNCATE)"))
            logger.debug("WAL checkpoint completed")
    except Exception as e:
        logger.warning(f"WAL checkpoint failed: {e}")


async def close_db(bind: AsyncEngine = None):
    """Close database connections."""
    bind = bind or engine
    # Run final checkpoint before closing
    await checkpoint_wal(bind)
    await bind.dispose()


@asynccontextmanager
async def session_scope(session_factory: async_sessionmaker, operation: str) -> AsyncIterator[AsyncSession]:
    """
    Open a short-lived session and translate SQL failures.

    Any SQLAlchemyError raised while the session is open is re-raised as
    QueueBackendError so callers only deal with Herald errors. Commits are
    left to the caller.
    """
    try:
        async with session_factory() as session:
            yield session
    except SQLAlchemyError as e:
        logger.error(f"Database error during {operation}: {e}")
        raise QueueBackendError(f"{operation} failed: {e}", {"operation": operation}) from e
