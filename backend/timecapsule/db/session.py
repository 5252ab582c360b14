"""Async SQLite engine behind the key-value store, and the per-request session."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from timecapsule.config import get_settings

Base = declarative_base()

# Seconds a connection waits for another writer's lock before failing
SQLITE_BUSY_TIMEOUT = 30


def _create_engine() -> AsyncEngine:
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{get_settings().db_path}",
        connect_args={"timeout": SQLITE_BUSY_TIMEOUT},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_wal(dbapi_connection, connection_record) -> None:
        # Readers are not blocked while a PIN counter or session is being written
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    return engine


_engine = _create_engine()
# autoflush off: store functions flush their own writes
_session_factory = async_sessionmaker(
    _engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
)


async def init_db() -> None:
    """Create the database directory and the kv_entries table if missing."""
    from timecapsule.kv.model import KVEntry  # noqa: F401 - registers the table on Base

    get_settings().db_path.parent.mkdir(parents=True, exist_ok=True)
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """Close pooled connections (app shutdown)."""
    await _engine.dispose()


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One unit of work: committed when the block succeeds, rolled back when it raises."""
    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: the request's session."""
    async with get_session() as session:
        yield session
