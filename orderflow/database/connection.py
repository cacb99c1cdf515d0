"""
Database engine and session management.

PostgreSQL (asyncpg) in production; SQLite (aiosqlite) for local runs and
the test suite. Services own their transactions: every unit of work
commits or rolls back inside the service, so sessions handed out here
only guarantee cleanup.
"""
from collections.abc import AsyncGenerator
from typing import Any, Dict, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from orderflow.config import Settings, get_settings
from orderflow.database.models import Base

# SQLite serialises writers; concurrent callbacks wait instead of failing fast
SQLITE_BUSY_TIMEOUT_MS = 5000

_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def _configure_sqlite(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    cursor.close()


def build_engine(settings: Settings, **overrides: Any) -> AsyncEngine:
    """
    Create an engine for the configured database URL.

    Pool sizing applies to server databases only; SQLite connections get
    foreign keys, WAL and a busy timeout.

    Args:
        settings: Settings carrying database_url and pool options
        **overrides: Extra create_async_engine arguments (e.g. poolclass)
    """
    is_sqlite = settings.database_url.startswith("sqlite")
    engine_kwargs: Dict[str, Any] = {"echo": settings.database_echo, "pool_pre_ping": True}
    if not is_sqlite:
        engine_kwargs.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_recycle=3600,
        )
    engine_kwargs.update(overrides)

    engine = create_async_engine(settings.database_url, **engine_kwargs)
    if is_sqlite:
        event.listen(engine.sync_engine, "connect", _configure_sqlite)
    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory with the options every component relies on."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine(settings: Optional[Settings] = None) -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = build_engine(settings or get_settings())
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = build_session_factory(get_engine())
    return _async_session_factory


async def get_db() -> AsyncGenerator[AsyncSession, Any]:
    """
    FastAPI dependency yielding a session.

    Rolls back whatever a failing request left open; services have
    already committed their own work on success.
    """
    async with get_session_factory()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create missing tables."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and forget the session factory."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
