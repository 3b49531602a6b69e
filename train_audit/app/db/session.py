"""
Database session configuration.

Every execution context (host loop, sync worker, sampler worker) opens its own
async engine on the same SQLite file; engines are never shared across loops.
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from train_audit.app.core.config import settings

# Create declarative base for models
Base = declarative_base()


def _set_sqlite_pragma(dbapi_conn, connection_record):
    """WAL lets the worker contexts read while the host writes."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def create_engine(database_url: str = None, echo: bool = None, **kwargs) -> AsyncEngine:
    """
    Create an async engine for one execution context.
    
    Args:
        database_url: Defaults to ``settings.database_url``
        echo: Defaults to ``settings.db_echo``
        **kwargs: Passed through to ``create_async_engine`` (e.g. ``poolclass``)
    """
    url = database_url or settings.database_url
    engine = create_async_engine(
        url,
        echo=settings.db_echo if echo is None else echo,
        future=True,
        **kwargs,
    )
    if url.startswith("sqlite") and ":memory:" not in url:
        event.listen(engine.sync_engine, "connect", _set_sqlite_pragma)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create an async session factory bound to ``engine``."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


async def create_tables(engine: AsyncEngine) -> None:
    """Create all registered tables if they do not exist."""
    # Import models to ensure they are registered with Base
    from train_audit.app.models import telemetry_record, recorder_setting, collected_point  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# Host-context engine and session factory
engine = create_engine()
AsyncSessionLocal = create_session_factory(engine)


async def get_db():
    """
    FastAPI dependency for database sessions.
    
    Yields an async database session and ensures it's properly closed.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()
