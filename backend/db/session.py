"""Database engine and session configuration."""

from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config import get_settings

settings = get_settings()


def _enable_sqlite_transactions(engine: AsyncEngine) -> None:
    """Take over transaction control from the sqlite driver.

    The driver's implicit BEGIN breaks SAVEPOINT handling. Issuing
    BEGIN IMMEDIATE ourselves also makes concurrent writers queue on the
    database lock instead of failing on lock upgrade.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(url: Optional[str] = None, **overrides) -> AsyncEngine:
    """Create and configure an async SQLAlchemy engine.

    Args:
        url: Database URL; defaults to settings.DATABASE_URL
        overrides: Extra keyword arguments for create_async_engine

    Returns:
        Async SQLAlchemy engine instance.
    """
    url = url or settings.DATABASE_URL
    is_sqlite = url.startswith("sqlite")
    kwargs = dict(echo=settings.SQLALCHEMY_ECHO, future=True)
    if is_sqlite:
        kwargs["connect_args"] = {"timeout": 30}
    else:
        kwargs.update(
            pool_pre_ping=True,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_recycle=1800,
        )
    kwargs.update(overrides)

    engine = create_async_engine(url, **kwargs)
    if is_sqlite:
        _enable_sqlite_transactions(engine)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create async session factory.

    Args:
        engine: SQLAlchemy async engine instance.

    Returns:
        Async sessionmaker instance.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Global engine and session factory instances
engine = create_db_engine()
AsyncSessionLocal = create_session_factory(engine)


async def init_db(target: Optional[AsyncEngine] = None):
    """Create tables for all registered models."""
    from db.base import Base
    import db.models  # noqa: F401  registers the models

    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(target: Optional[AsyncEngine] = None):
    """Close database connections."""
    await (target or engine).dispose()
