"""Worker-safe session factory for Celery tasks.

Creates a fresh async engine per call to avoid the 'Future attached
to a different loop' error when pooled connections are shared
across event loops in forked Celery workers.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.session import create_db_engine, create_session_factory


@asynccontextmanager
async def worker_session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Provide a session factory bound to a task-local engine.

    Usage:
        async with worker_session_factory() as session_factory:
            executor = create_executor(session_factory)
            ...
    """
    engine = create_db_engine(pool_recycle=300)
    try:
        yield create_session_factory(engine)
    finally:
        await engine.dispose()
