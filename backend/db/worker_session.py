"""Worker-safe database sessions for Celery tasks.

Creates a fresh async engine per task to avoid the 'Future attached
to a different loop' error when pooled connections are shared
across event loops in forked Celery workers.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.session import create_db_engine


@asynccontextmanager
async def worker_session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Provide a session factory bound to a task-private engine.

    Usage:
        async with worker_session_factory() as factory:
            async with factory() as session:
                result = await session.execute(...)
    """
    engine = create_db_engine()
    try:
        yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    finally:
        await engine.dispose()
