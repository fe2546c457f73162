"""FastAPI dependency injection functions."""

import logging
from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from core.security import TokenPayload, get_current_user
from db import session as db_session
from workflow.engine import WorkflowEngine
from workflow.scheduler import WorkflowScheduler

logger = logging.getLogger(__name__)


async def get_db() -> AsyncSession:
    """
    Provide a database session for API endpoints.

    Yields an async SQLAlchemy session that is automatically
    committed on success or rolled back on error.
    """
    async with db_session.AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.error(f"Database error: {str(e)}")
            await session.rollback()
            raise
        finally:
            await session.close()


async def get_current_tenant(current_user: TokenPayload = Depends(get_current_user)) -> str:
    """Tenant id of the authenticated caller; every query is scoped by it."""
    return current_user.tenant_id


def get_scheduler(request: Request) -> Optional[WorkflowScheduler]:
    """The application's scheduler, or None when scheduling is disabled."""
    return getattr(request.app.state, "scheduler", None)


def get_engine(request: Request) -> Optional[WorkflowEngine]:
    """The process-wide engine, shared so in-flight runs can be cancelled."""
    return getattr(request.app.state, "engine", None)
