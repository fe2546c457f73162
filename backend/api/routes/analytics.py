"""Execution analytics endpoints."""

from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import get_current_tenant, get_db
from core.exceptions import ValidationError
from core.utils import utc_now
from services.execution_service import ExecutionService

router = APIRouter(tags=["analytics"])


@router.get("/workflows")
async def workflow_analytics(
    start: Optional[datetime] = Query(None, description="Defaults to 30 days ago"),
    end: Optional[datetime] = Query(None, description="Defaults to now"),
    tenant_id: str = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """
    Execution counts by status and workflow, average duration and failure rate.
    """
    end = end or utc_now()
    start = start or end - timedelta(days=30)
    if start > end:
        raise ValidationError("start must not be after end")
    return await ExecutionService(db).get_workflow_analytics(tenant_id, start, end)
