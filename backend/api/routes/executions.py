"""Execution endpoints: history, detail, cancellation."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from api.schemas.common import PaginationParams
from api.schemas.execution import (
    ExecutionDetailResponse,
    ExecutionListResponse,
    ExecutionResponse,
    StepExecutionResponse,
)
from app.dependencies import get_current_tenant, get_db, get_engine
from core.utils import calculate_offset
from services.execution_service import ExecutionService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["executions"])


@router.get("/", response_model=ExecutionListResponse)
async def list_executions(
    pagination: PaginationParams = Depends(),
    workflow_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None, description="running, completed, failed or cancelled"),
    start: Optional[datetime] = Query(None, description="Started at or after"),
    end: Optional[datetime] = Query(None, description="Started at or before"),
    tenant_id: str = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> ExecutionListResponse:
    """
    List executions of the current tenant, newest first.
    """
    executions, total = await ExecutionService(db).get_executions(
        tenant_id,
        workflow_id=workflow_id,
        status=status,
        start=start,
        end=end,
        offset=calculate_offset(pagination.page, pagination.per_page),
        limit=pagination.per_page,
    )
    return ExecutionListResponse(
        executions=[ExecutionResponse.model_validate(e) for e in executions],
        total=total,
        page=pagination.page,
        per_page=pagination.per_page,
    )


@router.get("/{execution_id}", response_model=ExecutionDetailResponse)
async def get_execution(
    execution_id: str,
    tenant_id: str = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> ExecutionDetailResponse:
    """
    Execution with its per-step outcomes.
    """
    svc = ExecutionService(db)
    execution = await svc.get_execution(tenant_id, execution_id)
    steps = await svc.get_step_executions(tenant_id, execution_id)
    return ExecutionDetailResponse(
        **ExecutionResponse.model_validate(execution).model_dump(),
        steps=[StepExecutionResponse.model_validate(s) for s in steps],
    )


@router.post("/{execution_id}/cancel", response_model=ExecutionResponse)
async def cancel_execution(
    execution_id: str,
    tenant_id: str = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
    engine=Depends(get_engine),
) -> ExecutionResponse:
    """
    Cancel a running execution. It stops at its next step boundary.
    """
    execution = await ExecutionService(db).cancel_execution(tenant_id, execution_id, engine=engine)
    return ExecutionResponse.model_validate(execution)
