"""Schedule management endpoints.

Cron bindings of workflows with timezone support and an
activate/deactivate toggle. Timers run in the API process.
"""

from typing import Optional

from fastapi import APIRouter, status, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from api.schemas.common import MessageResponse, PaginationParams
from api.schemas.schedule import ScheduleCreate, ScheduleListResponse, ScheduleResponse
from app.dependencies import get_current_tenant, get_db, get_engine, get_scheduler
from core.utils import calculate_offset
from services.schedule_service import ScheduleService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["schedules"])


def _service(
    db: AsyncSession = Depends(get_db),
    scheduler=Depends(get_scheduler),
    engine=Depends(get_engine),
) -> ScheduleService:
    return ScheduleService(db, scheduler=scheduler, engine=engine)


@router.get("/", response_model=ScheduleListResponse)
async def list_schedules(
    pagination: PaginationParams = Depends(),
    workflow_id: Optional[str] = Query(None),
    is_active: Optional[bool] = Query(None),
    tenant_id: str = Depends(get_current_tenant),
    svc: ScheduleService = Depends(_service),
) -> ScheduleListResponse:
    schedules, total = await svc.get_schedules(
        tenant_id,
        workflow_id=workflow_id,
        is_active=is_active,
        offset=calculate_offset(pagination.page, pagination.per_page),
        limit=pagination.per_page,
    )
    return ScheduleListResponse(
        schedules=[ScheduleResponse.model_validate(s) for s in schedules],
        total=total,
        page=pagination.page,
        per_page=pagination.per_page,
    )


@router.post("/", response_model=ScheduleResponse, status_code=status.HTTP_201_CREATED)
async def create_schedule(
    request: ScheduleCreate,
    tenant_id: str = Depends(get_current_tenant),
    svc: ScheduleService = Depends(_service),
) -> ScheduleResponse:
    """
    Bind a workflow to a cron expression. Invalid expressions or timezones answer 422.
    """
    schedule = await svc.schedule_workflow(
        tenant_id,
        request.workflow_id,
        name=request.name,
        cron_expression=request.cron_expression,
        timezone=request.timezone,
        config=request.config,
        is_active=request.is_active,
    )
    return ScheduleResponse.model_validate(schedule)


@router.get("/{schedule_id}", response_model=ScheduleResponse)
async def get_schedule(
    schedule_id: str,
    tenant_id: str = Depends(get_current_tenant),
    svc: ScheduleService = Depends(_service),
) -> ScheduleResponse:
    return ScheduleResponse.model_validate(await svc.get_schedule(tenant_id, schedule_id))


@router.post("/{schedule_id}/activate", response_model=ScheduleResponse)
async def activate_schedule(
    schedule_id: str,
    tenant_id: str = Depends(get_current_tenant),
    svc: ScheduleService = Depends(_service),
) -> ScheduleResponse:
    return ScheduleResponse.model_validate(await svc.activate_schedule(tenant_id, schedule_id))


@router.post("/{schedule_id}/deactivate", response_model=ScheduleResponse)
async def deactivate_schedule(
    schedule_id: str,
    tenant_id: str = Depends(get_current_tenant),
    svc: ScheduleService = Depends(_service),
) -> ScheduleResponse:
    return ScheduleResponse.model_validate(await svc.deactivate_schedule(tenant_id, schedule_id))


@router.delete("/{schedule_id}", response_model=MessageResponse)
async def delete_schedule(
    schedule_id: str,
    tenant_id: str = Depends(get_current_tenant),
    svc: ScheduleService = Depends(_service),
) -> MessageResponse:
    await svc.delete_schedule(tenant_id, schedule_id)
    return MessageResponse(message="Schedule deleted")
