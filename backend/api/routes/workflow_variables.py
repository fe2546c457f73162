"""Workflow variable endpoints. Secret values never leave the service in plaintext."""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from api.schemas.common import MessageResponse
from api.schemas.variable import VariableResponse, VariableSet
from app.dependencies import get_current_tenant, get_db
from services.variable_service import VariableService, is_secret

router = APIRouter(tags=["variables"])


def _to_response(variable) -> VariableResponse:
    return VariableResponse(
        id=variable.id,
        name=variable.name,
        value=VariableService.public_value(variable),
        type=variable.type,
        workflow_id=variable.workflow_id,
        is_secret=is_secret(variable),
        description=variable.description,
    )


@router.get("/", response_model=List[VariableResponse])
async def list_variables(
    workflow_id: Optional[str] = Query(None, description="Omit for tenant-global variables only"),
    include_global: bool = Query(True),
    tenant_id: str = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> List[VariableResponse]:
    variables = await VariableService(db).get_variables(tenant_id, workflow_id, include_global)
    return [_to_response(v) for v in variables]


@router.put("/", response_model=VariableResponse)
async def set_variable(
    request: VariableSet,
    tenant_id: str = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> VariableResponse:
    """
    Create or replace a variable. Setting a workflow variable bumps the workflow version.
    """
    variable = await VariableService(db).set_variable(
        tenant_id,
        request.name,
        request.value,
        type=request.type,
        workflow_id=request.workflow_id,
        is_secret=request.is_secret,
        description=request.description,
    )
    return _to_response(variable)


@router.delete("/{variable_id}", response_model=MessageResponse)
async def delete_variable(
    variable_id: str,
    tenant_id: str = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    await VariableService(db).delete_variable(tenant_id, variable_id)
    return MessageResponse(message="Variable deleted")
