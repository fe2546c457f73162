"""Workflow endpoints: CRUD, steps, execution, webhooks, validation, export/import, logs."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, status, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from api.schemas.common import ErrorResponse, MessageResponse, PaginationParams
from api.schemas.execution import ExecutionResponse, WorkflowLogListResponse, WorkflowLogResponse
from api.schemas.workflow import (
    BulkExecuteRequest,
    BulkExecuteResponse,
    BulkExecuteResult,
    ExecuteRequest,
    ImportRequest,
    ValidationReportResponse,
    WebhookTriggerRequest,
    WorkflowCreate,
    WorkflowListResponse,
    WorkflowResponse,
    WorkflowStepCreate,
    WorkflowStepResponse,
    WorkflowStepUpdate,
    WorkflowUpdate,
)
from app.dependencies import get_current_tenant, get_db, get_engine, get_scheduler
from core.security import TokenPayload, get_current_user
from core.utils import calculate_offset
from services.audit_service import AuditLogger
from services.export_service import ExportService
from services.workflow_service import WorkflowService
from worker.tasks.workflow import execute_workflow as execute_workflow_task

logger = logging.getLogger(__name__)

router = APIRouter(tags=["workflows"])


def _workflow_to_response(wf, steps=None) -> WorkflowResponse:
    """Convert a Workflow ORM object to response schema."""
    return WorkflowResponse(
        id=wf.id,
        name=wf.name,
        description=wf.description or "",
        trigger=wf.trigger,
        trigger_config=wf.trigger_config or {},
        is_active=wf.is_active,
        version=wf.version,
        tags=wf.tags or [],
        metadata=wf.metadata_ or {},
        created_by=wf.created_by,
        created_at=wf.created_at,
        updated_at=wf.updated_at,
        steps=[_step_to_response(s) for s in steps] if steps is not None else None,
    )


def _step_to_response(step) -> WorkflowStepResponse:
    return WorkflowStepResponse(
        id=step.id,
        workflow_id=step.workflow_id,
        name=step.name,
        type=step.type,
        action=step.action,
        config=step.config or {},
        position=step.position,
        condition=step.condition,
        retry_config=step.retry_config,
        timeout=step.timeout,
        dependencies=step.dependencies or [],
        is_active=step.is_active,
    )


def _service(
    db: AsyncSession = Depends(get_db),
    engine=Depends(get_engine),
    scheduler=Depends(get_scheduler),
) -> WorkflowService:
    return WorkflowService(db, engine=engine, scheduler=scheduler)


# ─── Workflows ────────────────────────────────────────────────

@router.get("/", response_model=WorkflowListResponse)
async def list_workflows(
    pagination: PaginationParams = Depends(),
    is_active: Optional[bool] = Query(None),
    trigger: Optional[str] = Query(None),
    search: Optional[str] = Query(None, description="Substring of the workflow name"),
    tenant_id: str = Depends(get_current_tenant),
    svc: WorkflowService = Depends(_service),
) -> WorkflowListResponse:
    """
    List workflows of the current tenant (paginated).
    """
    workflows, total = await svc.get_workflows(
        tenant_id,
        is_active=is_active,
        trigger=trigger,
        search=search,
        offset=calculate_offset(pagination.page, pagination.per_page),
        limit=pagination.per_page,
    )
    return WorkflowListResponse(
        workflows=[_workflow_to_response(wf) for wf in workflows],
        total=total,
        page=pagination.page,
        per_page=pagination.per_page,
    )


@router.post("/", response_model=WorkflowResponse, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    request: WorkflowCreate,
    current_user: TokenPayload = Depends(get_current_user),
    svc: WorkflowService = Depends(_service),
) -> WorkflowResponse:
    """
    Create a new workflow in the current tenant.
    """
    wf = await svc.create_workflow(
        current_user.tenant_id,
        name=request.name,
        description=request.description or "",
        trigger=request.trigger,
        trigger_config=request.trigger_config,
        is_active=request.is_active,
        tags=request.tags,
        metadata=request.metadata,
        created_by=current_user.sub,
    )
    return _workflow_to_response(wf, steps=[])


@router.post("/bulk-execute", response_model=BulkExecuteResponse)
async def bulk_execute(
    request: BulkExecuteRequest,
    tenant_id: str = Depends(get_current_tenant),
    svc: WorkflowService = Depends(_service),
) -> BulkExecuteResponse:
    """
    Run several workflows one after another; failures are reported per workflow.
    """
    outcome = await svc.bulk_execute(tenant_id, request.workflow_ids, request.trigger_data)
    return BulkExecuteResponse(
        results=[
            BulkExecuteResult(
                workflow_id=r["workflowId"],
                success=r["success"],
                execution=ExecutionResponse.model_validate(r["execution"]) if r.get("execution") else None,
                error=r.get("error"),
            )
            for r in outcome["results"]
        ],
        total_requested=outcome["totalRequested"],
    )


@router.post("/webhook")
async def trigger_webhook(
    request: WebhookTriggerRequest,
    tenant_id: str = Depends(get_current_tenant),
    svc: WorkflowService = Depends(_service),
):
    """
    Receive a webhook. With ``workflow_id`` the payload starts a run.
    """
    execution = await svc.trigger_webhook(
        tenant_id, payload=request.payload, webhook_url=request.webhook_url, workflow_id=request.workflow_id
    )
    if execution is None:
        return {"message": "Webhook received", "payload": request.payload}
    return ExecutionResponse.model_validate(execution)


@router.post(
    "/import",
    response_model=WorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"model": ErrorResponse}},
)
async def import_workflow(
    request: ImportRequest,
    current_user: TokenPayload = Depends(get_current_user),
    svc: WorkflowService = Depends(_service),
) -> WorkflowResponse:
    """
    Rebuild a workflow from an exported document.

    Redacted secrets are only recreated when ``secret_values`` supplies them.
    """
    wf = await ExportService(svc).import_workflow(
        current_user.tenant_id, request.document, request.secret_values, created_by=current_user.sub
    )
    return _workflow_to_response(wf, await svc.get_steps(current_user.tenant_id, wf.id))


@router.get("/{workflow_id}", response_model=WorkflowResponse)
async def get_workflow(
    workflow_id: str,
    tenant_id: str = Depends(get_current_tenant),
    svc: WorkflowService = Depends(_service),
) -> WorkflowResponse:
    """
    Get workflow details with its steps.
    """
    wf = await svc.get_workflow(tenant_id, workflow_id)
    return _workflow_to_response(wf, await svc.get_steps(tenant_id, workflow_id))


@router.put("/{workflow_id}", response_model=WorkflowResponse)
async def update_workflow(
    workflow_id: str,
    request: WorkflowUpdate,
    tenant_id: str = Depends(get_current_tenant),
    svc: WorkflowService = Depends(_service),
) -> WorkflowResponse:
    """
    Update workflow attributes. Bumps the version.
    """
    wf = await svc.update_workflow(tenant_id, workflow_id, request.model_dump(exclude_unset=True))
    return _workflow_to_response(wf)


@router.delete("/{workflow_id}", response_model=MessageResponse)
async def delete_workflow(
    workflow_id: str,
    tenant_id: str = Depends(get_current_tenant),
    svc: WorkflowService = Depends(_service),
) -> MessageResponse:
    """
    Delete a workflow with its steps, variables, schedules and history.
    """
    await svc.delete_workflow(tenant_id, workflow_id)
    return MessageResponse(message="Workflow deleted")


# ─── Steps ────────────────────────────────────────────────────

@router.post(
    "/{workflow_id}/steps",
    response_model=WorkflowStepResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"model": ErrorResponse}},
)
async def add_step(
    workflow_id: str,
    request: WorkflowStepCreate,
    tenant_id: str = Depends(get_current_tenant),
    svc: WorkflowService = Depends(_service),
) -> WorkflowStepResponse:
    step = await svc.add_step(tenant_id, workflow_id, **request.model_dump())
    return _step_to_response(step)


@router.put("/{workflow_id}/steps/{step_id}", response_model=WorkflowStepResponse)
async def update_step(
    workflow_id: str,
    step_id: str,
    request: WorkflowStepUpdate,
    tenant_id: str = Depends(get_current_tenant),
    svc: WorkflowService = Depends(_service),
) -> WorkflowStepResponse:
    step = await svc.update_step(tenant_id, workflow_id, step_id, request.model_dump(exclude_unset=True))
    return _step_to_response(step)


@router.delete("/{workflow_id}/steps/{step_id}", response_model=MessageResponse)
async def remove_step(
    workflow_id: str,
    step_id: str,
    tenant_id: str = Depends(get_current_tenant),
    svc: WorkflowService = Depends(_service),
) -> MessageResponse:
    await svc.remove_step(tenant_id, workflow_id, step_id)
    return MessageResponse(message="Step removed")


# ─── Execution ────────────────────────────────────────────────

@router.post(
    "/{workflow_id}/execute",
    response_model=ExecutionResponse,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def execute_workflow(
    workflow_id: str,
    request: ExecuteRequest = ExecuteRequest(),
    tenant_id: str = Depends(get_current_tenant),
    svc: WorkflowService = Depends(_service),
) -> ExecutionResponse:
    """
    Run a workflow to completion.

    A failed run answers 500 with ``execution_id`` and ``step_id``; the
    execution record is kept either way.
    """
    execution = await svc.execute_workflow(tenant_id, workflow_id, request.trigger_data)
    return ExecutionResponse.model_validate(execution)


@router.post("/{workflow_id}/execute-async", status_code=status.HTTP_202_ACCEPTED)
async def execute_workflow_async(
    workflow_id: str,
    request: ExecuteRequest = ExecuteRequest(),
    tenant_id: str = Depends(get_current_tenant),
    svc: WorkflowService = Depends(_service),
) -> dict:
    """
    Queue a run on the Celery worker. Poll the executions endpoint for its outcome.
    """
    await svc.get_workflow(tenant_id, workflow_id)
    task = execute_workflow_task.delay(tenant_id, workflow_id, request.trigger_data)
    logger.info(f"Workflow {workflow_id} queued as task {task.id}")
    return {"task_id": task.id, "workflow_id": workflow_id, "status": "queued"}


@router.post("/{workflow_id}/validate", response_model=ValidationReportResponse)
async def validate_workflow(
    workflow_id: str,
    tenant_id: str = Depends(get_current_tenant),
    svc: WorkflowService = Depends(_service),
) -> ValidationReportResponse:
    """
    Check a workflow without running it.
    """
    report = await svc.validate_workflow(tenant_id, workflow_id)
    return ValidationReportResponse(**report.to_dict())


# ─── Export / logs ────────────────────────────────────────────

@router.get("/{workflow_id}/export")
async def export_workflow(
    workflow_id: str,
    tenant_id: str = Depends(get_current_tenant),
    svc: WorkflowService = Depends(_service),
) -> dict:
    """
    Export a workflow as a portable document. Secret values are redacted.
    """
    return await ExportService(svc).export_workflow(tenant_id, workflow_id)


@router.get("/{workflow_id}/logs", response_model=WorkflowLogListResponse)
async def get_workflow_logs(
    workflow_id: str,
    pagination: PaginationParams = Depends(),
    level: Optional[str] = Query(None),
    execution_id: Optional[str] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    tenant_id: str = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> WorkflowLogListResponse:
    """
    Audit log of a workflow, newest first.
    """
    logs, total = await AuditLogger(db).get_logs(
        tenant_id,
        workflow_id=workflow_id,
        execution_id=execution_id,
        level=level,
        start=start,
        end=end,
        offset=calculate_offset(pagination.page, pagination.per_page),
        limit=pagination.per_page,
    )
    return WorkflowLogListResponse(
        logs=[WorkflowLogResponse.model_validate(entry) for entry in logs],
        total=total,
        page=pagination.page,
        per_page=pagination.per_page,
    )
