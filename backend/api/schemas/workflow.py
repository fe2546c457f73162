"""Workflow and step schemas."""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import List, Optional, Dict, Any

from api.schemas.execution import ExecutionResponse


class WorkflowStepCreate(BaseModel):
    """Request to add a workflow step."""

    name: str = Field(min_length=1, description="Human-readable step name")
    action: str = Field(min_length=1, description="Action kind (e.g. 'send_email', 'call_api')")
    type: str = Field(default="action", description="Step type (action, condition, parallel, ...)")
    config: Dict[str, Any] = Field(default={}, description="Action configuration; may contain {{path}} templates")
    position: Optional[int] = Field(default=None, description="Ordering key; appended at the end if omitted")
    condition: Optional[Dict[str, Any]] = Field(default=None, description="{operator, left, right} predicate")
    retry_config: Optional[Dict[str, Any]] = Field(default=None, description="{maxAttempts, backoffMultiplier}")
    timeout: Optional[int] = Field(default=None, ge=1, description="Per-attempt timeout in milliseconds")
    dependencies: List[str] = Field(default=[], description="Ids of sibling steps that must finish first")
    is_active: bool = Field(default=True, description="Inactive steps are never run")


class WorkflowStepUpdate(BaseModel):
    """Request to update a workflow step. Omitted fields are unchanged."""

    name: Optional[str] = Field(default=None, min_length=1)
    action: Optional[str] = None
    type: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    position: Optional[int] = None
    condition: Optional[Dict[str, Any]] = None
    retry_config: Optional[Dict[str, Any]] = None
    timeout: Optional[int] = Field(default=None, ge=1)
    dependencies: Optional[List[str]] = None
    is_active: Optional[bool] = None


class WorkflowStepResponse(BaseModel):
    """Workflow step response."""

    id: str
    workflow_id: str
    name: str
    type: str
    action: str
    config: Dict[str, Any] = {}
    position: int
    condition: Optional[Dict[str, Any]] = None
    retry_config: Optional[Dict[str, Any]] = None
    timeout: Optional[int] = None
    dependencies: List[str] = []
    is_active: bool

    class Config:
        from_attributes = True


class WorkflowCreate(BaseModel):
    """Request to create a workflow."""

    name: str = Field(min_length=1, description="Workflow name")
    description: Optional[str] = Field(default="", description="Workflow description")
    trigger: str = Field(default="manual", description="Trigger kind (manual, schedule, webhook, event, ...)")
    trigger_config: Dict[str, Any] = Field(default={}, description="Trigger-specific settings")
    is_active: bool = Field(default=True, description="Whether the workflow may be executed")
    tags: List[str] = Field(default=[], description="Free-form labels")
    metadata: Dict[str, Any] = Field(default={}, description="Free-form metadata")


class WorkflowUpdate(BaseModel):
    """Request to update a workflow."""

    name: Optional[str] = Field(default=None, min_length=1, description="Workflow name")
    description: Optional[str] = Field(default=None, description="Workflow description")
    trigger: Optional[str] = Field(default=None, description="Trigger kind")
    trigger_config: Optional[Dict[str, Any]] = Field(default=None, description="Trigger-specific settings")
    is_active: Optional[bool] = Field(default=None, description="Whether the workflow may be executed")
    tags: Optional[List[str]] = Field(default=None, description="Free-form labels")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Free-form metadata")


class WorkflowResponse(BaseModel):
    """Workflow information response."""

    id: str = Field(description="Workflow ID")
    name: str = Field(description="Workflow name")
    description: str = Field(description="Workflow description")
    trigger: str = Field(description="Trigger kind")
    trigger_config: Dict[str, Any] = Field(default={}, description="Trigger-specific settings")
    is_active: bool = Field(description="Whether the workflow may be executed")
    version: int = Field(description="Workflow version number")
    tags: List[str] = Field(default=[], description="Free-form labels")
    metadata: Dict[str, Any] = Field(default={}, description="Free-form metadata")
    created_by: Optional[str] = Field(default=None, description="User ID who created the workflow")
    created_at: datetime = Field(description="Creation timestamp")
    updated_at: datetime = Field(description="Last update timestamp")
    steps: Optional[List[WorkflowStepResponse]] = Field(default=None, description="Steps, on detail views")


class WorkflowListResponse(BaseModel):
    """Paginated list of workflows."""

    workflows: List[WorkflowResponse] = Field(description="List of workflows")
    total: int = Field(description="Total number of workflows")
    page: int = Field(description="Current page number")
    per_page: int = Field(description="Items per page")


class ExecuteRequest(BaseModel):
    """Request to run a workflow."""

    trigger_data: Dict[str, Any] = Field(default={}, description="Trigger payload exposed to templates")


class BulkExecuteRequest(BaseModel):
    """Request to run several workflows."""

    workflow_ids: List[str] = Field(min_length=1, description="Workflows to run, in order")
    trigger_data: Dict[str, Any] = Field(default={}, description="Trigger payload for every run")


class BulkExecuteResult(BaseModel):
    workflow_id: str
    success: bool
    execution: Optional[ExecutionResponse] = None
    error: Optional[str] = None


class BulkExecuteResponse(BaseModel):
    results: List[BulkExecuteResult]
    total_requested: int


class WebhookTriggerRequest(BaseModel):
    """Inbound webhook; without a workflow id it is only acknowledged."""

    webhook_url: Optional[str] = Field(default=None, description="URL the webhook was received on")
    payload: Any = Field(default=None, description="Webhook body")
    workflow_id: Optional[str] = Field(default=None, description="Workflow to run")


class ValidationReportResponse(BaseModel):
    valid: bool
    errors: List[str]
    warnings: List[str]


class ImportRequest(BaseModel):
    """Exported workflow document plus optional real values for redacted secrets."""

    document: Dict[str, Any] = Field(description="Document produced by the export endpoint")
    secret_values: Dict[str, Any] = Field(default={}, description="Secret variable values by name")
