"""Execution, step execution and audit log schemas."""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, List, Optional


class ExecutionResponse(BaseModel):
    """Execution run information response."""

    id: str = Field(description="Execution ID")
    workflow_id: str = Field(description="Workflow ID")
    workflow_version: int = Field(description="Workflow version the run was started on")
    status: str = Field(description="Execution status (running, completed, failed, cancelled)")
    trigger_data: Optional[Dict[str, Any]] = Field(default=None, description="Trigger payload")
    context: Optional[Dict[str, Any]] = Field(default=None, description="{variables, stepResults}; secrets masked")
    started_at: Optional[datetime] = Field(default=None, description="Execution start timestamp")
    completed_at: Optional[datetime] = Field(default=None, description="Execution completion timestamp")
    duration: Optional[int] = Field(default=None, description="Execution duration in milliseconds")
    error: Optional[str] = Field(default=None, description="Error message if execution failed")
    failed_step_id: Optional[str] = Field(default=None, description="Step that failed the run")

    class Config:
        from_attributes = True


class StepExecutionResponse(BaseModel):
    """Outcome of one step within an execution."""

    id: str
    step_id: str
    status: str
    input: Optional[Any] = None
    output: Optional[Any] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration: Optional[int] = None
    error: Optional[str] = None

    class Config:
        from_attributes = True


class ExecutionDetailResponse(ExecutionResponse):
    steps: List[StepExecutionResponse] = Field(default=[], description="Per-step outcomes")


class ExecutionListResponse(BaseModel):
    """Paginated list of executions."""

    executions: List[ExecutionResponse] = Field(description="List of executions")
    total: int = Field(description="Total number of executions")
    page: int = Field(description="Current page number")
    per_page: int = Field(description="Items per page")


class WorkflowLogResponse(BaseModel):
    """Audit log entry response."""

    id: str = Field(description="Log entry ID")
    workflow_id: str = Field(description="Workflow ID")
    execution_id: Optional[str] = Field(default=None, description="Execution ID, for run events")
    level: str = Field(description="Log level (debug, info, warning, error)")
    message: str = Field(description="Log message")
    context: Optional[dict] = Field(default=None, description="Additional context data")
    timestamp: datetime = Field(description="Log timestamp")

    class Config:
        from_attributes = True


class WorkflowLogListResponse(BaseModel):
    logs: List[WorkflowLogResponse]
    total: int
    page: int
    per_page: int
