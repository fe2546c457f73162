"""Execution models for the workflow engine."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import ExecutionStatus, StepStatus
from db.base import TenantModel, UTCDateTime


class WorkflowExecution(TenantModel):
    """One run of a workflow.

    Attributes:
        workflow_id: Workflow that ran
        workflow_version: Version of the definition snapshot used
        status: running, completed, failed or cancelled
        trigger_data: Payload of the trigger that started the run
        context: ``{variables, stepResults}`` as of the last update
        started_at / completed_at: Run boundaries
        duration: Milliseconds from start to terminal state
        error: Failure message, set together with a terminal failure
        failed_step_id: Step whose retries ran out, if any
    """

    __tablename__ = "workflow_executions"

    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    workflow_version: Mapped[int] = mapped_column(default=1)
    status: Mapped[str] = mapped_column(default=ExecutionStatus.RUNNING.value, index=True)
    trigger_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    duration: Mapped[Optional[int]] = mapped_column(nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failed_step_id: Mapped[Optional[str]] = mapped_column(nullable=True)


class WorkflowStepExecution(TenantModel):
    """Outcome of one step within one execution."""

    __tablename__ = "workflow_step_executions"

    execution_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Plain column: the step may be removed from the workflow later
    step_id: Mapped[str] = mapped_column(nullable=False, index=True)
    status: Mapped[str] = mapped_column(default=StepStatus.RUNNING.value)
    input: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    output: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    attempts: Mapped[int] = mapped_column(default=0)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    duration: Mapped[Optional[int]] = mapped_column(nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
