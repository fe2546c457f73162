"""Execution persistence, queries and analytics.

DatabaseRecorder is the ExecutionRecorder the services hand to the engine.
It writes each transition in its own short session and commits, so
progress is visible to other requests while a run is in flight and a
cancellation written elsewhere is seen at the next step boundary.
"""

from datetime import datetime
from typing import Optional, Sequence
from uuid import uuid4

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from actions.base_action import ActionServices
from app.config import Settings, get_settings
from core.constants import REDACTED, ExecutionStatus, LogLevel, StepStatus
from core.exceptions import NotFoundError, ValidationError
from core.utils import ensure_utc, json_safe, mask_secrets, utc_now
from db.models.execution import WorkflowExecution, WorkflowStepExecution
from notifications.channels import EmailChannel
from notifications.manager import get_notification_manager
from services.audit_service import AuditLogger
from services.base import BaseService
from services.record_service import RecordService
from workflow.definition import StepDefinition
from workflow.engine import ExecutionContext, StepResult

logger = structlog.get_logger(__name__)


def build_action_services(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Optional[Settings] = None,
) -> ActionServices:
    """Production collaborators for action handlers."""
    settings = settings or get_settings()
    email_config = {
        "smtp_host": settings.SMTP_HOST,
        "smtp_port": settings.SMTP_PORT,
        "smtp_user": settings.SMTP_USER,
        "smtp_password": settings.SMTP_PASSWORD,
        "from_address": settings.SMTP_FROM,
        "use_tls": settings.SMTP_USE_TLS,
    }
    notifier = get_notification_manager()
    if not notifier.get_status()["initialized"]:
        notifier.configure_channels({"email": email_config, "webhook": {}})
    return ActionServices(
        email_sender=EmailChannel(email_config),
        notifier=notifier,
        record_store=RecordService(session_factory),
        http_timeout=settings.HTTP_ACTION_TIMEOUT,
        max_delay_ms=settings.MAX_DELAY_MS,
    )


# ─── Recorder ─────────────────────────────────────────────────

class DatabaseRecorder:
    """Persists engine transitions for one execution."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        execution_id: str,
        secret_names: Sequence[str] = (),
    ):
        self._session_factory = session_factory
        self._execution_id = execution_id
        self._secret_names = set(secret_names)
        self._step_rows: dict[str, str] = {}

    def _secret_values(self, context: ExecutionContext) -> list[str]:
        values = (context.variables.get(name) for name in self._secret_names)
        return [str(v) for v in values if v is not None and str(v)]

    def _safe(self, context: ExecutionContext, value):
        """JSON-safe copy of ``value`` with secret plaintext masked."""
        return mask_secrets(json_safe(value), self._secret_values(context))

    def _persisted_context(self, context: ExecutionContext) -> dict:
        data = context.to_dict()
        data["variables"] = {
            name: REDACTED if name in self._secret_names else value
            for name, value in data["variables"].items()
        }
        return self._safe(context, data)

    async def execution_started(self, context: ExecutionContext) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(WorkflowExecution)
                .where(WorkflowExecution.id == self._execution_id)
                .values(context=self._persisted_context(context))
            )
            await session.commit()

    async def step_started(self, context: ExecutionContext, step: StepDefinition, result: StepResult) -> None:
        async with self._session_factory() as session:
            row_id = str(uuid4())
            session.add(WorkflowStepExecution(
                id=row_id,
                tenant_id=context.tenant_id,
                execution_id=self._execution_id,
                step_id=step.id,
                status=StepStatus.RUNNING.value,
                input=self._safe(context, result.input),
                attempts=0,
                started_at=result.started_at,
            ))
            await session.commit()
        self._step_rows[step.id] = row_id

    async def step_retrying(
        self, context: ExecutionContext, step: StepDefinition, attempts: int, error: str, delay: float
    ) -> None:
        async with self._session_factory() as session:
            row_id = self._step_rows.get(step.id)
            if row_id:
                await session.execute(
                    update(WorkflowStepExecution)
                    .where(WorkflowStepExecution.id == row_id)
                    .values(status=StepStatus.RETRYING.value, attempts=attempts, error=error)
                )
            await AuditLogger(session).log(
                context.tenant_id,
                context.workflow_id,
                LogLevel.WARNING,
                f'Step "{step.name}" failed, retrying in {delay:g}s',
                {"step_id": step.id, "attempt": attempts, "error": error, "delay_seconds": delay},
                execution_id=self._execution_id,
            )
            await session.commit()

    async def step_finished(self, context: ExecutionContext, step: StepDefinition, result: StepResult) -> None:
        values = dict(
            status=result.status.value,
            input=self._safe(context, result.input),
            output=self._safe(context, result.output),
            attempts=result.attempts,
            started_at=result.started_at,
            completed_at=result.completed_at,
            duration=result.duration_ms,
            error=result.error,
        )
        async with self._session_factory() as session:
            row_id = self._step_rows.get(step.id)
            if row_id:
                await session.execute(
                    update(WorkflowStepExecution).where(WorkflowStepExecution.id == row_id).values(**values)
                )
            else:
                session.add(WorkflowStepExecution(
                    tenant_id=context.tenant_id,
                    execution_id=self._execution_id,
                    step_id=step.id,
                    **values,
                ))
            await session.execute(
                update(WorkflowExecution)
                .where(WorkflowExecution.id == self._execution_id)
                .values(context=self._persisted_context(context))
            )
            if result.status is StepStatus.FAILED:
                await AuditLogger(session).log(
                    context.tenant_id,
                    context.workflow_id,
                    LogLevel.ERROR,
                    f'Step "{step.name}" failed after {result.attempts} attempt(s): {result.error}',
                    {"step_id": step.id, "attempts": result.attempts},
                    execution_id=self._execution_id,
                )
            await session.commit()

    async def execution_finished(self, context: ExecutionContext) -> None:
        async with self._session_factory() as session:
            # Status only moves out of RUNNING once
            transition = await session.execute(
                update(WorkflowExecution)
                .where(
                    WorkflowExecution.id == self._execution_id,
                    WorkflowExecution.status == ExecutionStatus.RUNNING.value,
                )
                .values(
                    status=context.status.value,
                    completed_at=context.completed_at,
                    duration=context.duration_ms,
                    error=context.error,
                    failed_step_id=context.failed_step_id,
                )
            )
            if transition.rowcount == 0:
                logger.info(
                    "Execution already terminal, outcome not recorded",
                    execution_id=self._execution_id,
                    outcome=context.status.value,
                )
                return

            await session.execute(
                update(WorkflowExecution)
                .where(WorkflowExecution.id == self._execution_id)
                .values(context=self._persisted_context(context))
            )

            level = {
                ExecutionStatus.COMPLETED: LogLevel.INFO,
                ExecutionStatus.FAILED: LogLevel.ERROR,
            }.get(context.status, LogLevel.WARNING)
            message = f"Execution {context.status.value}"
            if context.error:
                message = f"{message}: {context.error}"
            await AuditLogger(session).log(
                context.tenant_id,
                context.workflow_id,
                level,
                message,
                {
                    "status": context.status.value,
                    "duration_ms": context.duration_ms,
                    "failed_step_id": context.failed_step_id,
                    "steps": len(context.step_results),
                },
                execution_id=self._execution_id,
            )
            await session.commit()

    async def is_cancelled(self, context: ExecutionContext) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WorkflowExecution.status).where(WorkflowExecution.id == self._execution_id)
            )
            return result.scalar_one_or_none() == ExecutionStatus.CANCELLED.value


# ─── Queries ──────────────────────────────────────────────────

class ExecutionService(BaseService[WorkflowExecution]):
    """Service for execution queries, cancellation and analytics."""

    def __init__(self, db: AsyncSession):
        super().__init__(WorkflowExecution, db)
        self.audit = AuditLogger(db)

    async def get_execution(self, tenant_id: str, execution_id: str) -> WorkflowExecution:
        execution = await self.get_by_id(execution_id, tenant_id)
        if execution is None:
            raise NotFoundError("Execution not found")
        return execution

    async def get_step_executions(self, tenant_id: str, execution_id: str) -> Sequence[WorkflowStepExecution]:
        result = await self.db.execute(
            select(WorkflowStepExecution)
            .where(
                WorkflowStepExecution.tenant_id == tenant_id,
                WorkflowStepExecution.execution_id == execution_id,
            )
            .order_by(WorkflowStepExecution.started_at)
        )
        return result.scalars().all()

    async def get_executions(
        self,
        tenant_id: str,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[Sequence[WorkflowExecution], int]:
        """Executions newest first, filtered by workflow, status and start time."""
        conditions = []
        if start is not None:
            conditions.append(WorkflowExecution.started_at >= start)
        if end is not None:
            conditions.append(WorkflowExecution.started_at <= end)
        return await self.list(
            tenant_id,
            offset=offset,
            limit=limit,
            order_by="started_at",
            filters={"workflow_id": workflow_id, "status": status},
            conditions=conditions,
        )

    async def cancel_execution(self, tenant_id: str, execution_id: str, engine=None) -> WorkflowExecution:
        """Cancel a RUNNING execution.

        The row is marked CANCELLED right away; the engine running it stops
        at its next step boundary.

        Raises:
            NotFoundError: Unknown execution
            ValidationError: Execution already reached a terminal state
        """
        execution = await self.get_execution(tenant_id, execution_id)
        if execution.status != ExecutionStatus.RUNNING.value:
            raise ValidationError(f"Execution is already {execution.status}")

        now = utc_now()
        execution.status = ExecutionStatus.CANCELLED.value
        execution.completed_at = now
        execution.duration = int((now - ensure_utc(execution.started_at)).total_seconds() * 1000)
        execution.error = "Execution cancelled"
        await self.db.flush()

        if engine is not None:
            await engine.cancel_execution(execution_id)

        await self.audit.log(
            tenant_id, execution.workflow_id, LogLevel.WARNING, "Execution cancelled",
            {"status": execution.status}, execution_id=execution_id,
        )
        return execution

    async def get_workflow_analytics(self, tenant_id: str, start: datetime, end: datetime) -> dict:
        """Execution counts, top workflows, average duration and failure rate."""
        in_range = (
            WorkflowExecution.tenant_id == tenant_id,
            WorkflowExecution.started_at >= start,
            WorkflowExecution.started_at <= end,
        )

        total = (await self.db.execute(
            select(func.count()).select_from(WorkflowExecution).where(*in_range)
        )).scalar() or 0

        by_status_rows = await self.db.execute(
            select(WorkflowExecution.status, func.count())
            .where(*in_range)
            .group_by(WorkflowExecution.status)
        )
        by_status = {status: count for status, count in by_status_rows.all()}

        count_col = func.count().label("executions")
        by_workflow_rows = await self.db.execute(
            select(WorkflowExecution.workflow_id, count_col)
            .where(*in_range)
            .group_by(WorkflowExecution.workflow_id)
            .order_by(count_col.desc())
            .limit(10)
        )
        by_workflow = [
            {"workflowId": workflow_id, "executions": count}
            for workflow_id, count in by_workflow_rows.all()
        ]

        average = (await self.db.execute(
            select(func.avg(WorkflowExecution.duration)).where(
                *in_range, WorkflowExecution.status == ExecutionStatus.COMPLETED.value
            )
        )).scalar()

        failed = by_status.get(ExecutionStatus.FAILED.value, 0)
        failure_rate = f"{failed / total * 100:.2f}" if total else "0.00"

        return {
            "totalExecutions": total,
            "executionsByStatus": by_status,
            "executionsByWorkflow": by_workflow,
            "averageDuration": float(average or 0),
            "failureRate": failure_rate,
            "timeRange": {"start": start.isoformat(), "end": end.isoformat()},
        }
