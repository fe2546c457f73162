"""Workflow service: definition CRUD + execution dispatch."""

from datetime import datetime, timezone
from typing import Any, Optional, Sequence
from uuid import uuid4

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.constants import ExecutionStatus, LogLevel, StepType, TriggerType
from core.exceptions import ExecutionFailure, NotFoundError, ValidationError, WorkflowEngineError
from db.models.execution import WorkflowExecution, WorkflowStepExecution
from db.models.schedule import WorkflowSchedule
from db.models.workflow import Workflow
from db.models.workflow_log import WorkflowLog
from db.models.workflow_step import WorkflowStep
from db.models.workflow_variable import WorkflowVariable
from services.audit_service import AuditLogger
from services.base import BaseService
from services.execution_service import DatabaseRecorder, build_action_services
from services.variable_service import VariableService, is_secret
from workflow.definition import StepDefinition, WorkflowSnapshot
from workflow.engine import WorkflowEngine
from workflow.retry_strategies import RetryStrategy
from workflow.validator import ValidationReport, check, find_cycle, validate

logger = structlog.get_logger(__name__)

WORKFLOW_FIELDS = ("name", "description", "trigger", "trigger_config", "is_active", "tags", "metadata")
STEP_FIELDS = (
    "name", "type", "action", "config", "position", "condition",
    "retry_config", "timeout", "dependencies", "is_active",
)


class WorkflowService(BaseService[Workflow]):
    """Service for workflow management and execution.

    Args:
        db: Request-scoped session
        engine: Engine used for runs (built from production collaborators if omitted)
        session_factory: Factory for the short sessions the run recorder uses;
            defaults to one bound to the same engine as ``db``
        scheduler: Scheduler whose timers are stopped when a workflow is deleted
    """

    def __init__(
        self,
        db: AsyncSession,
        engine: Optional[WorkflowEngine] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        scheduler=None,
    ):
        super().__init__(Workflow, db)
        self.audit = AuditLogger(db)
        self.variables = VariableService(db)
        self.session_factory = session_factory or async_sessionmaker(db.bind, expire_on_commit=False)
        self.scheduler = scheduler
        self._engine = engine

    @property
    def engine(self) -> WorkflowEngine:
        if self._engine is None:
            self._engine = WorkflowEngine(services=build_action_services(self.session_factory))
        return self._engine

    # ─── Workflows ─────────────────────────────────────────

    async def create_workflow(
        self,
        tenant_id: str,
        name: str,
        description: str = "",
        trigger: str = TriggerType.MANUAL.value,
        trigger_config: Optional[dict] = None,
        is_active: bool = True,
        tags: Optional[list] = None,
        metadata: Optional[dict] = None,
        created_by: Optional[str] = None,
    ) -> Workflow:
        """Create a new workflow (no steps yet)."""
        _check_workflow_fields({"name": name, "trigger": trigger})
        workflow = await self.create({
            "tenant_id": tenant_id,
            "name": name.strip(),
            "description": description or "",
            "trigger": trigger,
            "trigger_config": trigger_config or {},
            "is_active": is_active,
            "tags": tags or [],
            "metadata_": metadata or {},
            "created_by": created_by,
            "version": 1,
        })
        await self.audit.log(tenant_id, workflow.id, LogLevel.INFO, f'Workflow "{workflow.name}" created')
        return workflow

    async def get_workflow(self, tenant_id: str, workflow_id: str) -> Workflow:
        workflow = await self.get_by_id(workflow_id, tenant_id)
        if workflow is None:
            raise NotFoundError("Workflow not found")
        return workflow

    async def get_workflows(
        self,
        tenant_id: str,
        is_active: Optional[bool] = None,
        trigger: Optional[str] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[Sequence[Workflow], int]:
        conditions = []
        if search:
            conditions.append(Workflow.name.ilike(f"%{search}%"))
        return await self.list(
            tenant_id,
            offset=offset,
            limit=limit,
            filters={"is_active": is_active, "trigger": trigger},
            conditions=conditions,
        )

    async def update_workflow(self, tenant_id: str, workflow_id: str, data: dict[str, Any]) -> Workflow:
        """Update workflow attributes and bump its version."""
        workflow = await self.get_workflow(tenant_id, workflow_id)
        changes = {k: v for k, v in data.items() if k in WORKFLOW_FIELDS and v is not None}
        _check_workflow_fields(changes)

        for key, value in changes.items():
            setattr(workflow, "metadata_" if key == "metadata" else key, value)
        workflow.version += 1
        await self.db.flush()

        await self.audit.log(
            tenant_id, workflow_id, LogLevel.INFO, f'Workflow "{workflow.name}" updated',
            {"fields": sorted(changes), "version": workflow.version},
        )
        await self.db.refresh(workflow)
        return workflow

    async def delete_workflow(self, tenant_id: str, workflow_id: str) -> None:
        """Delete a workflow with its steps, variables, schedules, executions and logs.

        Executions already running are not interrupted; only their records go.
        """
        workflow = await self.get_workflow(tenant_id, workflow_id)

        schedule_ids = (await self.db.execute(
            select(WorkflowSchedule.id).where(
                WorkflowSchedule.tenant_id == tenant_id,
                WorkflowSchedule.workflow_id == workflow_id,
            )
        )).scalars().all()
        if self.scheduler is not None:
            for schedule_id in schedule_ids:
                await self.scheduler.cancel(schedule_id)

        execution_ids = select(WorkflowExecution.id).where(
            WorkflowExecution.tenant_id == tenant_id,
            WorkflowExecution.workflow_id == workflow_id,
        )
        await self.db.execute(
            delete(WorkflowStepExecution).where(WorkflowStepExecution.execution_id.in_(execution_ids))
        )
        for model in (WorkflowExecution, WorkflowLog, WorkflowSchedule, WorkflowVariable, WorkflowStep):
            await self.db.execute(
                delete(model).where(model.tenant_id == tenant_id, model.workflow_id == workflow_id)
            )
        await self.db.delete(workflow)
        await self.db.flush()

        # The workflow's own log went with it
        logger.info(
            "Workflow deleted",
            tenant_id=tenant_id,
            workflow_id=workflow_id,
            name=workflow.name,
            schedules_stopped=len(schedule_ids),
        )

    # ─── Steps ─────────────────────────────────────────────

    async def get_steps(self, tenant_id: str, workflow_id: str) -> Sequence[WorkflowStep]:
        """Steps of a workflow in execution order."""
        result = await self.db.execute(
            select(WorkflowStep)
            .where(WorkflowStep.tenant_id == tenant_id, WorkflowStep.workflow_id == workflow_id)
            .order_by(WorkflowStep.position, WorkflowStep.created_at)
        )
        return result.scalars().all()

    async def get_step(self, tenant_id: str, workflow_id: str, step_id: str) -> WorkflowStep:
        result = await self.db.execute(
            select(WorkflowStep).where(
                WorkflowStep.id == step_id,
                WorkflowStep.tenant_id == tenant_id,
                WorkflowStep.workflow_id == workflow_id,
            )
        )
        step = result.scalar_one_or_none()
        if step is None:
            raise NotFoundError("Step not found")
        return step

    async def add_step(
        self,
        tenant_id: str,
        workflow_id: str,
        name: str,
        action: str,
        type: str = StepType.ACTION.value,
        config: Optional[dict] = None,
        position: Optional[int] = None,
        condition: Optional[dict] = None,
        retry_config: Optional[dict] = None,
        timeout: Optional[int] = None,
        dependencies: Optional[list] = None,
        is_active: bool = True,
    ) -> WorkflowStep:
        """Append a step to a workflow.

        Raises:
            NotFoundError: Unknown workflow
            ValidationError: Unknown action, dangling dependency or a cycle
        """
        workflow = await self.get_workflow(tenant_id, workflow_id)
        siblings = await self.get_steps(tenant_id, workflow_id)

        if position is None:
            position = max((s.position for s in siblings), default=0) + 1

        step = WorkflowStep(
            id=str(uuid4()),
            tenant_id=tenant_id,
            workflow_id=workflow_id,
            name=(name or "").strip(),
            type=type,
            action=action,
            config=config or {},
            position=position,
            condition=condition,
            retry_config=_normalize_retry(retry_config) if retry_config else None,
            timeout=timeout,
            dependencies=list(dependencies or []),
            is_active=is_active,
        )
        self._check_step(step, siblings)

        self.db.add(step)
        workflow.version += 1
        await self.db.flush()
        await self.audit.log(
            tenant_id, workflow_id, LogLevel.INFO, f'Step "{step.name}" added',
            {"step_id": step.id, "action": step.action, "position": step.position},
        )
        await self.db.refresh(step)
        return step

    async def update_step(
        self, tenant_id: str, workflow_id: str, step_id: str, data: dict[str, Any]
    ) -> WorkflowStep:
        """Update a step; the result is validated against its siblings first."""
        workflow = await self.get_workflow(tenant_id, workflow_id)
        step = await self.get_step(tenant_id, workflow_id, step_id)
        siblings = [s for s in await self.get_steps(tenant_id, workflow_id) if s.id != step_id]

        changes = {k: v for k, v in data.items() if k in STEP_FIELDS and v is not None}
        if "retry_config" in changes:
            changes["retry_config"] = _normalize_retry(changes["retry_config"])
        if "name" in changes:
            changes["name"] = changes["name"].strip()

        candidate = _StepView(step, changes)
        self._check_step(candidate, siblings)

        for key, value in changes.items():
            setattr(step, key, value)
        workflow.version += 1
        await self.db.flush()
        await self.audit.log(
            tenant_id, workflow_id, LogLevel.INFO, f'Step "{step.name}" updated',
            {"step_id": step.id, "fields": sorted(changes)},
        )
        await self.db.refresh(step)
        return step

    async def remove_step(self, tenant_id: str, workflow_id: str, step_id: str) -> None:
        """Remove a step. Refused while other steps still depend on it."""
        workflow = await self.get_workflow(tenant_id, workflow_id)
        step = await self.get_step(tenant_id, workflow_id, step_id)
        dependents = [
            s.name for s in await self.get_steps(tenant_id, workflow_id)
            if step_id in (s.dependencies or ())
        ]
        if dependents:
            raise ValidationError(
                f'Step "{step.name}" is a dependency of: {", ".join(dependents)}', step_id=step_id
            )

        await self.db.delete(step)
        workflow.version += 1
        await self.db.flush()
        await self.audit.log(
            tenant_id, workflow_id, LogLevel.INFO, f'Step "{step.name}" removed', {"step_id": step_id},
        )

    def _check_step(self, step, siblings: Sequence[WorkflowStep]) -> None:
        if not step.name:
            raise ValidationError("Step name is required", step_id=step.id)
        if step.type not in StepType._value2member_map_:
            raise ValidationError(f"Unknown step type: {step.type}", step_id=step.id)

        registry = self.engine.registry
        if step.type == StepType.PARALLEL.value:
            branches = (step.config or {}).get("branches")
            if not isinstance(branches, list) or not branches:
                raise ValidationError("Parallel step needs a non-empty 'branches' list", step_id=step.id)
            for branch in branches:
                if not isinstance(branch, dict):
                    raise ValidationError("Each parallel branch must be an object", step_id=step.id)
                registry.ensure_known(branch.get("action"))
        else:
            registry.ensure_known(step.action)

        if step.timeout is not None and step.timeout <= 0:
            raise ValidationError("Step timeout must be a positive number of milliseconds", step_id=step.id)
        if step.condition is not None and not isinstance(step.condition, dict):
            raise ValidationError("Step condition must be an object", step_id=step.id)

        sibling_ids = {s.id for s in siblings}
        for dep_id in step.dependencies or ():
            if dep_id == step.id or dep_id not in sibling_ids:
                raise ValidationError(f"Dependency {dep_id} is not a step of this workflow", step_id=step.id)

        cycle = find_cycle([*siblings, step])
        if cycle:
            raise ValidationError(f"Circular dependency detected: {' -> '.join(cycle)}", step_id=step.id)

    # ─── Validation ────────────────────────────────────────

    async def validate_workflow(self, tenant_id: str, workflow_id: str) -> ValidationReport:
        await self.get_workflow(tenant_id, workflow_id)
        return check(await self.get_steps(tenant_id, workflow_id))

    async def load_snapshot(self, tenant_id: str, workflow_id: str) -> tuple[WorkflowSnapshot, list[str]]:
        """Freeze a workflow for execution.

        Returns:
            The snapshot and the names of secret variables in its context
        """
        workflow = await self.get_workflow(tenant_id, workflow_id)
        steps = await self.get_steps(tenant_id, workflow_id)
        variables = await self.variables.get_variables(tenant_id, workflow_id)
        snapshot = WorkflowSnapshot(
            id=workflow.id,
            tenant_id=tenant_id,
            name=workflow.name,
            version=workflow.version,
            steps=tuple(StepDefinition.from_model(s) for s in steps),
            variables=await self.variables.build_variable_context(tenant_id, workflow_id),
        )
        return snapshot, [v.name for v in variables if is_secret(v)]

    # ─── Execution ─────────────────────────────────────────

    async def execute_workflow(
        self,
        tenant_id: str,
        workflow_id: str,
        trigger_data: Optional[dict] = None,
        raise_on_failure: bool = True,
    ) -> WorkflowExecution:
        """Run a workflow to a terminal state.

        The execution row is committed before the first step so progress and
        cancellation are visible to other sessions while the run is in flight.

        Raises:
            NotFoundError: Unknown or inactive workflow
            ValidationError: Empty workflow, dangling dependency or cycle
            ExecutionFailure: The run ended FAILED (after it was recorded)
        """
        workflow = await self.get_workflow(tenant_id, workflow_id)
        if not workflow.is_active:
            raise NotFoundError("Workflow is not active")

        snapshot, secret_names = await self.load_snapshot(tenant_id, workflow_id)
        validate(snapshot.steps)

        trigger_data = trigger_data if isinstance(trigger_data, dict) else {}
        execution = WorkflowExecution(
            id=str(uuid4()),
            tenant_id=tenant_id,
            workflow_id=workflow_id,
            workflow_version=snapshot.version,
            trigger_data=trigger_data,
            context={"variables": {}, "stepResults": {}},
            started_at=datetime.now(timezone.utc),
        )
        self.db.add(execution)
        await self.db.flush()
        await self.audit.log(
            tenant_id, workflow_id, LogLevel.INFO, "Execution started",
            {"trigger": trigger_data.get("trigger", TriggerType.MANUAL.value), "version": snapshot.version},
            execution_id=execution.id,
        )
        await self.db.commit()

        recorder = DatabaseRecorder(self.session_factory, execution.id, secret_names)
        context = await self.engine.execute(snapshot, execution.id, trigger_data, recorder)

        await self.db.refresh(execution)
        if context.status is ExecutionStatus.FAILED and raise_on_failure:
            raise ExecutionFailure(context.error or "Execution failed", execution.id, context.failed_step_id)
        return execution

    async def bulk_execute(
        self,
        tenant_id: str,
        workflow_ids: Sequence[str],
        trigger_data: Optional[dict] = None,
    ) -> dict:
        """Execute several workflows one after another; one failure does not stop the rest."""
        results = []
        for workflow_id in workflow_ids:
            try:
                execution = await self.execute_workflow(
                    tenant_id, workflow_id, trigger_data, raise_on_failure=False
                )
            except WorkflowEngineError as e:
                results.append({"workflowId": workflow_id, "success": False, "error": e.message})
                continue
            results.append({
                "workflowId": workflow_id,
                "success": execution.status == ExecutionStatus.COMPLETED.value,
                "execution": execution,
            })
        return {"results": results, "totalRequested": len(workflow_ids)}

    async def trigger_webhook(
        self,
        tenant_id: str,
        payload: Any = None,
        webhook_url: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> Optional[WorkflowExecution]:
        """Handle an inbound webhook.

        With a workflow id the payload starts a run; without one the
        webhook is only acknowledged.
        """
        if workflow_id is None:
            logger.info("Webhook received without target workflow", tenant_id=tenant_id, webhook_url=webhook_url)
            return None
        trigger_data = {
            "trigger": TriggerType.WEBHOOK.value,
            "payload": payload if payload is not None else {},
            "webhookUrl": webhook_url,
        }
        return await self.execute_workflow(tenant_id, workflow_id, trigger_data, raise_on_failure=False)


class _StepView:
    """A step row with pending changes applied, for validation before writing."""

    def __init__(self, step: WorkflowStep, changes: dict[str, Any]):
        self._step = step
        self._changes = changes

    def __getattr__(self, item):
        if item in self._changes:
            return self._changes[item]
        return getattr(self._step, item)


def _normalize_retry(retry_config: dict) -> dict:
    try:
        return RetryStrategy.from_dict(retry_config).to_dict()
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid retry policy: {e}")


def _check_workflow_fields(data: dict[str, Any]) -> None:
    if "name" in data and not (data["name"] or "").strip():
        raise ValidationError("Workflow name is required")
    if "trigger" in data and data["trigger"] not in TriggerType._value2member_map_:
        raise ValidationError(f"Unknown trigger: {data['trigger']}")
