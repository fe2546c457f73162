"""Workflow Execution Engine: dependency-gated step runner.

Takes a WorkflowSnapshot and runs its steps one at a time:

- Steps are considered in ascending ``position``.
- A step is eligible once every dependency is COMPLETED or SKIPPED.
- A step whose condition is false is SKIPPED without invoking its handler.
- A failing handler is retried per the step's retry policy; once retries
  are exhausted the execution FAILS and no further steps run.
- Each step's output is written once into ``stepResults[step_id]`` and is
  visible to later steps through the template resolver.
- Cancellation is honoured at step boundaries.

The engine knows nothing about storage. Lifecycle transitions are reported
to an ExecutionRecorder; the service layer supplies a database-backed one.
"""

import asyncio
import copy
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import structlog

from actions.base_action import ActionContext, ActionServices, BaseAction
from actions.registry import ActionRegistry, get_action_registry
from core.constants import ExecutionStatus, StepStatus, StepType
from core.exceptions import StepExecutionError
from core.logging_config import bound_execution
from workflow.conditions import evaluate_condition
from workflow.definition import StepDefinition, WorkflowSnapshot
from workflow.resolver import TemplateResolver
from workflow.retry_strategies import RetriesExhausted, execute_with_retry

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─── Execution Context ────────────────────────────────────────

@dataclass
class StepResult:
    """Outcome of one step within one execution."""
    step_id: str
    status: StepStatus
    input: Any = None
    output: Any = None
    error: Optional[str] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: int = 0


@dataclass
class ExecutionContext:
    """Per-execution state: variables, trigger data and step outputs.

    ``step_results`` is write-once per step id.
    """

    execution_id: str
    workflow_id: str
    tenant_id: str
    variables: dict[str, Any] = field(default_factory=dict)
    trigger_data: dict[str, Any] = field(default_factory=dict)
    step_results: dict[str, Any] = field(default_factory=dict)
    steps: dict[str, StepResult] = field(default_factory=dict)
    status: ExecutionStatus = ExecutionStatus.RUNNING
    error: Optional[str] = None
    failed_step_id: Optional[str] = None
    current_step_id: Optional[str] = None
    cancel_requested: bool = False
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    def record_output(self, step_id: str, output: Any) -> None:
        if step_id in self.step_results:
            raise RuntimeError(f"Result for step {step_id} already recorded")
        self.step_results[step_id] = output

    def resolver(self) -> TemplateResolver:
        """Resolver over a snapshot of the context as it is right now."""
        return TemplateResolver.from_parts(self.variables, self.trigger_data, self.step_results)

    def finish(self, status: ExecutionStatus, error: Optional[str] = None) -> None:
        """Move to a terminal state. Terminal states never change again."""
        if self.status.is_terminal:
            return
        self.status = status
        self.error = error
        self.completed_at = _utcnow()

    @property
    def duration_ms(self) -> Optional[int]:
        if self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> dict:
        """The persisted execution context."""
        return {"variables": self.variables, "stepResults": self.step_results}


# ─── Recorder ─────────────────────────────────────────────────

class ExecutionRecorder(Protocol):
    """Receives lifecycle transitions of one execution."""

    async def execution_started(self, context: ExecutionContext) -> None: ...

    async def step_started(self, context: ExecutionContext, step: StepDefinition, result: StepResult) -> None: ...

    async def step_retrying(
        self, context: ExecutionContext, step: StepDefinition, attempts: int, error: str, delay: float
    ) -> None: ...

    async def step_finished(self, context: ExecutionContext, step: StepDefinition, result: StepResult) -> None: ...

    async def execution_finished(self, context: ExecutionContext) -> None: ...

    async def is_cancelled(self, context: ExecutionContext) -> bool: ...


class InMemoryRecorder:
    """Recorder that keeps every event in memory. Used in tests and scripts."""

    def __init__(self):
        self.events: list[tuple] = []
        self.step_records: dict[str, StepResult] = {}
        self.cancelled: set[str] = set()

    async def execution_started(self, context: ExecutionContext) -> None:
        self.events.append(("execution_started", context.execution_id))

    async def step_started(self, context: ExecutionContext, step: StepDefinition, result: StepResult) -> None:
        self.events.append(("step_started", step.id))
        self.step_records[step.id] = result

    async def step_retrying(
        self, context: ExecutionContext, step: StepDefinition, attempts: int, error: str, delay: float
    ) -> None:
        self.events.append(("step_retrying", step.id, attempts, delay))

    async def step_finished(self, context: ExecutionContext, step: StepDefinition, result: StepResult) -> None:
        self.events.append(("step_finished", step.id, result.status))
        self.step_records[step.id] = result

    async def execution_finished(self, context: ExecutionContext) -> None:
        self.events.append(("execution_finished", context.status))

    async def is_cancelled(self, context: ExecutionContext) -> bool:
        return context.execution_id in self.cancelled


# ─── Workflow Engine ───────────────────────────────────────────

class WorkflowEngine:
    """Runs workflow snapshots to a terminal state.

    Multiple executions may run concurrently on one engine; within an
    execution steps run strictly one after another.
    """

    def __init__(
        self,
        registry: Optional[ActionRegistry] = None,
        services: Optional[ActionServices] = None,
        sleep=None,
    ):
        self._registry = registry or get_action_registry()
        self._services = services or ActionServices()
        self._sleep = sleep or self._services.sleep
        self._running_executions: dict[str, ExecutionContext] = {}

    @property
    def registry(self) -> ActionRegistry:
        return self._registry

    async def execute(
        self,
        snapshot: WorkflowSnapshot,
        execution_id: str,
        trigger_data: Optional[dict] = None,
        recorder: Optional[ExecutionRecorder] = None,
    ) -> ExecutionContext:
        """Execute a workflow snapshot.

        Args:
            snapshot: Definition frozen at execution start
            execution_id: Unique ID for this execution
            trigger_data: Payload of the trigger that started the run
            recorder: Receives lifecycle transitions (in-memory if omitted)

        Returns:
            The final ExecutionContext. Step failures never raise; inspect
            ``context.status`` and ``context.error``.
        """
        recorder = recorder or InMemoryRecorder()
        context = ExecutionContext(
            execution_id=execution_id,
            workflow_id=snapshot.id,
            tenant_id=snapshot.tenant_id,
            variables=copy.deepcopy(snapshot.variables),
            trigger_data=copy.deepcopy(trigger_data) if isinstance(trigger_data, dict) else {},
        )
        self._running_executions[execution_id] = context

        with bound_execution(execution_id, snapshot.id, snapshot.tenant_id):
            logger.info("Execution started", workflow=snapshot.name, version=snapshot.version)
            try:
                await recorder.execution_started(context)
                await self._run_steps(snapshot, context, recorder)
                context.finish(ExecutionStatus.COMPLETED)
            except asyncio.CancelledError:
                context.finish(ExecutionStatus.CANCELLED, "Execution task was cancelled")
                await self._finish(context, recorder)
                raise
            except Exception as e:
                logger.error("Execution aborted by internal error", error=str(e), exc_info=True)
                context.finish(ExecutionStatus.FAILED, str(e) or type(e).__name__)
            finally:
                self._running_executions.pop(execution_id, None)

            await self._finish(context, recorder)
        return context

    async def _finish(self, context: ExecutionContext, recorder: ExecutionRecorder) -> None:
        log = logger.error if context.status is ExecutionStatus.FAILED else logger.info
        log(
            "Execution finished",
            status=context.status.value,
            error=context.error,
            failed_step_id=context.failed_step_id,
            duration_ms=context.duration_ms,
        )
        await recorder.execution_finished(context)

    async def _run_steps(
        self,
        snapshot: WorkflowSnapshot,
        context: ExecutionContext,
        recorder: ExecutionRecorder,
    ) -> None:
        ordered = snapshot.ordered_steps
        # Inactive steps never run and count as satisfied
        satisfied = {step.id for step in ordered if not step.is_active}
        pending = [step for step in ordered if step.is_active]

        while True:
            # Also runs once after the last step
            if context.cancel_requested or await recorder.is_cancelled(context):
                logger.info("Execution cancelled at step boundary")
                context.finish(ExecutionStatus.CANCELLED, "Execution cancelled")
                return
            if not pending:
                return

            step = next(
                (s for s in pending if all(dep in satisfied for dep in s.dependencies)),
                None,
            )
            if step is None:
                blocked = ", ".join(s.id for s in pending)
                raise RuntimeError(f"No eligible step; unresolved dependencies for: {blocked}")

            pending.remove(step)
            result = await self._run_step(step, context, recorder)
            if result.status is StepStatus.FAILED:
                context.failed_step_id = step.id
                context.finish(ExecutionStatus.FAILED, f'Step "{step.name}" failed: {result.error}')
                return
            satisfied.add(step.id)

    async def _run_step(
        self,
        step: StepDefinition,
        context: ExecutionContext,
        recorder: ExecutionRecorder,
    ) -> StepResult:
        context.current_step_id = step.id
        resolver = context.resolver()
        started = time.monotonic()
        result = StepResult(step_id=step.id, status=StepStatus.RUNNING, started_at=_utcnow())

        try:
            should_run = evaluate_condition(step.condition, resolver)
        except Exception as e:
            logger.warning("Condition evaluation failed, skipping step", step_id=step.id, error=str(e))
            should_run = False

        if not should_run:
            result.status = StepStatus.SKIPPED
            self._complete(result, started)
            context.steps[step.id] = result
            logger.info("Step skipped", step_id=step.id, step=step.name)
            await recorder.step_finished(context, step, result)
            return result

        try:
            invoke, result.input = self._prepare(step, context, resolver)
        except StepExecutionError as e:
            result.status = StepStatus.FAILED
            result.error = e.message
            self._complete(result, started)
            context.steps[step.id] = result
            await recorder.step_finished(context, step, result)
            return result

        await recorder.step_started(context, step, result)

        async def on_retry(attempts: int, error: Exception, delay: float) -> None:
            result.attempts = attempts
            await recorder.step_retrying(context, step, attempts, _message(error), delay)

        timeout = step.timeout_ms / 1000 if step.timeout_ms else None
        try:
            outcome = await execute_with_retry(
                invoke, step.retry, timeout=timeout, on_retry=on_retry, sleep=self._sleep
            )
        except RetriesExhausted as e:
            result.status = StepStatus.FAILED
            result.error = e.message
            result.attempts = e.attempts
        else:
            result.status = StepStatus.COMPLETED
            result.output = outcome.output
            result.attempts = outcome.attempts
            context.record_output(step.id, outcome.output)

        self._complete(result, started)
        context.steps[step.id] = result
        logger.info(
            "Step finished",
            step_id=step.id,
            step=step.name,
            status=result.status.value,
            attempts=result.attempts,
            duration_ms=result.duration_ms,
        )
        await recorder.step_finished(context, step, result)
        return result

    def _prepare(self, step: StepDefinition, context: ExecutionContext, resolver: TemplateResolver):
        """Resolve the step config and bind the handler call.

        Returns a zero-argument coroutine factory (one call per attempt) and
        the resolved config that is recorded as the step input.
        """
        if step.type == StepType.PARALLEL.value:
            config = resolver.resolve(step.config)
            branches = self._prepare_branches(step, context, resolver)

            async def invoke_parallel():
                outcomes = await asyncio.gather(
                    *(action.run(cfg, ctx) for action, cfg, ctx in branches),
                    return_exceptions=True,
                )
                for outcome in outcomes:
                    if isinstance(outcome, BaseException):
                        raise outcome
                return list(outcomes)

            return invoke_parallel, config

        action = self._registry.create_instance(step.action, step_id=step.id)
        config = self._resolve_config(action, step.config, resolver)
        action_context = self._action_context(step.id, context, resolver)
        return (lambda: action.run(config, action_context)), config

    def _prepare_branches(self, step, context, resolver) -> list[tuple[BaseAction, dict, ActionContext]]:
        branches = step.config.get("branches")
        if not isinstance(branches, list) or not branches:
            raise StepExecutionError("Parallel step needs a non-empty 'branches' list", step_id=step.id)
        prepared = []
        for index, branch in enumerate(branches):
            if not isinstance(branch, dict):
                raise StepExecutionError(f"Parallel branch {index} must be an object", step_id=step.id)
            action = self._registry.create_instance(branch.get("action"), step_id=step.id)
            config = self._resolve_config(action, branch.get("config") or {}, resolver)
            branch_context = self._action_context(f"{step.id}[{index}]", context, resolver)
            prepared.append((action, config, branch_context))
        return prepared

    @staticmethod
    def _resolve_config(action: BaseAction, raw: dict, resolver: TemplateResolver) -> dict:
        resolved = resolver.resolve({k: v for k, v in raw.items() if k not in action.raw_config_keys})
        for key in action.raw_config_keys:
            if key in raw:
                resolved[key] = copy.deepcopy(raw[key])
        return resolved

    def _action_context(self, step_id: str, context: ExecutionContext, resolver: TemplateResolver) -> ActionContext:
        return ActionContext(
            tenant_id=context.tenant_id,
            workflow_id=context.workflow_id,
            execution_id=context.execution_id,
            step_id=step_id,
            resolver=resolver,
            services=self._services,
        )

    @staticmethod
    def _complete(result: StepResult, started: float) -> None:
        result.completed_at = _utcnow()
        result.duration_ms = int((time.monotonic() - started) * 1000)

    async def cancel_execution(self, execution_id: str) -> bool:
        """Request cancellation of an execution running on this engine.

        Returns:
            True if the execution was found, False otherwise
        """
        context = self._running_executions.get(execution_id)
        if context:
            context.cancel_requested = True
            logger.info("Execution marked for cancellation", execution_id=execution_id)
            return True
        return False

    def get_running_executions(self) -> dict[str, dict]:
        """Get status of all running executions."""
        return {
            eid: {
                "workflow_id": ctx.workflow_id,
                "current_step": ctx.current_step_id,
                "steps_completed": sum(1 for r in ctx.steps.values() if r.status is StepStatus.COMPLETED),
                "steps_skipped": sum(1 for r in ctx.steps.values() if r.status is StepStatus.SKIPPED),
            }
            for eid, ctx in self._running_executions.items()
        }


def _message(error: Exception) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return "Step timed out"
    return getattr(error, "message", None) or str(error) or type(error).__name__
