"""Schedule service: cron bindings of workflows.

Schedule rows live in the database; timers live in the WorkflowScheduler
handed in by the application. Without a scheduler (SCHEDULER_ENABLED off)
schedules are still stored and their next run computed, but nothing fires.
"""

from datetime import datetime, timezone
from typing import Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.constants import LogLevel, TriggerType
from core.exceptions import NotFoundError, WorkflowEngineError
from db.models.schedule import WorkflowSchedule
from db.models.workflow import Workflow
from services.audit_service import AuditLogger
from services.base import BaseService
from services.workflow_service import WorkflowService
from workflow.engine import WorkflowEngine
from workflow.scheduler import FireCallback, WorkflowScheduler, next_run, validate_cron

logger = structlog.get_logger(__name__)


def make_fire_callback(
    session_factory: async_sessionmaker[AsyncSession],
    scheduler: Optional[WorkflowScheduler] = None,
    engine: Optional[WorkflowEngine] = None,
) -> FireCallback:
    """Build the callback a schedule timer runs on every fire."""

    async def fire(schedule_id: str) -> None:
        async with session_factory() as session:
            schedule = await session.get(WorkflowSchedule, schedule_id)
            if schedule is None or not schedule.is_active:
                logger.warning("Fired schedule is gone or inactive", schedule_id=schedule_id)
                return
            tenant_id, workflow_id = schedule.tenant_id, schedule.workflow_id
            trigger_data = {
                **(schedule.config or {}),
                "trigger": TriggerType.SCHEDULE.value,
                "scheduleId": schedule_id,
            }

            service = WorkflowService(session, engine=engine, session_factory=session_factory)
            try:
                await service.execute_workflow(tenant_id, workflow_id, trigger_data)
            except NotFoundError as e:
                logger.warning("Scheduled workflow unavailable", schedule_id=schedule_id, error=e.message)
            except WorkflowEngineError as e:
                await AuditLogger(session).log(
                    tenant_id, workflow_id, LogLevel.ERROR, f"Scheduled run failed: {e.message}",
                    {"schedule_id": schedule_id},
                )

            now = scheduler.now() if scheduler else datetime.now(timezone.utc)
            schedule = await session.get(WorkflowSchedule, schedule_id)
            if schedule is not None:
                schedule.last_run_at = now
                schedule.next_run_at = next_run(schedule.cron_expression, schedule.timezone, now)
            await session.commit()

    return fire


class ScheduleService(BaseService[WorkflowSchedule]):
    """Service for workflow schedules."""

    def __init__(
        self,
        db: AsyncSession,
        scheduler: Optional[WorkflowScheduler] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        engine: Optional[WorkflowEngine] = None,
    ):
        super().__init__(WorkflowSchedule, db)
        self.audit = AuditLogger(db)
        self.scheduler = scheduler
        self.session_factory = session_factory or async_sessionmaker(db.bind, expire_on_commit=False)
        self.engine = engine

    async def get_schedule(self, tenant_id: str, schedule_id: str) -> WorkflowSchedule:
        schedule = await self.get_by_id(schedule_id, tenant_id)
        if schedule is None:
            raise NotFoundError("Schedule not found")
        return schedule

    async def get_schedules(
        self,
        tenant_id: str,
        workflow_id: Optional[str] = None,
        is_active: Optional[bool] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[Sequence[WorkflowSchedule], int]:
        return await self.list(
            tenant_id,
            offset=offset,
            limit=limit,
            filters={"workflow_id": workflow_id, "is_active": is_active},
        )

    async def schedule_workflow(
        self,
        tenant_id: str,
        workflow_id: str,
        name: str,
        cron_expression: str,
        timezone: str = "UTC",
        config: Optional[dict] = None,
        is_active: bool = True,
    ) -> WorkflowSchedule:
        """Bind a workflow to a cron expression.

        Raises:
            NotFoundError: Unknown workflow
            SchedulingError: Malformed cron expression or unknown timezone
        """
        result = await self.db.execute(
            select(Workflow).where(Workflow.id == workflow_id, Workflow.tenant_id == tenant_id)
        )
        workflow = result.scalar_one_or_none()
        if workflow is None:
            raise NotFoundError("Workflow not found")

        cron_expression = (cron_expression or "").strip()
        validate_cron(cron_expression, timezone)

        schedule = await self.create({
            "tenant_id": tenant_id,
            "workflow_id": workflow_id,
            "name": name,
            "cron_expression": cron_expression,
            "timezone": timezone,
            "config": config or {},
            "is_active": is_active,
            "next_run_at": next_run(cron_expression, timezone, self._now()) if is_active else None,
        })
        if is_active:
            self._register(schedule)

        await self.audit.log(
            tenant_id, workflow_id, LogLevel.INFO, f'Schedule "{name}" created',
            {"schedule_id": schedule.id, "cron": cron_expression, "timezone": timezone, "active": is_active},
        )
        return schedule

    async def activate_schedule(self, tenant_id: str, schedule_id: str) -> WorkflowSchedule:
        schedule = await self.get_schedule(tenant_id, schedule_id)
        schedule.is_active = True
        schedule.next_run_at = next_run(schedule.cron_expression, schedule.timezone, self._now())
        self._register(schedule)
        await self.db.flush()
        await self.audit.log(
            tenant_id, schedule.workflow_id, LogLevel.INFO, f'Schedule "{schedule.name}" activated',
            {"schedule_id": schedule_id},
        )
        await self.db.refresh(schedule)
        return schedule

    async def deactivate_schedule(self, tenant_id: str, schedule_id: str) -> WorkflowSchedule:
        schedule = await self.get_schedule(tenant_id, schedule_id)
        schedule.is_active = False
        schedule.next_run_at = None
        if self.scheduler is not None:
            await self.scheduler.cancel(schedule_id)
        await self.db.flush()
        await self.audit.log(
            tenant_id, schedule.workflow_id, LogLevel.INFO, f'Schedule "{schedule.name}" deactivated',
            {"schedule_id": schedule_id},
        )
        await self.db.refresh(schedule)
        return schedule

    async def delete_schedule(self, tenant_id: str, schedule_id: str) -> None:
        schedule = await self.get_schedule(tenant_id, schedule_id)
        if self.scheduler is not None:
            await self.scheduler.cancel(schedule_id)
        await self.db.delete(schedule)
        await self.db.flush()
        await self.audit.log(
            tenant_id, schedule.workflow_id, LogLevel.INFO, f'Schedule "{schedule.name}" deleted',
            {"schedule_id": schedule_id},
        )

    def _now(self) -> datetime:
        return self.scheduler.now() if self.scheduler else datetime.now(timezone.utc)

    def _register(self, schedule: WorkflowSchedule) -> None:
        if self.scheduler is None:
            return
        self.scheduler.register(
            schedule.id,
            schedule.cron_expression,
            schedule.timezone,
            make_fire_callback(self.session_factory, self.scheduler, self.engine),
        )


async def initialize_scheduler(
    scheduler: WorkflowScheduler,
    session_factory: async_sessionmaker[AsyncSession],
    engine: Optional[WorkflowEngine] = None,
) -> int:
    """Register timers for every active schedule of every tenant.

    Safe to call more than once; registering replaces existing timers.

    Returns:
        Number of schedules registered
    """
    callback = make_fire_callback(session_factory, scheduler, engine)
    registered = 0
    async with session_factory() as session:
        result = await session.execute(
            select(WorkflowSchedule).where(WorkflowSchedule.is_active.is_(True))
        )
        for schedule in result.scalars().all():
            try:
                schedule.next_run_at = scheduler.register(
                    schedule.id, schedule.cron_expression, schedule.timezone, callback
                )
            except WorkflowEngineError as e:
                logger.error("Could not register schedule", schedule_id=schedule.id, error=e.message)
                continue
            registered += 1
        await session.commit()

    logger.info("Scheduler initialized", schedules=registered)
    return registered
