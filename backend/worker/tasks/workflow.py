"""Celery tasks for workflow execution.

Runs an execution out of the API process. The task goes through the same
WorkflowService path as an API-triggered run, so the execution row, step
records and audit entries look identical whichever process ran it.
"""

import asyncio
import logging

from sqlalchemy.exc import OperationalError

from core.constants import ExecutionStatus
from core.exceptions import WorkflowEngineError
from db.worker_session import worker_session_factory
from notifications.manager import get_notification_manager
from services.workflow_service import WorkflowService
from worker.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    name="worker.tasks.workflow.execute_workflow",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
    queue="workflows",
)
def execute_workflow(self, tenant_id: str, workflow_id: str, trigger_data: dict = None) -> dict:
    """Execute a workflow in the background.

    Args:
        tenant_id: Owning tenant
        workflow_id: Workflow to execute
        trigger_data: Payload of the trigger that started the run

    Returns:
        ``{execution_id, status, error}``; ``status`` is ``rejected`` when the
        workflow could not be started (missing, inactive or invalid)
    """
    logger.info(f"Starting workflow {workflow_id} for tenant {tenant_id}")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(run_workflow(tenant_id, workflow_id, trigger_data or {}))
    except OperationalError as exc:
        # Database unavailable; the run never started
        logger.warning(f"Database error running workflow {workflow_id}: {exc}")
        raise self.retry(exc=exc)
    finally:
        loop.close()


async def run_workflow(tenant_id: str, workflow_id: str, trigger_data: dict, session_factory=None) -> dict:
    """Run one execution with task-private database sessions."""
    if session_factory is not None:
        return await _execute(session_factory, tenant_id, workflow_id, trigger_data)
    async with worker_session_factory() as factory:
        return await _execute(factory, tenant_id, workflow_id, trigger_data)


async def _execute(session_factory, tenant_id: str, workflow_id: str, trigger_data: dict) -> dict:
    async with session_factory() as session:
        svc = WorkflowService(session, session_factory=session_factory)
        try:
            execution = await svc.execute_workflow(
                tenant_id, workflow_id, trigger_data, raise_on_failure=False
            )
        except WorkflowEngineError as e:
            logger.error(f"Workflow {workflow_id} rejected: {e.message}")
            return {"execution_id": None, "status": "rejected", "error": e.message}

        if execution.status == ExecutionStatus.FAILED.value:
            workflow = await svc.get_workflow(tenant_id, workflow_id)
            await get_notification_manager().notify_workflow_failed(
                tenant_id=tenant_id,
                workflow_name=workflow.name,
                execution_id=execution.id,
                error=execution.error or "Execution failed",
            )

        await session.commit()
        logger.info(f"Execution {execution.id} finished: {execution.status}")
        return {"execution_id": execution.id, "status": execution.status, "error": execution.error}
