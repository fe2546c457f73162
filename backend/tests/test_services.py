"""Tests for the service layer against an in-memory database."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from core.constants import REDACTED, ExecutionStatus, LogLevel, StepStatus
from core.exceptions import ExecutionFailure, NotFoundError, SchedulingError, ValidationError
from core.security import get_vault
from db.models.execution import WorkflowExecution
from services.audit_service import AuditLogger
from services.execution_service import ExecutionService
from services.record_service import RecordService
from services.schedule_service import ScheduleService, initialize_scheduler, make_fire_callback
from services.variable_service import VariableService, parse_variable_value, serialize_value
from workflow.scheduler import WorkflowScheduler


async def make_workflow(service, tenant_id, name="Order follow-up", **kwargs):
    return await service.create_workflow(tenant_id, name=name, **kwargs)


async def never_wake(seconds):
    await asyncio.Event().wait()


# ─── Workflow CRUD ───

@pytest.mark.unit
class TestWorkflowCrud:

    async def test_create_and_get(self, workflow_service, tenant_id):
        created = await make_workflow(workflow_service, tenant_id, tags=["sales"], metadata={"team": "ops"})
        fetched = await workflow_service.get_workflow(tenant_id, created.id)
        assert fetched.name == "Order follow-up"
        assert fetched.version == 1
        assert fetched.tags == ["sales"]
        assert fetched.metadata_ == {"team": "ops"}

    async def test_get_is_tenant_scoped(self, workflow_service, tenant_id):
        created = await make_workflow(workflow_service, tenant_id)
        with pytest.raises(NotFoundError):
            await workflow_service.get_workflow("other-tenant", created.id)

    async def test_list_with_search_and_filter(self, workflow_service, tenant_id):
        await make_workflow(workflow_service, tenant_id, name="Invoice reminder")
        await make_workflow(workflow_service, tenant_id, name="Lead intake", is_active=False)
        items, total = await workflow_service.get_workflows(tenant_id, search="invoice")
        assert total == 1
        assert items[0].name == "Invoice reminder"
        _, inactive = await workflow_service.get_workflows(tenant_id, is_active=False)
        assert inactive == 1

    async def test_blank_name_and_unknown_trigger_rejected(self, workflow_service, tenant_id):
        with pytest.raises(ValidationError, match="name is required"):
            await make_workflow(workflow_service, tenant_id, name="  ")
        with pytest.raises(ValidationError, match="Unknown trigger"):
            await make_workflow(workflow_service, tenant_id, trigger="carrier_pigeon")

    async def test_update_bumps_version_and_is_audited(self, workflow_service, tenant_id):
        created = await make_workflow(workflow_service, tenant_id)
        updated = await workflow_service.update_workflow(tenant_id, created.id, {"description": "v2", "name": None})
        assert updated.version == 2
        assert updated.description == "v2"
        assert updated.name == "Order follow-up"

        logs, _ = await AuditLogger(workflow_service.db).get_logs(tenant_id, workflow_id=created.id)
        assert {log.message for log in logs} == {
            'Workflow "Order follow-up" created',
            'Workflow "Order follow-up" updated',
        }

    async def test_delete_removes_children(self, workflow_service, db_session, tenant_id):
        created = await make_workflow(workflow_service, tenant_id)
        await workflow_service.add_step(tenant_id, created.id, "Calc", "calculate_value", config={"expression": "1"})
        await workflow_service.execute_workflow(tenant_id, created.id)

        await workflow_service.delete_workflow(tenant_id, created.id)

        with pytest.raises(NotFoundError):
            await workflow_service.get_workflow(tenant_id, created.id)
        remaining = (await db_session.execute(
            select(func.count()).select_from(WorkflowExecution).where(WorkflowExecution.workflow_id == created.id)
        )).scalar()
        assert remaining == 0
        _, logs = await AuditLogger(db_session).get_logs(tenant_id, workflow_id=created.id)
        assert logs == 0


# ─── Steps ───

@pytest.mark.unit
class TestSteps:

    async def test_add_step_appends_position_and_bumps_version(self, workflow_service, tenant_id):
        wf = await make_workflow(workflow_service, tenant_id)
        first = await workflow_service.add_step(tenant_id, wf.id, "First", "delay")
        second = await workflow_service.add_step(tenant_id, wf.id, "Second", "delay", dependencies=[first.id])
        assert (first.position, second.position) == (1, 2)
        assert second.dependencies == [first.id]
        assert wf.version == 3

    async def test_retry_config_is_normalized(self, workflow_service, tenant_id):
        wf = await make_workflow(workflow_service, tenant_id)
        step = await workflow_service.add_step(
            tenant_id, wf.id, "Call", "call_api", config={"url": "https://api.example.com"},
            retry_config={"max_attempts": 5},
        )
        assert step.retry_config == {"maxAttempts": 5, "backoffMultiplier": 2.0}

    async def test_unknown_action_rejected(self, workflow_service, tenant_id):
        wf = await make_workflow(workflow_service, tenant_id)
        with pytest.raises(ValidationError, match="Unknown action"):
            await workflow_service.add_step(tenant_id, wf.id, "Teleport", "teleport")

    async def test_dependency_must_be_sibling(self, workflow_service, tenant_id):
        wf = await make_workflow(workflow_service, tenant_id)
        other = await make_workflow(workflow_service, tenant_id, name="Other")
        foreign = await workflow_service.add_step(tenant_id, other.id, "Foreign", "delay")
        with pytest.raises(ValidationError, match="not a step of this workflow"):
            await workflow_service.add_step(tenant_id, wf.id, "Local", "delay", dependencies=[foreign.id])

    async def test_update_creating_cycle_rejected(self, workflow_service, tenant_id):
        wf = await make_workflow(workflow_service, tenant_id)
        a = await workflow_service.add_step(tenant_id, wf.id, "A", "delay")
        b = await workflow_service.add_step(tenant_id, wf.id, "B", "delay", dependencies=[a.id])
        with pytest.raises(ValidationError, match="Circular dependency"):
            await workflow_service.update_step(tenant_id, wf.id, a.id, {"dependencies": [b.id]})

        unchanged = await workflow_service.get_step(tenant_id, wf.id, a.id)
        assert unchanged.dependencies == []

    async def test_update_step_fields(self, workflow_service, tenant_id):
        wf = await make_workflow(workflow_service, tenant_id)
        step = await workflow_service.add_step(tenant_id, wf.id, "Wait", "delay", config={"duration": 10})
        updated = await workflow_service.update_step(
            tenant_id, wf.id, step.id, {"config": {"duration": 20}, "timeout": 5000, "bogus": 1},
        )
        assert updated.config == {"duration": 20}
        assert updated.timeout == 5000

    async def test_invalid_timeout_and_type(self, workflow_service, tenant_id):
        wf = await make_workflow(workflow_service, tenant_id)
        with pytest.raises(ValidationError, match="timeout"):
            await workflow_service.add_step(tenant_id, wf.id, "Wait", "delay", timeout=0)
        with pytest.raises(ValidationError, match="Unknown step type"):
            await workflow_service.add_step(tenant_id, wf.id, "Wait", "delay", type="wormhole")

    async def test_parallel_step_needs_known_branches(self, workflow_service, tenant_id):
        wf = await make_workflow(workflow_service, tenant_id)
        with pytest.raises(ValidationError, match="branches"):
            await workflow_service.add_step(tenant_id, wf.id, "Fan out", "delay", type="parallel")
        with pytest.raises(ValidationError, match="Unknown action"):
            await workflow_service.add_step(
                tenant_id, wf.id, "Fan out", "delay", type="parallel",
                config={"branches": [{"action": "teleport"}]},
            )

    async def test_remove_step_refused_while_depended_on(self, workflow_service, tenant_id):
        wf = await make_workflow(workflow_service, tenant_id)
        a = await workflow_service.add_step(tenant_id, wf.id, "A", "delay")
        b = await workflow_service.add_step(tenant_id, wf.id, "B", "delay", dependencies=[a.id])
        with pytest.raises(ValidationError, match="is a dependency of: B"):
            await workflow_service.remove_step(tenant_id, wf.id, a.id)

        await workflow_service.remove_step(tenant_id, wf.id, b.id)
        await workflow_service.remove_step(tenant_id, wf.id, a.id)
        assert await workflow_service.get_steps(tenant_id, wf.id) == []

    async def test_validate_workflow_reports_empty(self, workflow_service, tenant_id):
        wf = await make_workflow(workflow_service, tenant_id)
        report = await workflow_service.validate_workflow(tenant_id, wf.id)
        assert report.valid is False
        assert report.errors


# ─── Execution ───

@pytest.mark.unit
class TestExecuteWorkflow:

    async def test_successful_run_is_persisted(self, workflow_service, db_session, tenant_id):
        wf = await make_workflow(workflow_service, tenant_id)
        calc = await workflow_service.add_step(
            tenant_id, wf.id, "Total", "calculate_value", config={"expression": "{{trigger.qty}} * 5"},
        )
        note = await workflow_service.add_step(
            tenant_id, wf.id, "Notify", "send_notification",
            config={"message": "Total is {{steps." + calc.id + ".result}}"},
            dependencies=[calc.id],
        )

        execution = await workflow_service.execute_workflow(tenant_id, wf.id, {"qty": 4})

        assert execution.status == ExecutionStatus.COMPLETED.value
        assert execution.workflow_version == 3
        assert execution.context["stepResults"][calc.id]["result"] == 20
        assert execution.context["stepResults"][note.id]["message"] == "Total is 20"
        assert execution.duration is not None

        rows = await ExecutionService(db_session).get_step_executions(tenant_id, execution.id)
        assert [(r.step_id, r.status, r.attempts) for r in rows] == [
            (calc.id, StepStatus.COMPLETED.value, 1),
            (note.id, StepStatus.COMPLETED.value, 1),
        ]

        logs, _ = await AuditLogger(db_session).get_logs(tenant_id, execution_id=execution.id)
        assert {log.message for log in logs} == {"Execution started", "Execution completed"}

    async def test_failed_run_raises_after_recording(self, workflow_service, db_session, tenant_id, retry_sleep):
        wf = await make_workflow(workflow_service, tenant_id)
        broken = await workflow_service.add_step(
            tenant_id, wf.id, "Broken", "calculate_value", config={"expression": "1 / 0"},
        )

        with pytest.raises(ExecutionFailure) as exc_info:
            await workflow_service.execute_workflow(tenant_id, wf.id)
        assert exc_info.value.step_id == broken.id
        assert retry_sleep.delays == [2.0, 4.0]

        execution = await ExecutionService(db_session).get_execution(tenant_id, exc_info.value.execution_id)
        await db_session.refresh(execution)
        assert execution.status == ExecutionStatus.FAILED.value
        assert execution.failed_step_id == broken.id
        assert "Division by zero" in execution.error

        rows = await ExecutionService(db_session).get_step_executions(tenant_id, execution.id)
        assert rows[0].status == StepStatus.FAILED.value
        assert rows[0].attempts == 3

        errors, _ = await AuditLogger(db_session).get_logs(
            tenant_id, execution_id=execution.id, level=LogLevel.ERROR.value,
        )
        assert len(errors) == 2
        warnings, _ = await AuditLogger(db_session).get_logs(
            tenant_id, execution_id=execution.id, level=LogLevel.WARNING.value,
        )
        assert len(warnings) == 2

    async def test_failed_run_without_raising(self, workflow_service, tenant_id):
        wf = await make_workflow(workflow_service, tenant_id)
        await workflow_service.add_step(
            tenant_id, wf.id, "Broken", "calculate_value",
            config={"expression": "nope + 1"}, retry_config={"maxAttempts": 1},
        )
        execution = await workflow_service.execute_workflow(tenant_id, wf.id, raise_on_failure=False)
        assert execution.status == ExecutionStatus.FAILED.value

    async def test_empty_workflow_is_not_run(self, workflow_service, db_session, tenant_id):
        wf = await make_workflow(workflow_service, tenant_id)
        with pytest.raises(ValidationError):
            await workflow_service.execute_workflow(tenant_id, wf.id)
        _, total = await ExecutionService(db_session).get_executions(tenant_id)
        assert total == 0

    async def test_inactive_workflow_is_not_found(self, workflow_service, tenant_id):
        wf = await make_workflow(workflow_service, tenant_id, is_active=False)
        await workflow_service.add_step(tenant_id, wf.id, "Wait", "delay")
        with pytest.raises(NotFoundError, match="not active"):
            await workflow_service.execute_workflow(tenant_id, wf.id)

    async def test_secrets_reach_steps_but_not_the_stored_context(
        self, workflow_service, db_session, tenant_id, email_sender,
    ):
        wf = await make_workflow(workflow_service, tenant_id)
        variables = VariableService(db_session)
        await variables.set_variable(tenant_id, "apiKey", "s3cret", type="secret", workflow_id=wf.id)
        await variables.set_variable(tenant_id, "region", "eu", workflow_id=wf.id)
        await workflow_service.add_step(
            tenant_id, wf.id, "Mail", "send_email",
            config={"to": "ops@example.com", "subject": "Key", "body": "key={{apiKey}} region={{region}}"},
        )

        execution = await workflow_service.execute_workflow(tenant_id, wf.id)

        assert email_sender.sent[0]["body"] == "key=s3cret region=eu"
        assert execution.context["variables"] == {"apiKey": REDACTED, "region": "eu"}
        rows = await ExecutionService(db_session).get_step_executions(tenant_id, execution.id)
        assert rows[0].input["body"] == "key=[REDACTED] region=eu"

    async def test_cancel_during_run_stops_at_next_step(
        self, workflow_service, action_services, session_factory, db_session, tenant_id,
    ):
        wf = await make_workflow(workflow_service, tenant_id)
        wait = await workflow_service.add_step(tenant_id, wf.id, "Wait", "delay", config={"duration": 10})
        await workflow_service.add_step(tenant_id, wf.id, "Notify", "send_notification", dependencies=[wait.id])

        async def cancel_while_waiting(seconds):
            async with session_factory() as session:
                service = ExecutionService(session)
                running, _ = await service.get_executions(tenant_id, status=ExecutionStatus.RUNNING.value)
                await service.cancel_execution(tenant_id, running[0].id)
                await session.commit()

        action_services.sleep = cancel_while_waiting
        execution = await workflow_service.execute_workflow(tenant_id, wf.id)

        assert execution.status == ExecutionStatus.CANCELLED.value
        assert execution.error == "Execution cancelled"
        rows = await ExecutionService(db_session).get_step_executions(tenant_id, execution.id)
        assert [r.step_id for r in rows] == [wait.id]

    async def test_cancel_during_final_step_stays_cancelled(
        self, workflow_service, action_services, session_factory, db_session, tenant_id,
    ):
        wf = await make_workflow(workflow_service, tenant_id)
        await workflow_service.add_step(tenant_id, wf.id, "Wait", "delay", config={"duration": 10})

        async def cancel_while_waiting(seconds):
            async with session_factory() as session:
                service = ExecutionService(session)
                running, _ = await service.get_executions(tenant_id, status=ExecutionStatus.RUNNING.value)
                await service.cancel_execution(tenant_id, running[0].id)
                await session.commit()

        action_services.sleep = cancel_while_waiting
        execution = await workflow_service.execute_workflow(tenant_id, wf.id)

        assert execution.status == ExecutionStatus.CANCELLED.value
        logs, _ = await AuditLogger(db_session).get_logs(tenant_id, execution_id=execution.id)
        messages = [entry.message for entry in logs]
        assert "Execution completed" not in messages
        assert messages.count("Execution cancelled") == 1

    async def test_bulk_execute_continues_past_errors(self, workflow_service, tenant_id):
        ok = await make_workflow(workflow_service, tenant_id)
        await workflow_service.add_step(tenant_id, ok.id, "Calc", "calculate_value", config={"expression": "2"})

        outcome = await workflow_service.bulk_execute(tenant_id, [ok.id, "missing"], {"batch": True})

        assert outcome["totalRequested"] == 2
        first, second = outcome["results"]
        assert first["success"] is True
        assert first["execution"].trigger_data == {"batch": True}
        assert second == {"workflowId": "missing", "success": False, "error": "Workflow not found"}

    async def test_trigger_webhook(self, workflow_service, tenant_id):
        wf = await make_workflow(workflow_service, tenant_id, trigger="webhook")
        await workflow_service.add_step(
            tenant_id, wf.id, "Echo", "calculate_value", config={"expression": "{{trigger.payload.amount}} + 1"},
        )

        execution = await workflow_service.trigger_webhook(
            tenant_id, payload={"amount": 41}, webhook_url="/hooks/orders", workflow_id=wf.id,
        )
        assert execution.trigger_data["trigger"] == "webhook"
        assert execution.trigger_data["webhookUrl"] == "/hooks/orders"
        assert list(execution.context["stepResults"].values())[0]["result"] == 42

        assert await workflow_service.trigger_webhook(tenant_id, payload={}) is None


# ─── Execution queries ───

@pytest.mark.unit
class TestExecutionService:

    async def test_cancel_finished_execution_rejected(self, workflow_service, db_session, tenant_id):
        wf = await make_workflow(workflow_service, tenant_id)
        await workflow_service.add_step(tenant_id, wf.id, "Calc", "calculate_value", config={"expression": "1"})
        execution = await workflow_service.execute_workflow(tenant_id, wf.id)
        with pytest.raises(ValidationError, match="already completed"):
            await ExecutionService(db_session).cancel_execution(tenant_id, execution.id)

    async def test_cancel_running_execution(self, workflow_service, db_session, tenant_id):
        wf = await make_workflow(workflow_service, tenant_id)
        running = WorkflowExecution(
            tenant_id=tenant_id, workflow_id=wf.id, started_at=datetime.now(timezone.utc),
        )
        db_session.add(running)
        await db_session.flush()

        cancelled = await ExecutionService(db_session).cancel_execution(tenant_id, running.id)
        assert cancelled.status == ExecutionStatus.CANCELLED.value
        assert cancelled.completed_at is not None
        assert cancelled.duration >= 0

    async def test_unknown_execution(self, db_session, tenant_id):
        with pytest.raises(NotFoundError):
            await ExecutionService(db_session).get_execution(tenant_id, "nope")

    async def test_analytics(self, workflow_service, db_session, tenant_id):
        good = await make_workflow(workflow_service, tenant_id, name="Good")
        await workflow_service.add_step(tenant_id, good.id, "Calc", "calculate_value", config={"expression": "1"})
        bad = await make_workflow(workflow_service, tenant_id, name="Bad")
        await workflow_service.add_step(
            tenant_id, bad.id, "Calc", "calculate_value",
            config={"expression": "1 / 0"}, retry_config={"maxAttempts": 1},
        )
        await workflow_service.execute_workflow(tenant_id, good.id)
        await workflow_service.execute_workflow(tenant_id, good.id)
        await workflow_service.execute_workflow(tenant_id, bad.id, raise_on_failure=False)

        now = datetime.now(timezone.utc)
        stats = await ExecutionService(db_session).get_workflow_analytics(
            tenant_id, now - timedelta(hours=1), now + timedelta(hours=1),
        )
        assert stats["totalExecutions"] == 3
        assert stats["executionsByStatus"] == {"completed": 2, "failed": 1}
        assert stats["executionsByWorkflow"][0] == {"workflowId": good.id, "executions": 2}
        assert stats["failureRate"] == "33.33"
        assert stats["averageDuration"] >= 0

    async def test_analytics_empty_range(self, db_session, tenant_id):
        start = datetime(2020, 1, 1, tzinfo=timezone.utc)
        stats = await ExecutionService(db_session).get_workflow_analytics(tenant_id, start, start)
        assert stats["totalExecutions"] == 0
        assert stats["failureRate"] == "0.00"
        assert stats["averageDuration"] == 0.0


# ─── Variables ───

@pytest.mark.unit
class TestVariables:

    @pytest.mark.parametrize("value, var_type, stored, parsed", [
        (42, "number", "42", 42),
        ("2.5", "number", "2.5", 2.5),
        (True, "boolean", "true", True),
        ("FALSE", "boolean", "false", False),
        ({"a": [1]}, "json", '{"a": [1]}', {"a": [1]}),
        ("plain", "string", "plain", "plain"),
    ])
    def test_serialize_and_parse(self, value, var_type, stored, parsed):
        assert serialize_value(value, var_type) == stored
        assert parse_variable_value(stored, var_type) == parsed

    @pytest.mark.parametrize("value, var_type", [("abc", "number"), ("yes", "boolean"), ("{oops", "json")])
    def test_invalid_typed_values(self, value, var_type):
        with pytest.raises(ValidationError):
            serialize_value(value, var_type)

    async def test_secret_is_encrypted_and_masked(self, db_session, tenant_id):
        service = VariableService(db_session)
        variable = await service.set_variable(tenant_id, "token", "hunter2", is_secret=True)
        assert variable.value != "hunter2"
        assert get_vault().decrypt(variable.value) == "hunter2"
        assert service.public_value(variable) == REDACTED

    async def test_set_replaces_existing(self, db_session, tenant_id):
        service = VariableService(db_session)
        first = await service.set_variable(tenant_id, "limit", 5, type="number")
        second = await service.set_variable(tenant_id, "limit", 7, type="number")
        assert first.id == second.id
        assert len(await service.get_variables(tenant_id)) == 1

    async def test_workflow_value_overrides_global(self, workflow_service, db_session, tenant_id):
        wf = await make_workflow(workflow_service, tenant_id)
        service = VariableService(db_session)
        await service.set_variable(tenant_id, "region", "us")
        await service.set_variable(tenant_id, "retries", 3, type="number")
        await service.set_variable(tenant_id, "region", "eu", workflow_id=wf.id)

        context = await service.build_variable_context(tenant_id, wf.id)
        assert context == {"region": "eu", "retries": 3}
        assert wf.version == 2

    async def test_delete_variable(self, workflow_service, db_session, tenant_id):
        wf = await make_workflow(workflow_service, tenant_id)
        service = VariableService(db_session)
        variable = await service.set_variable(tenant_id, "region", "eu", workflow_id=wf.id)
        await service.delete_variable(tenant_id, variable.id)
        assert await service.get_variables(tenant_id, wf.id) == []
        with pytest.raises(NotFoundError):
            await service.delete_variable(tenant_id, variable.id)

    async def test_unknown_workflow(self, db_session, tenant_id):
        with pytest.raises(NotFoundError):
            await VariableService(db_session).set_variable(tenant_id, "x", "1", workflow_id="missing")


# ─── Audit log ───

@pytest.mark.unit
class TestAuditLogger:

    async def test_filters_and_pagination(self, db_session, tenant_id):
        audit = AuditLogger(db_session)
        for i in range(3):
            await audit.log(tenant_id, "wf-1", LogLevel.INFO, f"info {i}")
        await audit.log(tenant_id, "wf-1", "error", "broken", {"step_id": "s1"}, execution_id="ex-1")
        await audit.log(tenant_id, "wf-2", LogLevel.INFO, "elsewhere")
        await audit.log("other-tenant", "wf-1", LogLevel.INFO, "hidden")

        _, total = await audit.get_logs(tenant_id, workflow_id="wf-1")
        assert total == 4

        errors, _ = await audit.get_logs(tenant_id, level="error")
        assert [(e.message, e.context, e.execution_id) for e in errors] == [("broken", {"step_id": "s1"}, "ex-1")]

        page, total = await audit.get_logs(tenant_id, offset=0, limit=2)
        assert len(page) == 2
        assert total == 5

    async def test_time_range(self, db_session, tenant_id):
        audit = AuditLogger(db_session)
        await audit.log(tenant_id, "wf-1", LogLevel.INFO, "now")
        future = datetime.now(timezone.utc) + timedelta(days=1)
        _, total = await audit.get_logs(tenant_id, start=future)
        assert total == 0

    async def test_unknown_level_rejected(self, db_session, tenant_id):
        with pytest.raises(ValueError):
            await AuditLogger(db_session).log(tenant_id, "wf-1", "loud", "x")


# ─── Records ───

@pytest.mark.unit
class TestRecordService:

    async def test_crud(self, session_factory, tenant_id):
        store = RecordService(session_factory)
        created = await store.create(tenant_id, "leads", {"name": "Ada"})
        assert created["collection"] == "leads"

        updated = await store.update(tenant_id, "leads", created["id"], {"stage": "won"})
        assert updated["name"] == "Ada"
        assert updated["stage"] == "won"

        assert await store.get("other-tenant", "leads", created["id"]) is None
        assert await store.delete(tenant_id, "leads", created["id"]) is True
        assert await store.delete(tenant_id, "leads", created["id"]) is False
        assert await store.update(tenant_id, "leads", created["id"], {}) is None


# ─── Schedules ───

@pytest.mark.unit
class TestScheduleService:

    async def test_create_computes_next_run(self, workflow_service, db_session, tenant_id):
        wf = await make_workflow(workflow_service, tenant_id)
        schedule = await ScheduleService(db_session).schedule_workflow(
            tenant_id, wf.id, "Nightly", "0 2 * * *", "UTC",
        )
        assert schedule.is_active is True
        assert schedule.next_run_at is not None

    async def test_times_read_back_in_utc(self, workflow_service, db_session, session_factory, tenant_id):
        wf = await make_workflow(workflow_service, tenant_id)
        schedule = await ScheduleService(db_session).schedule_workflow(
            tenant_id, wf.id, "Nightly", "0 2 * * *", "Europe/Sofia",
        )
        await db_session.commit()

        async with session_factory() as session:
            stored = await ScheduleService(session).get_schedule(tenant_id, schedule.id)
        assert stored.next_run_at.tzinfo is not None
        assert stored.next_run_at.utcoffset() == timedelta(0)
        assert stored.next_run_at == schedule.next_run_at

    async def test_bad_cron_rejected(self, workflow_service, db_session, tenant_id):
        wf = await make_workflow(workflow_service, tenant_id)
        with pytest.raises(SchedulingError):
            await ScheduleService(db_session).schedule_workflow(tenant_id, wf.id, "Broken", "every day")
        _, total = await ScheduleService(db_session).get_schedules(tenant_id)
        assert total == 0

    async def test_unknown_workflow(self, db_session, tenant_id):
        with pytest.raises(NotFoundError):
            await ScheduleService(db_session).schedule_workflow(tenant_id, "missing", "x", "* * * * *")

    async def test_timers_follow_activation(self, workflow_service, db_session, tenant_id, fake_clock):
        scheduler = WorkflowScheduler(clock=fake_clock, sleep=never_wake)
        service = ScheduleService(db_session, scheduler=scheduler)
        wf = await make_workflow(workflow_service, tenant_id)

        schedule = await service.schedule_workflow(tenant_id, wf.id, "Hourly", "0 * * * *")
        assert scheduler.is_registered(schedule.id)
        assert schedule.next_run_at == datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)

        paused = await service.deactivate_schedule(tenant_id, schedule.id)
        assert paused.is_active is False
        assert paused.next_run_at is None
        assert not scheduler.is_registered(schedule.id)

        await service.activate_schedule(tenant_id, schedule.id)
        assert scheduler.is_registered(schedule.id)

        await service.delete_schedule(tenant_id, schedule.id)
        assert not scheduler.is_registered(schedule.id)
        with pytest.raises(NotFoundError):
            await service.get_schedule(tenant_id, schedule.id)
        await scheduler.shutdown()

    async def test_inactive_schedule_not_registered(self, workflow_service, db_session, tenant_id, fake_clock):
        scheduler = WorkflowScheduler(clock=fake_clock, sleep=never_wake)
        wf = await make_workflow(workflow_service, tenant_id)
        schedule = await ScheduleService(db_session, scheduler=scheduler).schedule_workflow(
            tenant_id, wf.id, "Paused", "0 * * * *", is_active=False,
        )
        assert schedule.next_run_at is None
        assert scheduler.registered == []

    async def test_fire_callback_runs_workflow(
        self, workflow_service, db_session, session_factory, engine, tenant_id,
    ):
        wf = await make_workflow(workflow_service, tenant_id)
        await workflow_service.add_step(
            tenant_id, wf.id, "Calc", "calculate_value", config={"expression": "{{trigger.batch}} + 1"},
        )
        schedule = await ScheduleService(db_session).schedule_workflow(
            tenant_id, wf.id, "Every minute", "* * * * *", config={"batch": 9},
        )
        await db_session.commit()

        fire = make_fire_callback(session_factory, engine=engine)
        await fire(schedule.id)

        executions, total = await ExecutionService(db_session).get_executions(tenant_id, workflow_id=wf.id)
        assert total == 1
        assert executions[0].trigger_data == {"batch": 9, "trigger": "schedule", "scheduleId": schedule.id}
        assert executions[0].status == ExecutionStatus.COMPLETED.value

        await db_session.refresh(schedule)
        assert schedule.last_run_at is not None

    async def test_fire_callback_ignores_inactive_schedule(
        self, workflow_service, db_session, session_factory, engine, tenant_id,
    ):
        wf = await make_workflow(workflow_service, tenant_id)
        await workflow_service.add_step(tenant_id, wf.id, "Calc", "calculate_value", config={"expression": "1"})
        schedule = await ScheduleService(db_session).schedule_workflow(
            tenant_id, wf.id, "Off", "* * * * *", is_active=False,
        )
        await db_session.commit()

        await make_fire_callback(session_factory, engine=engine)(schedule.id)

        _, total = await ExecutionService(db_session).get_executions(tenant_id)
        assert total == 0

    async def test_initialize_registers_active_schedules(
        self, workflow_service, db_session, session_factory, tenant_id, fake_clock,
    ):
        wf = await make_workflow(workflow_service, tenant_id)
        service = ScheduleService(db_session)
        active = await service.schedule_workflow(tenant_id, wf.id, "On", "0 9 * * *")
        await service.schedule_workflow(tenant_id, wf.id, "Off", "0 9 * * *", is_active=False)
        await db_session.commit()

        scheduler = WorkflowScheduler(clock=fake_clock, sleep=never_wake)
        assert await initialize_scheduler(scheduler, session_factory) == 1
        assert scheduler.registered == [active.id]
        await scheduler.shutdown()


# ─── Worker task ───

@pytest.mark.unit
class TestWorkerRun:

    async def test_run_workflow_records_execution(self, workflow_service, db_session, session_factory, tenant_id):
        from worker.tasks.workflow import run_workflow

        wf = await make_workflow(workflow_service, tenant_id)
        await workflow_service.add_step(
            tenant_id, wf.id, "Calc", "calculate_value", config={"expression": "{{trigger.n}} + 1"},
        )
        await db_session.commit()

        outcome = await run_workflow(tenant_id, wf.id, {"n": 1}, session_factory=session_factory)

        assert outcome["status"] == ExecutionStatus.COMPLETED.value
        execution = await ExecutionService(db_session).get_execution(tenant_id, outcome["execution_id"])
        assert list(execution.context["stepResults"].values()) == [{"result": 2, "expression": "1 + 1"}]

    async def test_run_missing_workflow_is_rejected(self, session_factory, tenant_id):
        from worker.tasks.workflow import run_workflow

        outcome = await run_workflow(tenant_id, "missing", {}, session_factory=session_factory)
        assert outcome == {"execution_id": None, "status": "rejected", "error": "Workflow not found"}


@pytest.mark.unit
class TestMaskSecrets:

    def test_nested_strings_are_masked(self):
        from core.utils import mask_secrets

        value = {"headers": {"Authorization": "Bearer tok-1"}, "items": ["tok-1", 7], "n": 1}
        assert mask_secrets(value, ["tok-1"]) == {
            "headers": {"Authorization": "Bearer [REDACTED]"}, "items": ["[REDACTED]", 7], "n": 1,
        }

    def test_longest_secret_wins(self):
        from core.utils import mask_secrets

        assert mask_secrets("abc-abcdef", ["abc", "abcdef"]) == "[REDACTED]-[REDACTED]"
