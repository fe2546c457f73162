"""Tests for the action handlers and the action registry."""

import json

import httpx
import pytest

from actions.base_action import ActionContext, ActionServices
from actions.implementations.http_action import validate_url_safety
from actions.registry import ActionRegistry, get_action_registry
from core.constants import ActionKind
from core.exceptions import StepExecutionError, ValidationError
from notifications.channels import NotificationChannel
from workflow.resolver import TemplateResolver


def make_context(services: ActionServices, **scope) -> ActionContext:
    return ActionContext(
        tenant_id="tenant-1",
        workflow_id="wf-1",
        execution_id="ex-1",
        step_id="step-1",
        resolver=TemplateResolver.from_parts(variables=scope),
        services=services,
    )


async def run(action_kind: str, config: dict, services: ActionServices, **scope):
    action = get_action_registry().create_instance(action_kind)
    return await action.run(config, make_context(services, **scope))


# ─── Registry ───

@pytest.mark.unit
class TestActionRegistry:

    def test_every_action_kind_has_a_handler(self):
        registry = ActionRegistry()
        assert set(registry.available_kinds) == {kind.value for kind in ActionKind}

    def test_unknown_kind_rejected_at_definition_time(self):
        with pytest.raises(ValidationError, match="Unknown action"):
            get_action_registry().ensure_known("teleport")

    def test_unknown_kind_fails_dispatch(self):
        with pytest.raises(StepExecutionError):
            get_action_registry().create_instance("teleport", step_id="s")

    def test_register_refuses_kinds_outside_the_closed_set(self):
        registry = ActionRegistry()
        with pytest.raises(ValueError):
            registry.register("teleport", registry.get("delay"))

    def test_list_all_has_schemas(self):
        listed = {entry["action"]: entry for entry in get_action_registry().list_all()}
        assert listed["call_api"]["config_schema"]["required"] == ["url"]


# ─── Data actions ───

@pytest.mark.unit
class TestDataActions:

    async def test_delay_uses_injected_sleep(self, action_services):
        output = await run("delay", {"duration": 250}, action_services)
        assert output["delayed"] == 250
        assert action_services.sleep.delays == [0.25]

    async def test_delay_defaults_to_one_second(self, action_services):
        output = await run("delay", {}, action_services)
        assert output["delayed"] == 1000

    async def test_delay_over_limit(self, action_services):
        action_services.max_delay_ms = 500
        with pytest.raises(StepExecutionError, match="exceeds limit"):
            await run("delay", {"duration": 501}, action_services)

    async def test_calculate_value_reads_scope(self, action_services):
        output = await run("calculate_value", {"expression": "base * 2"}, action_services, base=21)
        assert output == {"result": 42, "expression": "base * 2"}

    async def test_transform_filter_map_sort(self, action_services):
        orders = [
            {"id": 1, "total": 30, "status": "paid"},
            {"id": 2, "total": 10, "status": "open"},
            {"id": 3, "total": 20, "status": "paid"},
        ]
        config = {
            "input": orders,
            "transformations": [
                {"type": "filter", "condition": {"operator": "equals", "left": "{{item.status}}", "right": "paid"}},
                {"type": "sort", "field": "total", "order": "asc"},
                {"type": "map", "mapping": {"orderId": "{{item.id}}", "label": "{{currency}} {{item.total}}"}},
            ],
        }
        output = await run("transform_data", config, action_services, currency="EUR")
        assert output["transformed"] == [
            {"orderId": 3, "label": "EUR 20"},
            {"orderId": 1, "label": "EUR 30"},
        ]
        assert output["originalCount"] == 3
        assert output["transformedCount"] == 2

    async def test_transform_null_input_is_empty(self, action_services):
        output = await run("transform_data", {"input": None}, action_services)
        assert output["transformed"] == []

    async def test_transform_unknown_type(self, action_services):
        with pytest.raises(StepExecutionError, match="unknown transformation"):
            await run("transform_data", {"input": [1], "transformations": [{"type": "explode"}]}, action_services)

    async def test_validate_data_collects_errors(self, action_services):
        config = {
            "data": {"email": "nope", "age": 17, "tags": []},
            "rules": {
                "email": {"required": True, "pattern": r"^[^@]+@[^@]+$"},
                "age": {"type": "number", "min": 18},
                "name": {"required": True},
                "tags": {"type": "array", "max": 3},
            },
        }
        output = await run("validate_data", config, action_services)
        assert output["valid"] is False
        assert output["errors"] == [
            "email does not match pattern ^[^@]+@[^@]+$",
            "age must be at least 18",
            "name is required",
        ]

    async def test_validate_data_fail_on_invalid(self, action_services):
        with pytest.raises(StepExecutionError, match="must be of type string"):
            await run("validate_data", {
                "data": {"name": 5}, "rules": {"name": {"type": "string"}}, "failOnInvalid": True,
            }, action_services)


# ─── Record actions ───

@pytest.mark.unit
class TestRecordActions:

    async def test_create_update_delete(self, action_services, record_store):
        created = await run("create_record", {"collection": "leads", "data": {"name": "Ada"}}, action_services)
        record_id = created["record"]["id"]
        assert created["created"] is True

        updated = await run("update_record", {
            "collection": "leads", "recordId": record_id, "data": {"status": "won"},
        }, action_services)
        assert updated["record"]["name"] == "Ada"
        assert updated["record"]["status"] == "won"

        deleted = await run("delete_record", {"collection": "leads", "recordId": record_id}, action_services)
        assert deleted == {"deleted": True, "recordId": record_id}
        assert record_store.records == {}

    async def test_update_missing_record_fails(self, action_services):
        with pytest.raises(StepExecutionError, match="not found"):
            await run("update_record", {"collection": "leads", "recordId": "x", "data": {}}, action_services)

    async def test_collection_required(self, action_services):
        with pytest.raises(StepExecutionError, match="collection"):
            await run("create_record", {"collection": None}, action_services)


# ─── Messaging actions ───

@pytest.mark.unit
class TestMessagingActions:

    async def test_send_email_splits_recipients(self, action_services, email_sender):
        output = await run("send_email", {"to": "a@x.io, b@x.io", "subject": "Hi", "body": "Text"}, action_services)
        assert output["to"] == ["a@x.io", "b@x.io"]
        assert output["messageId"] == "<msg-1@test>"
        assert email_sender.sent[0]["subject"] == "Hi"

    async def test_send_email_without_recipients_sends_nothing(self, action_services, email_sender):
        output = await run("send_email", {"to": None, "subject": "Hi"}, action_services)
        assert output["sent"] is False
        assert output["to"] == []
        assert output["reason"] == "no recipients"
        assert email_sender.sent == []

    async def test_send_notification_in_app(self, action_services, notifier):
        output = await run("send_notification", {"message": None, "title": "T", "type": "alert"}, action_services)
        assert output["sent"] is True
        assert output["message"] == ""
        inbox = notifier.get_channel(NotificationChannel.IN_APP)
        assert inbox.recent("tenant-1")[0]["type"] == "alert"

    async def test_send_notification_unconfigured_channel_fails(self, action_services):
        with pytest.raises(StepExecutionError, match="Channel not configured"):
            await run("send_notification", {"message": "m", "channel": "webhook"}, action_services)


# ─── HTTP actions ───

@pytest.mark.unit
class TestHttpActions:

    async def test_call_api_sends_json_body(self, action_services):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["body"] = json.loads(request.content)
            seen["query"] = dict(request.url.params)
            return httpx.Response(201, json={"id": 9})

        action_services.http_transport = httpx.MockTransport(handler)
        output = await run("call_api", {
            "url": "https://api.example.com/items",
            "method": "post",
            "params": {"dry": "1"},
            "body": {"name": "{{ignored}}"},
        }, action_services)

        assert seen == {"method": "POST", "body": {"name": "{{ignored}}"}, "query": {"dry": "1"}}
        assert output["status"] == 201
        assert output["data"] == {"id": 9}

    async def test_call_api_expected_status(self, action_services):
        action_services.http_transport = httpx.MockTransport(lambda request: httpx.Response(404, text="missing"))
        output = await run("call_api", {"url": "https://api.example.com/x", "expectedStatus": [404]}, action_services)
        assert output["data"] == "missing"

    async def test_call_api_rejects_private_targets(self, action_services):
        with pytest.raises(StepExecutionError, match="private IP"):
            await run("call_api", {"url": "http://10.0.0.5/admin"}, action_services)

    async def test_call_api_rejects_unsupported_method(self, action_services):
        with pytest.raises(StepExecutionError, match="unsupported method"):
            await run("call_api", {"url": "https://api.example.com", "method": "TRACE"}, action_services)

    async def test_send_webhook_adds_execution_headers(self, action_services):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(request.headers)
            return httpx.Response(204)

        action_services.http_transport = httpx.MockTransport(handler)
        output = await run("send_webhook", {"url": "https://hooks.example.com/in", "payload": {"a": 1}}, action_services)
        assert output == {"delivered": True, "status": 204, "url": "https://hooks.example.com/in"}
        assert seen["x-execution-id"] == "ex-1"
        assert seen["x-workflow-id"] == "wf-1"

    @pytest.mark.parametrize("url", [
        "ftp://example.com/file",
        "http://localhost:8000",
        "http://127.0.0.1",
        "http://169.254.169.254/latest/meta-data",
        "https://",
    ])
    def test_unsafe_urls(self, url):
        with pytest.raises(ValueError):
            validate_url_safety(url)

    def test_public_url_is_allowed(self):
        validate_url_safety("https://api.example.com/v1")
