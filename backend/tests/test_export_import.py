"""Tests for workflow export and import."""

import pytest

from core.constants import REDACTED
from core.exceptions import ValidationError
from services.export_service import EXPORT_FORMAT_VERSION, ExportService
from services.variable_service import VariableService


@pytest.fixture
def exporter(workflow_service) -> ExportService:
    return ExportService(workflow_service)


async def build_source(workflow_service, db_session, tenant_id):
    wf = await workflow_service.create_workflow(
        tenant_id, name="Lead routing", description="Routes leads", tags=["crm"],
    )
    check = await workflow_service.add_step(
        tenant_id, wf.id, "Check", "validate_data",
        config={"data": "{{trigger.lead}}", "rules": {"email": {"required": True}}},
    )
    await workflow_service.add_step(
        tenant_id, wf.id, "Store", "create_record",
        config={"collection": "leads", "data": {"email": "{{trigger.lead.email}}"}},
        dependencies=[check.id],
        retry_config={"maxAttempts": 2, "backoffMultiplier": 1},
    )
    variables = VariableService(db_session)
    await variables.set_variable(tenant_id, "crmToken", "tok-123", type="secret", workflow_id=wf.id)
    await variables.set_variable(tenant_id, "threshold", 10, type="number", workflow_id=wf.id)
    await variables.set_variable(tenant_id, "globalOnly", "x")
    return wf


@pytest.mark.unit
class TestExport:

    async def test_document_shape(self, exporter, workflow_service, db_session, tenant_id):
        wf = await build_source(workflow_service, db_session, tenant_id)
        document = await exporter.export_workflow(tenant_id, wf.id)

        assert document["formatVersion"] == EXPORT_FORMAT_VERSION
        assert document["name"] == "Lead routing"
        assert document["tags"] == ["crm"]
        check, store = document["steps"]
        assert store["dependencies"] == [check["key"]]
        assert store["retryConfig"] == {"maxAttempts": 2, "backoffMultiplier": 1.0}

    async def test_secrets_are_redacted(self, exporter, workflow_service, db_session, tenant_id):
        wf = await build_source(workflow_service, db_session, tenant_id)
        document = await exporter.export_workflow(tenant_id, wf.id)

        variables = {v["name"]: v for v in document["variables"]}
        assert set(variables) == {"crmToken", "threshold"}
        assert variables["crmToken"]["value"] == REDACTED
        assert variables["crmToken"]["isSecret"] is True
        assert variables["threshold"]["value"] == 10
        assert "tok-123" not in str(document)


@pytest.mark.unit
class TestImport:

    async def test_round_trip_remaps_ids(self, exporter, workflow_service, db_session, tenant_id):
        source = await build_source(workflow_service, db_session, tenant_id)
        document = await exporter.export_workflow(tenant_id, source.id)

        imported = await exporter.import_workflow(tenant_id, document, created_by="user-1")

        assert imported.id != source.id
        assert imported.created_by == "user-1"
        steps = await workflow_service.get_steps(tenant_id, imported.id)
        assert [s.name for s in steps] == ["Check", "Store"]
        assert steps[1].dependencies == [steps[0].id]
        assert steps[0].id not in {s["key"] for s in document["steps"]}

    async def test_redacted_secret_is_skipped(self, exporter, workflow_service, db_session, tenant_id):
        source = await build_source(workflow_service, db_session, tenant_id)
        document = await exporter.export_workflow(tenant_id, source.id)

        imported = await exporter.import_workflow(tenant_id, document)

        names = [v.name for v in await VariableService(db_session).get_variables(
            tenant_id, imported.id, include_global=False,
        )]
        assert names == ["threshold"]

    async def test_secret_recreated_from_supplied_value(self, exporter, workflow_service, db_session, tenant_id):
        source = await build_source(workflow_service, db_session, tenant_id)
        document = await exporter.export_workflow(tenant_id, source.id)

        imported = await exporter.import_workflow(tenant_id, document, secret_values={"crmToken": "tok-456"})

        context = await VariableService(db_session).build_variable_context(tenant_id, imported.id)
        assert context["crmToken"] == "tok-456"
        assert context["threshold"] == 10

    async def test_steps_imported_out_of_order(self, exporter, tenant_id, workflow_service):
        document = {
            "name": "Reordered",
            "steps": [
                {"key": "b", "name": "B", "action": "delay", "position": 1, "dependencies": ["a"]},
                {"key": "a", "name": "A", "action": "delay", "position": 2},
            ],
        }
        imported = await exporter.import_workflow(tenant_id, document)
        steps = {s.name: s for s in await workflow_service.get_steps(tenant_id, imported.id)}
        assert steps["B"].dependencies == [steps["A"].id]

    @pytest.mark.parametrize("document, message", [
        ([], "must be an object"),
        ({"name": "x", "steps": "nope"}, "must be lists"),
        ({"name": "x", "steps": [{"name": "no key", "action": "delay"}]}, "needs a 'key'"),
        ({"name": "x", "steps": [
            {"key": "a", "name": "A", "action": "delay"},
            {"key": "a", "name": "A2", "action": "delay"},
        ]}, "Duplicate step key"),
        ({"name": "x", "steps": [
            {"key": "a", "name": "A", "action": "delay", "dependencies": ["ghost"]},
        ]}, "unknown key"),
        ({"name": "x", "steps": [
            {"key": "a", "name": "A", "action": "delay", "dependencies": ["b"]},
            {"key": "b", "name": "B", "action": "delay", "dependencies": ["a"]},
        ]}, "Circular dependency"),
    ])
    async def test_malformed_documents(self, exporter, tenant_id, document, message):
        with pytest.raises(ValidationError, match=message):
            await exporter.import_workflow(tenant_id, document)

    async def test_unknown_action_rejected(self, exporter, tenant_id):
        document = {"name": "x", "steps": [{"key": "a", "name": "A", "action": "teleport"}]}
        with pytest.raises(ValidationError, match="Unknown action"):
            await exporter.import_workflow(tenant_id, document)
