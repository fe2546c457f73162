"""Workflow export / import.

An exported document is portable: steps carry a ``key`` (their id at export
time) and reference each other by key, and secret variable values are
replaced by ``[REDACTED]``. Import rebuilds the workflow through the normal
service calls so every rule that guards authoring also guards import.
"""

from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from core.constants import REDACTED, LogLevel, StepType, TriggerType, VariableType
from core.exceptions import ValidationError
from db.models.workflow import Workflow
from services.variable_service import is_secret, parse_variable_value
from services.workflow_service import WorkflowService

logger = structlog.get_logger(__name__)

EXPORT_FORMAT_VERSION = "1.0"


class ExportService:
    """Serializes workflows to documents and rebuilds them."""

    def __init__(self, workflows: WorkflowService):
        self.workflows = workflows
        self.variables = workflows.variables
        self.audit = workflows.audit

    async def export_workflow(self, tenant_id: str, workflow_id: str) -> dict[str, Any]:
        """Export a workflow with its steps and workflow-scoped variables."""
        workflow = await self.workflows.get_workflow(tenant_id, workflow_id)
        steps = await self.workflows.get_steps(tenant_id, workflow_id)
        variables = await self.variables.get_variables(tenant_id, workflow_id, include_global=False)

        document = {
            "formatVersion": EXPORT_FORMAT_VERSION,
            "name": workflow.name,
            "description": workflow.description,
            "trigger": workflow.trigger,
            "triggerConfig": workflow.trigger_config or {},
            "tags": workflow.tags or [],
            "metadata": workflow.metadata_ or {},
            "version": workflow.version,
            "steps": [
                {
                    "key": step.id,
                    "name": step.name,
                    "type": step.type,
                    "action": step.action,
                    "config": step.config or {},
                    "position": step.position,
                    "condition": step.condition,
                    "retryConfig": step.retry_config,
                    "timeout": step.timeout,
                    "dependencies": list(step.dependencies or []),
                    "isActive": step.is_active,
                }
                for step in steps
            ],
            "variables": [
                {
                    "name": variable.name,
                    "type": variable.type,
                    "description": variable.description,
                    "isSecret": is_secret(variable),
                    "value": self._export_value(variable),
                }
                for variable in variables
            ],
            "exportedAt": datetime.now(timezone.utc).isoformat(),
        }

        await self.audit.log(
            tenant_id, workflow_id, LogLevel.INFO, f'Workflow "{workflow.name}" exported',
            {"steps": len(steps), "variables": len(variables)},
        )
        return document

    def _export_value(self, variable) -> Any:
        if is_secret(variable):
            return REDACTED if variable.value is not None else None
        return parse_variable_value(variable.value, variable.type)

    async def import_workflow(
        self,
        tenant_id: str,
        document: dict[str, Any],
        secret_values: Optional[dict[str, Any]] = None,
        created_by: Optional[str] = None,
    ) -> Workflow:
        """Create a new workflow from an exported document.

        Secret variables are only recreated when ``secret_values`` supplies
        their real value; anything still ``[REDACTED]`` is skipped.

        Raises:
            ValidationError: Malformed document, unknown action or bad dependency
        """
        if not isinstance(document, dict):
            raise ValidationError("Import document must be an object")
        steps = document.get("steps") or []
        variables = document.get("variables") or []
        if not isinstance(steps, list) or not isinstance(variables, list):
            raise ValidationError("Import document 'steps' and 'variables' must be lists")
        ordered = _dependency_order(steps)
        secret_values = secret_values or {}

        workflow = await self.workflows.create_workflow(
            tenant_id,
            name=document.get("name") or "",
            description=document.get("description") or "",
            trigger=document.get("trigger") or TriggerType.MANUAL.value,
            trigger_config=document.get("triggerConfig"),
            tags=document.get("tags"),
            metadata=document.get("metadata"),
            created_by=created_by,
        )

        new_ids: dict[str, str] = {}
        for step in ordered:
            created = await self.workflows.add_step(
                tenant_id,
                workflow.id,
                name=step.get("name") or "",
                action=step.get("action"),
                type=step.get("type") or StepType.ACTION.value,
                config=step.get("config") or {},
                position=step.get("position"),
                condition=step.get("condition"),
                retry_config=step.get("retryConfig"),
                timeout=step.get("timeout"),
                dependencies=[new_ids[key] for key in step.get("dependencies") or []],
                is_active=step.get("isActive", True),
            )
            new_ids[step["key"]] = created.id

        skipped = []
        for variable in variables:
            name = variable.get("name")
            value = variable.get("value")
            if name in secret_values:
                value = secret_values[name]
            if value is None or value == REDACTED:
                skipped.append(name)
                continue
            await self.variables.set_variable(
                tenant_id,
                name,
                value,
                type=variable.get("type") or VariableType.STRING.value,
                workflow_id=workflow.id,
                is_secret=bool(variable.get("isSecret")),
                description=variable.get("description"),
            )

        await self.audit.log(
            tenant_id, workflow.id, LogLevel.INFO, f'Workflow "{workflow.name}" imported',
            {"steps": len(ordered), "variables": len(variables) - len(skipped), "skipped_variables": skipped},
        )
        if skipped:
            logger.warning("Variables skipped on import", workflow_id=workflow.id, variables=skipped)
        # Version and updated_at moved with every step and variable
        await self.workflows.db.refresh(workflow)
        return workflow


def _dependency_order(steps: list) -> list[dict]:
    """Order exported steps so each comes after everything it depends on.

    Raises:
        ValidationError: Missing key, unknown dependency key or a cycle
    """
    by_key: dict[str, dict] = {}
    for step in steps:
        if not isinstance(step, dict) or not step.get("key"):
            raise ValidationError("Every imported step needs a 'key'")
        if step["key"] in by_key:
            raise ValidationError(f"Duplicate step key: {step['key']}")
        by_key[step["key"]] = step

    for step in steps:
        for dep in step.get("dependencies") or []:
            if dep not in by_key:
                raise ValidationError(f"Step \"{step.get('name')}\" depends on unknown key {dep}")

    ordered: list[dict] = []
    placed: set[str] = set()
    remaining = sorted(steps, key=lambda s: s.get("position") or 0)
    while remaining:
        ready = [s for s in remaining if all(d in placed for d in s.get("dependencies") or [])]
        if not ready:
            raise ValidationError("Circular dependency between imported steps")
        for step in ready:
            ordered.append(step)
            placed.add(step["key"])
        remaining = [s for s in remaining if s["key"] not in placed]
    return ordered
