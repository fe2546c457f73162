"""Workflow variable service: typed values, secrets, execution context.

Values are stored as strings and parsed per declared type when an execution
starts. Secret values are Fernet-encrypted at rest and never returned in
plaintext by read paths.
"""

import json
from typing import Any, Optional, Sequence

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import REDACTED, LogLevel, VariableType
from core.exceptions import NotFoundError, ValidationError
from core.security import get_vault
from db.models.workflow import Workflow
from db.models.workflow_variable import WorkflowVariable
from services.audit_service import AuditLogger
from services.base import BaseService

logger = structlog.get_logger(__name__)


def serialize_value(value: Any, var_type: str) -> Optional[str]:
    """Convert an incoming value to its stored string form.

    Raises:
        ValidationError: If the value does not fit the declared type
    """
    if value is None:
        return None
    if var_type == VariableType.JSON.value:
        if isinstance(value, str):
            try:
                json.loads(value)
            except ValueError as e:
                raise ValidationError(f"Invalid JSON value: {e}")
            return value
        return json.dumps(value)
    if var_type == VariableType.BOOLEAN.value:
        if isinstance(value, bool):
            return "true" if value else "false"
        if str(value).lower() not in ("true", "false"):
            raise ValidationError(f"Invalid boolean value: {value!r}")
        return str(value).lower()
    if var_type == VariableType.NUMBER.value:
        if isinstance(value, bool):
            raise ValidationError(f"Invalid number value: {value!r}")
        try:
            float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid number value: {value!r}")
        return str(value)
    return str(value)


def parse_variable_value(value: Optional[str], var_type: str) -> Any:
    """Parse a stored string according to its declared type."""
    if value is None:
        return None
    if var_type == VariableType.NUMBER.value:
        try:
            number = float(value)
        except ValueError:
            return None
        return int(number) if number.is_integer() and "." not in value and "e" not in value.lower() else number
    if var_type == VariableType.BOOLEAN.value:
        return value == "true"
    if var_type == VariableType.JSON.value:
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


def is_secret(variable: WorkflowVariable) -> bool:
    return bool(variable.is_secret) or variable.type == VariableType.SECRET.value


class VariableService(BaseService[WorkflowVariable]):
    """Service for workflow and tenant-global variables."""

    def __init__(self, db: AsyncSession):
        super().__init__(WorkflowVariable, db)
        self.audit = AuditLogger(db)

    async def _get_workflow(self, tenant_id: str, workflow_id: str) -> Workflow:
        result = await self.db.execute(
            select(Workflow).where(Workflow.id == workflow_id, Workflow.tenant_id == tenant_id)
        )
        workflow = result.scalar_one_or_none()
        if workflow is None:
            raise NotFoundError("Workflow not found")
        return workflow

    async def find(self, tenant_id: str, name: str, workflow_id: Optional[str]) -> Optional[WorkflowVariable]:
        query = select(WorkflowVariable).where(
            WorkflowVariable.tenant_id == tenant_id,
            WorkflowVariable.name == name,
            WorkflowVariable.workflow_id.is_(None) if workflow_id is None
            else WorkflowVariable.workflow_id == workflow_id,
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def set_variable(
        self,
        tenant_id: str,
        name: str,
        value: Any,
        type: str = VariableType.STRING.value,
        workflow_id: Optional[str] = None,
        is_secret: bool = False,
        description: Optional[str] = None,
    ) -> WorkflowVariable:
        """Create or replace a variable (unique per tenant, workflow, name)."""
        name = (name or "").strip()
        if not name:
            raise ValidationError("Variable name is required")
        if type not in VariableType._value2member_map_:
            raise ValidationError(f"Unknown variable type: {type}")

        workflow = await self._get_workflow(tenant_id, workflow_id) if workflow_id else None

        secret = is_secret or type == VariableType.SECRET.value
        stored = serialize_value(value, type)
        if secret and stored is not None:
            stored = get_vault().encrypt(stored)

        variable = await self.find(tenant_id, name, workflow_id)
        if variable is None:
            variable = WorkflowVariable(tenant_id=tenant_id, workflow_id=workflow_id, name=name)
            self.db.add(variable)
        variable.value = stored
        variable.type = type
        variable.is_secret = secret
        variable.description = description
        await self.db.flush()

        if workflow is not None:
            workflow.version += 1
            await self.audit.log(
                tenant_id,
                workflow.id,
                LogLevel.INFO,
                f'Variable "{name}" set',
                {"variable": name, "type": type, "secret": secret},
            )
        else:
            logger.info("Global variable set", tenant_id=tenant_id, variable=name, type=type)
        await self.db.refresh(variable)
        return variable

    async def delete_variable(self, tenant_id: str, variable_id: str) -> None:
        variable = await self.get_by_id(variable_id, tenant_id)
        if variable is None:
            raise NotFoundError("Variable not found")
        workflow_id = variable.workflow_id
        await self.db.delete(variable)
        await self.db.flush()
        if workflow_id:
            workflow = await self._get_workflow(tenant_id, workflow_id)
            workflow.version += 1
            await self.audit.log(
                tenant_id, workflow_id, LogLevel.INFO, f'Variable "{variable.name}" deleted',
                {"variable": variable.name},
            )

    async def get_variables(
        self,
        tenant_id: str,
        workflow_id: Optional[str] = None,
        include_global: bool = True,
    ) -> Sequence[WorkflowVariable]:
        """Variables visible to a workflow (or only the globals when no id)."""
        if workflow_id is None:
            scope = WorkflowVariable.workflow_id.is_(None)
        elif include_global:
            scope = or_(WorkflowVariable.workflow_id == workflow_id, WorkflowVariable.workflow_id.is_(None))
        else:
            scope = WorkflowVariable.workflow_id == workflow_id
        result = await self.db.execute(
            select(WorkflowVariable)
            .where(WorkflowVariable.tenant_id == tenant_id, scope)
            .order_by(WorkflowVariable.name)
        )
        return result.scalars().all()

    def plaintext(self, variable: WorkflowVariable) -> Optional[str]:
        """Stored value with secrets decrypted. Never log the result."""
        if variable.value is None or not is_secret(variable):
            return variable.value
        return get_vault().decrypt(variable.value)

    @staticmethod
    def public_value(variable: WorkflowVariable) -> Optional[str]:
        """Value as shown on read paths; secrets are masked."""
        if is_secret(variable):
            return REDACTED if variable.value is not None else None
        return variable.value

    async def build_variable_context(self, tenant_id: str, workflow_id: str) -> dict[str, Any]:
        """Parsed variables for an execution; workflow values override globals."""
        context: dict[str, Any] = {}
        variables = await self.get_variables(tenant_id, workflow_id)
        # Globals first so workflow-specific values win
        for variable in sorted(variables, key=lambda v: v.workflow_id is not None):
            var_type = VariableType.STRING.value if variable.type == VariableType.SECRET.value else variable.type
            context[variable.name] = parse_variable_value(self.plaintext(variable), var_type)
        return context
