"""WorkflowVariable model for the workflow engine."""

from typing import Optional

from sqlalchemy import ForeignKey, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import VariableType
from db.base import TenantModel


class WorkflowVariable(TenantModel):
    """A named value available to executions as ``{{name}}``.

    ``workflow_id`` NULL means the variable is tenant-global. Values are
    stored as strings and parsed according to ``type`` at execution start.
    Secret values are stored encrypted.
    """

    __tablename__ = "workflow_variables"
    __table_args__ = (
        UniqueConstraint("tenant_id", "workflow_id", "name", name="uq_workflow_variable_name"),
    )

    workflow_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    name: Mapped[str] = mapped_column(nullable=False)
    value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(default=VariableType.STRING.value)
    is_secret: Mapped[bool] = mapped_column(default=False)
    description: Mapped[Optional[str]] = mapped_column(nullable=True)
