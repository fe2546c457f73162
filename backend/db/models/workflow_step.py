"""WorkflowStep model for the workflow engine."""

from typing import Optional

from sqlalchemy import JSON, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import StepType
from db.base import TenantModel


class WorkflowStep(TenantModel):
    """A single step of a workflow.

    Attributes:
        workflow_id: Owning workflow
        name: Step name
        type: Authoring category (action, condition, parallel, ...)
        action: Action kind dispatched when the step runs
        config: Action configuration; may contain ``{{path}}`` templates
        position: Ordering key, ascending
        condition: Optional ``{operator, left, right}`` predicate
        retry_config: ``{maxAttempts, backoffMultiplier}``
        timeout: Per-attempt timeout in milliseconds
        dependencies: Ids of sibling steps that must finish first
        is_active: Inactive steps are never run
    """

    __tablename__ = "workflow_steps"

    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(nullable=False)
    type: Mapped[str] = mapped_column(default=StepType.ACTION.value)
    action: Mapped[str] = mapped_column(nullable=False, index=True)
    config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    position: Mapped[int] = mapped_column(nullable=False, default=0)
    condition: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    retry_config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    timeout: Mapped[Optional[int]] = mapped_column(nullable=True)
    dependencies: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(default=True)

    workflow: Mapped["Workflow"] = relationship(
        "Workflow", back_populates="steps", lazy="noload"
    )
