"""Workflow model for the workflow engine."""

from typing import Optional

from sqlalchemy import JSON, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import TriggerType
from db.base import TenantModel


class Workflow(TenantModel):
    """Workflow model representing an automation definition.

    Attributes:
        id: Unique identifier (UUID string)
        tenant_id: Owning tenant
        name: Workflow name
        description: Workflow description
        trigger: Trigger kind (manual, schedule, webhook, event, ...)
        trigger_config: Trigger-specific settings
        is_active: Whether the workflow may be executed
        version: Incremented on every change to the workflow or its parts
        tags: Free-form labels
        metadata_: Free-form metadata (column ``metadata``)
        created_by: Id of the creating user, if known
        created_at: Creation timestamp
        updated_at: Last update timestamp
    """

    __tablename__ = "workflows"

    name: Mapped[str] = mapped_column(nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    trigger: Mapped[str] = mapped_column(default=TriggerType.MANUAL.value, index=True)
    trigger_config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(default=True, index=True)
    version: Mapped[int] = mapped_column(default=1)
    tags: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    metadata_: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(nullable=True)

    # Children are removed explicitly by WorkflowService.delete_workflow;
    # relationships never load implicitly in async sessions.
    steps: Mapped[list["WorkflowStep"]] = relationship(
        "WorkflowStep", back_populates="workflow", lazy="noload", passive_deletes=True
    )
    schedules: Mapped[list["WorkflowSchedule"]] = relationship(
        "WorkflowSchedule", back_populates="workflow", lazy="noload", passive_deletes=True
    )
