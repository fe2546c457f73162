"""WorkflowSchedule model for the workflow engine."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import TenantModel, UTCDateTime


class WorkflowSchedule(TenantModel):
    """Cron binding of a workflow.

    Attributes:
        workflow_id: Workflow to run
        name: Schedule name
        cron_expression: Cron expression, interpreted in ``timezone``
        timezone: IANA timezone name
        config: Extra data merged into the trigger payload
        is_active: Whether a timer is registered for this schedule
        last_run_at: When the schedule last fired
        next_run_at: Next expected fire time
    """

    __tablename__ = "workflow_schedules"

    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(nullable=False)
    cron_expression: Mapped[str] = mapped_column(nullable=False)
    timezone: Mapped[str] = mapped_column(nullable=False, default="UTC")
    config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(default=True, index=True)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    next_run_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    workflow: Mapped["Workflow"] = relationship(
        "Workflow", back_populates="schedules", lazy="noload"
    )
