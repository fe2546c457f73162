"""WorkflowLog model: append-only audit trail."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import LogLevel
from db.base import TenantModel, UTCDateTime


class WorkflowLog(TenantModel):
    """One audit entry. Rows are inserted and read, never updated.

    Attributes:
        workflow_id: Workflow the event belongs to
        execution_id: Execution the event belongs to, if any
        level: debug, info, warning or error
        message: Human-readable event description
        context: Structured event details
        timestamp: When the event happened
    """

    __tablename__ = "workflow_logs"

    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    execution_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    level: Mapped[str] = mapped_column(default=LogLevel.INFO.value, index=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
