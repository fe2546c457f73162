"""WorkflowRecord model: generic records written by record actions."""

from sqlalchemy import JSON
from sqlalchemy.orm import Mapped, mapped_column

from db.base import TenantModel


class WorkflowRecord(TenantModel):
    """A schemaless record in a named collection."""

    __tablename__ = "workflow_records"

    collection: Mapped[str] = mapped_column(nullable=False, index=True)
    data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
