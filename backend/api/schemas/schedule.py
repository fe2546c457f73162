"""Schedule schemas."""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, List, Optional


class ScheduleCreate(BaseModel):
    """Request to bind a workflow to a cron expression."""

    workflow_id: str = Field(description="Workflow to run")
    name: str = Field(min_length=1, description="Schedule name")
    cron_expression: str = Field(min_length=1, description="Cron expression, e.g. '0 9 * * 1-5'")
    timezone: str = Field(default="UTC", description="IANA timezone the expression is read in")
    config: Dict[str, Any] = Field(default={}, description="Extra data merged into the trigger payload")
    is_active: bool = Field(default=True)


class ScheduleResponse(BaseModel):
    id: str
    workflow_id: str
    name: str
    cron_expression: str
    timezone: str
    config: Optional[Dict[str, Any]] = None
    is_active: bool
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ScheduleListResponse(BaseModel):
    schedules: List[ScheduleResponse]
    total: int
    page: int
    per_page: int
