"""Database models for the workflow engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.workflow import Workflow
from db.models.workflow_step import WorkflowStep
from db.models.workflow_variable import WorkflowVariable
from db.models.execution import WorkflowExecution, WorkflowStepExecution
from db.models.schedule import WorkflowSchedule
from db.models.workflow_log import WorkflowLog
from db.models.workflow_record import WorkflowRecord

__all__ = [
    "Workflow",
    "WorkflowStep",
    "WorkflowVariable",
    "WorkflowExecution",
    "WorkflowStepExecution",
    "WorkflowSchedule",
    "WorkflowLog",
    "WorkflowRecord",
]
