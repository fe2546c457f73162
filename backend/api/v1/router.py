"""API v1 aggregated router.

All v1 endpoints are registered here and mounted under /api/v1 in main.py.
"""

from fastapi import APIRouter

from api.routes import (
    actions,
    analytics,
    executions,
    schedules,
    workflow_variables,
    workflows,
)

api_v1_router = APIRouter()

# Workflows, steps, execution, export/import, logs
api_v1_router.include_router(
    workflows.router,
    prefix="/workflows",
    tags=["Workflows"],
)

# Executions
api_v1_router.include_router(
    executions.router,
    prefix="/executions",
    tags=["Executions"],
)

# Schedules
api_v1_router.include_router(
    schedules.router,
    prefix="/schedules",
    tags=["Schedules"],
)

# Variables
api_v1_router.include_router(
    workflow_variables.router,
    prefix="/variables",
    tags=["Variables"],
)

# Analytics
api_v1_router.include_router(
    analytics.router,
    prefix="/analytics",
    tags=["Analytics"],
)

# Action catalog (for workflow editors)
api_v1_router.include_router(
    actions.router,
    prefix="/actions",
    tags=["Actions"],
)
