"""Action catalog endpoints.

Exposes the closed set of step actions for workflow editors.
"""

from fastapi import APIRouter

from actions.registry import get_action_registry
from core.exceptions import NotFoundError

router = APIRouter()


@router.get("/", summary="List all available actions")
async def list_actions():
    """Get all registered actions with their config schemas."""
    registry = get_action_registry()
    return {
        "actions": registry.list_all(),
        "count": len(registry.available_kinds),
    }


@router.get("/{action}", summary="Get action details")
async def get_action(action: str):
    """Get details and config schema for a single action."""
    action_class = get_action_registry().get(action)
    if not action_class:
        raise NotFoundError(f"Unknown action: {action}")
    return {
        "action": action_class.action_kind,
        "display_name": action_class.display_name,
        "description": action_class.description,
        "config_schema": action_class.get_config_schema(),
    }
