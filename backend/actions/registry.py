"""
Action Registry: closed mapping of action kinds to their handlers.

Every ActionKind has exactly one handler. Lookups for anything else fail,
so a typo in a step's action is caught instead of silently doing nothing.
"""

from typing import Dict, Optional, Type

from actions.base_action import BaseAction
from actions.implementations.data import DATA_ACTIONS
from actions.implementations.http_action import HTTP_ACTIONS
from actions.implementations.messaging import MESSAGING_ACTIONS
from actions.implementations.records import RECORD_ACTIONS
from core.constants import ActionKind
from core.exceptions import StepExecutionError, ValidationError


class ActionRegistry:
    """Central registry for all action handlers."""

    def __init__(self):
        self._actions: Dict[str, Type[BaseAction]] = {}
        self._register_builtin_actions()

    def _register_builtin_actions(self):
        for group in (MESSAGING_ACTIONS, RECORD_ACTIONS, HTTP_ACTIONS, DATA_ACTIONS):
            for action_kind, action_class in group.items():
                self.register(action_kind, action_class)

        missing = {kind.value for kind in ActionKind} - set(self._actions)
        if missing:
            raise RuntimeError(f"Action kinds without a handler: {sorted(missing)}")

    def register(self, action_kind: str, action_class: Type[BaseAction]):
        """Register a handler. Only members of ActionKind are accepted."""
        if action_kind not in ActionKind._value2member_map_:
            raise ValueError(f"Unknown action kind: {action_kind}")
        self._actions[action_kind] = action_class

    def get(self, action_kind: str) -> Optional[Type[BaseAction]]:
        return self._actions.get(action_kind)

    def is_known(self, action_kind: str) -> bool:
        return action_kind in self._actions

    def ensure_known(self, action_kind: str) -> None:
        """Reject unknown action kinds at definition time."""
        if not self.is_known(action_kind):
            raise ValidationError(f"Unknown action: {action_kind}")

    def create_instance(self, action_kind: str, step_id: Optional[str] = None) -> BaseAction:
        """Create a handler instance, failing the step for unknown kinds."""
        action_class = self.get(action_kind)
        if action_class is None:
            raise StepExecutionError(f"Unknown action: {action_kind}", step_id=step_id)
        return action_class()

    def list_all(self) -> list:
        """List all registered actions with metadata."""
        return [
            {
                "action": action_kind,
                "display_name": cls.display_name,
                "description": cls.description,
                "config_schema": cls.get_config_schema(),
            }
            for action_kind, cls in self._actions.items()
        ]

    @property
    def available_kinds(self) -> list:
        return list(self._actions.keys())


# Singleton
_registry: Optional[ActionRegistry] = None


def get_action_registry() -> ActionRegistry:
    """Get or create the singleton action registry."""
    global _registry
    if _registry is None:
        _registry = ActionRegistry()
    return _registry
