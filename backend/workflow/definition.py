"""Immutable workflow snapshot handed to the execution engine.

An execution loads its workflow, steps and variables once at start and works
on these frozen copies, so edits made to the definition while the run is in
flight never reach it.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Optional

from workflow.retry_strategies import RetryStrategy


@dataclass(frozen=True)
class StepDefinition:
    """One step of a workflow as seen by the engine."""

    id: str
    name: str
    action: str
    position: int
    type: str = "action"
    config: dict[str, Any] = field(default_factory=dict)
    condition: Optional[dict[str, Any]] = None
    retry: RetryStrategy = field(default_factory=RetryStrategy)
    timeout_ms: Optional[int] = None
    dependencies: tuple[str, ...] = ()
    is_active: bool = True

    @classmethod
    def from_model(cls, step) -> "StepDefinition":
        """Build a snapshot from a WorkflowStep ORM row."""
        return cls(
            id=step.id,
            name=step.name,
            action=step.action,
            position=step.position,
            type=step.type,
            config=copy.deepcopy(step.config or {}),
            condition=copy.deepcopy(step.condition) if step.condition else None,
            retry=RetryStrategy.from_dict(step.retry_config or {}),
            timeout_ms=step.timeout,
            dependencies=tuple(step.dependencies or ()),
            is_active=step.is_active,
        )


@dataclass(frozen=True)
class WorkflowSnapshot:
    """A workflow definition frozen at execution start."""

    id: str
    tenant_id: str
    name: str
    version: int = 1
    steps: tuple[StepDefinition, ...] = ()
    variables: dict[str, Any] = field(default_factory=dict)

    @property
    def ordered_steps(self) -> list[StepDefinition]:
        """Steps in ascending position; ties keep their stored order."""
        return sorted(self.steps, key=lambda s: s.position)

    def get_step(self, step_id: str) -> Optional[StepDefinition]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None
