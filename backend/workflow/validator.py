"""Structural validation of a workflow's step graph.

Checks, in order, stopping at the first problem:
1. the workflow has at least one step
2. every dependency names a sibling step
3. the dependency graph is acyclic (three-colour DFS)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional, Protocol, Sequence

from core.constants import ConditionOperator
from core.exceptions import ValidationError


class _StepLike(Protocol):
    id: str
    name: str
    dependencies: Sequence[str]


class _Color(Enum):
    WHITE = 0
    GRAY = 1
    BLACK = 2


@dataclass
class ValidationReport:
    """Non-raising validation result for the validate-workflow operation."""

    valid: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"valid": self.valid, "errors": self.errors, "warnings": self.warnings}


def validate(steps: Iterable[_StepLike]) -> None:
    """Validate a workflow's steps.

    Raises:
        ValidationError: Empty step list, dangling dependency or cycle.
    """
    steps = list(steps)
    if not steps:
        raise ValidationError("Workflow must have at least one step")

    ids = {step.id for step in steps}
    for step in steps:
        for dep_id in step.dependencies or ():
            if dep_id not in ids:
                raise ValidationError(
                    f'Step "{step.name}" has invalid dependency: {dep_id}',
                    step_id=step.id,
                )

    cycle = find_cycle(steps)
    if cycle:
        path = " -> ".join(cycle)
        raise ValidationError(
            f"Workflow contains circular dependencies: {path}",
            step_id=cycle[0],
        )


def find_cycle(steps: Sequence[_StepLike]) -> Optional[list[str]]:
    """Return the step ids forming the first cycle found, or None.

    Edges point from a step to each of its dependencies. Iterative so deep
    chains cannot exhaust the interpreter stack.
    """
    graph = {step.id: list(step.dependencies or ()) for step in steps}
    color = {step_id: _Color.WHITE for step_id in graph}

    for root in graph:
        if color[root] is not _Color.WHITE:
            continue

        path: list[str] = [root]
        stack = [(root, iter(graph[root]))]
        color[root] = _Color.GRAY

        while stack:
            node, children = stack[-1]
            advanced = False
            for child in children:
                if child not in color:
                    continue  # dangling, reported separately
                if color[child] is _Color.GRAY:
                    start = path.index(child)
                    return path[start:] + [child]
                if color[child] is _Color.WHITE:
                    color[child] = _Color.GRAY
                    path.append(child)
                    stack.append((child, iter(graph[child])))
                    advanced = True
                    break
            if not advanced:
                color[node] = _Color.BLACK
                path.pop()
                stack.pop()

    return None


def check(steps: Iterable) -> ValidationReport:
    """Validate without raising, adding authoring warnings."""
    steps = list(steps)
    report = ValidationReport()
    try:
        validate(steps)
    except ValidationError as e:
        report.valid = False
        report.errors.append(e.message)

    known_operators = {op.value for op in ConditionOperator}
    inactive = {s.id for s in steps if not getattr(s, "is_active", True)}
    for step in steps:
        condition = getattr(step, "condition", None)
        if condition and condition.get("operator") not in known_operators:
            report.warnings.append(
                f'Step "{step.name}" uses unknown condition operator '
                f'"{condition.get("operator")}"; it will always run'
            )
        if getattr(step, "is_active", True):
            for dep_id in step.dependencies or ():
                if dep_id in inactive:
                    report.warnings.append(
                        f'Step "{step.name}" depends on inactive step {dep_id}'
                    )
    return report
