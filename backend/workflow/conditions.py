"""Step condition evaluation.

A condition is ``{"operator": ..., "left": ..., "right": ...}``. Both operands
go through the template resolver first, so either can be a literal or a
``{{path}}`` reference.
"""

import operator as op
from typing import Any, Callable, Mapping, Optional

import structlog

from core.constants import ConditionOperator
from workflow.resolver import TemplateResolver

logger = structlog.get_logger(__name__)


def _ordered(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def wrapper(left: Any, right: Any) -> bool:
        if left is None or right is None:
            return False
        try:
            return bool(compare(left, right))
        except TypeError:
            return False
    return wrapper


def _contains(left: Any, right: Any) -> bool:
    left_text = "" if left is None else str(left)
    right_text = "" if right is None else str(right)
    return right_text in left_text


_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS.value: lambda left, right: left == right,
    ConditionOperator.NOT_EQUALS.value: lambda left, right: left != right,
    ConditionOperator.GREATER_THAN.value: _ordered(op.gt),
    ConditionOperator.LESS_THAN.value: _ordered(op.lt),
    ConditionOperator.CONTAINS.value: _contains,
    ConditionOperator.EXISTS.value: lambda left, _right: left is not None,
}


def evaluate_condition(condition: Optional[Mapping[str, Any]], resolver: TemplateResolver) -> bool:
    """Evaluate a step condition. A missing condition always passes.

    Unrecognized operators evaluate to True.
    """
    if not condition:
        return True

    operator_name = condition.get("operator")
    compare = _OPERATORS.get(operator_name)
    if compare is None:
        logger.warning("Unknown condition operator, treating as true", operator=operator_name)
        return True

    left = resolver.resolve(condition.get("left"))
    right = resolver.resolve(condition.get("right"))
    return compare(left, right)
