"""Data actions: delay, calculate_value, transform_data, validate_data."""

import re
from datetime import datetime, timezone
from typing import Any, Dict

from actions.base_action import ActionContext, BaseAction, require
from core.constants import ActionKind
from core.exceptions import StepExecutionError
from workflow.conditions import evaluate_condition
from workflow.expression import calculate
from workflow.resolver import lookup_path

DEFAULT_DELAY_MS = 1000


class DelayAction(BaseAction):
    """Pause the execution for ``duration`` milliseconds (default 1000)."""

    action_kind = ActionKind.DELAY.value
    display_name = "Delay"
    description = "Wait for a number of milliseconds"

    async def execute(self, config: Dict[str, Any], context: ActionContext) -> Any:
        duration = config.get("duration")
        if duration is None or duration == "":
            duration = DEFAULT_DELAY_MS
        try:
            delay_ms = int(float(duration))
        except (TypeError, ValueError):
            raise StepExecutionError(f"delay: invalid duration {duration!r}", step_id=context.step_id)
        if delay_ms < 0:
            raise StepExecutionError("delay: duration must not be negative", step_id=context.step_id)

        max_delay = context.services.max_delay_ms
        if delay_ms > max_delay:
            raise StepExecutionError(
                f"delay: duration {delay_ms}ms exceeds limit of {max_delay}ms", step_id=context.step_id
            )

        await context.services.sleep(delay_ms / 1000)
        return {"delayed": delay_ms, "timestamp": datetime.now(timezone.utc).isoformat()}


class CalculateValueAction(BaseAction):
    """Evaluate an arithmetic expression.

    Config:
        expression: e.g. ``"{price} * {quantity} * (1 + taxRate)"``
        variables: Mapping of names used by the expression. Names not found
            here are looked up in the execution scope.
    """

    action_kind = ActionKind.CALCULATE_VALUE.value
    display_name = "Calculate Value"
    description = "Evaluate an arithmetic expression"

    async def execute(self, config: Dict[str, Any], context: ActionContext) -> Any:
        expression = require(config, "expression", self.action_kind)
        variables = config.get("variables") or {}
        if not isinstance(variables, dict):
            raise StepExecutionError("calculate_value: variables must be an object", step_id=context.step_id)

        names = {**context.scope, **variables}
        result = calculate(str(expression), names)
        return {"result": result, "expression": expression}


class TransformDataAction(BaseAction):
    """Apply a chain of transformations to a list.

    Config:
        input: The list to transform (usually a ``{{path}}`` reference)
        transformations: List of
            {"type": "filter", "condition": {...}}
            {"type": "map", "mapping": {...}}
            {"type": "sort", "field": "a.b", "order": "asc" | "desc"}

    Filter conditions and map templates see the current element as
    ``item``, on top of the execution scope.
    """

    action_kind = ActionKind.TRANSFORM_DATA.value
    display_name = "Transform Data"
    description = "Filter, map and sort a list"
    raw_config_keys = ("transformations",)

    async def execute(self, config: Dict[str, Any], context: ActionContext) -> Any:
        data = config.get("input")
        if data is None:
            data = []
        if not isinstance(data, list):
            raise StepExecutionError("transform_data: input must be a list", step_id=context.step_id)

        transformed = list(data)
        for transformation in config.get("transformations") or []:
            kind = (transformation or {}).get("type")
            if kind == "filter":
                condition = transformation.get("condition")
                transformed = [
                    item for item in transformed
                    if evaluate_condition(condition, context.resolver.with_scope(item=item))
                ]
            elif kind == "map":
                mapping = transformation.get("mapping")
                transformed = [
                    context.resolver.with_scope(item=item).resolve(mapping) for item in transformed
                ]
            elif kind == "sort":
                transformed = self._sort(transformed, transformation.get("field"), transformation.get("order"))
            else:
                raise StepExecutionError(
                    f"transform_data: unknown transformation {kind!r}", step_id=context.step_id
                )

        return {
            "transformed": transformed,
            "originalCount": len(data),
            "transformedCount": len(transformed),
        }

    @staticmethod
    def _sort(items: list, field: Any, order: Any) -> list:
        def key(item):
            value = lookup_path(item, field) if field else item
            if value is None:
                return (1, "", 0)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return (0, "number", value)
            # mixed types group by type name
            return (0, type(value).__name__, value)

        try:
            return sorted(items, key=key, reverse=order == "desc")
        except TypeError as e:
            raise StepExecutionError(f"transform_data: cannot sort by {field!r}: {e}")


class ValidateDataAction(BaseAction):
    """Check ``data`` against ``rules``.

    Rules map a field path to checks: ``required``, ``type`` (string, number,
    boolean, object, array), ``min``/``max`` (numbers and lengths) and
    ``pattern``. Set ``failOnInvalid`` to fail the step instead of returning
    the errors.
    """

    action_kind = ActionKind.VALIDATE_DATA.value
    display_name = "Validate Data"
    description = "Validate data against a set of rules"

    _TYPES = {
        "string": (str,),
        "number": (int, float),
        "boolean": (bool,),
        "object": (dict,),
        "array": (list,),
    }

    async def execute(self, config: Dict[str, Any], context: ActionContext) -> Any:
        data = config.get("data")
        rules = config.get("rules") or {}
        if not isinstance(rules, dict):
            raise StepExecutionError("validate_data: rules must be an object", step_id=context.step_id)

        errors = []
        for path, rule in rules.items():
            errors.extend(self._check(path, lookup_path(data, path), rule or {}))

        if errors and config.get("failOnInvalid"):
            raise StepExecutionError("validate_data: " + "; ".join(errors), step_id=context.step_id)
        return {"valid": not errors, "errors": errors}

    def _check(self, path: str, value: Any, rule: dict) -> list[str]:
        if value is None:
            return [f"{path} is required"] if rule.get("required") else []

        errors = []
        expected = rule.get("type")
        if expected:
            types = self._TYPES.get(expected)
            is_bool = isinstance(value, bool)
            if types is None:
                errors.append(f"{path}: unknown type rule {expected!r}")
            elif not isinstance(value, types) or (is_bool and expected == "number"):
                errors.append(f"{path} must be of type {expected}")
                return errors

        size = len(value) if isinstance(value, (str, list, dict)) else value
        if isinstance(size, (int, float)) and not isinstance(size, bool):
            if rule.get("min") is not None and size < rule["min"]:
                errors.append(f"{path} must be at least {rule['min']}")
            if rule.get("max") is not None and size > rule["max"]:
                errors.append(f"{path} must be at most {rule['max']}")

        pattern = rule.get("pattern")
        if pattern:
            try:
                if not re.search(pattern, str(value)):
                    errors.append(f"{path} does not match pattern {pattern}")
            except re.error as e:
                errors.append(f"{path}: invalid pattern: {e}")
        return errors


DATA_ACTIONS = {
    ActionKind.DELAY.value: DelayAction,
    ActionKind.CALCULATE_VALUE.value: CalculateValueAction,
    ActionKind.TRANSFORM_DATA.value: TransformDataAction,
    ActionKind.VALIDATE_DATA.value: ValidateDataAction,
}
