"""Template resolution for step configs.

Resolves ``{{dotted.path}}`` tokens anywhere inside a config, through nested
dicts and lists, against one merged scope:

    variables  <  trigger data  <  step results     (later wins)

plus the namespaced forms ``variables.x``, ``trigger.x``, ``steps.<id>.x``
and ``stepResults.<id>.x``.

``variables``, ``trigger``, ``steps`` and ``stepResults`` are reserved for
those namespaces only where no real key of that name exists. A trigger key
``trigger`` (set on scheduled and webhook runs) resolves to its own value,
and ``trigger.x`` then falls back to the trigger namespace.

- ``"{{ path }}"`` on its own yields the raw value, type preserved.
- ``"Hello {{ path }}"`` renders the value as text.
- Unknown paths yield ``None`` (empty string when embedded). Never raises.
"""

import copy
import json
import re
from types import MappingProxyType
from typing import Any, Mapping, Optional

TOKEN_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

_MISSING = object()


def build_namespaces(
    variables: Optional[Mapping[str, Any]] = None,
    trigger_data: Optional[Mapping[str, Any]] = None,
    step_results: Optional[Mapping[str, Any]] = None,
) -> dict[str, dict]:
    """The per-layer lookup objects behind the namespaced forms."""
    step_results = dict(step_results or {})
    return {
        "variables": dict(variables or {}),
        "trigger": dict(trigger_data or {}) if isinstance(trigger_data, Mapping) else {},
        "steps": step_results,
        "stepResults": step_results,
    }


def build_scope(
    variables: Optional[Mapping[str, Any]] = None,
    trigger_data: Optional[Mapping[str, Any]] = None,
    step_results: Optional[Mapping[str, Any]] = None,
) -> dict[str, Any]:
    """Merge the three context layers into one lookup object.

    Namespace aliases go in first so real keys of the same name win.
    """
    namespaces = build_namespaces(variables, trigger_data, step_results)
    scope: dict[str, Any] = dict(namespaces)
    scope.update(namespaces["variables"])
    scope.update(namespaces["trigger"])
    scope.update(namespaces["steps"])
    return scope


def lookup_path(obj: Any, path: str) -> Any:
    """Walk a dotted path through dicts, lists and attributes.

    Returns None as soon as a segment cannot be followed.
    """
    current = obj
    for part in path.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(part, _MISSING)
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return None
        else:
            current = getattr(current, part, _MISSING)
        if current is _MISSING:
            return None
    return current


def _render(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


class TemplateResolver:
    """Resolves templates against a frozen copy of an execution scope."""

    def __init__(self, scope: Mapping[str, Any], namespaces: Optional[Mapping[str, Any]] = None):
        self._scope = MappingProxyType(copy.deepcopy(dict(scope)))
        self._namespaces = MappingProxyType(copy.deepcopy(dict(namespaces or {})))

    @classmethod
    def from_parts(
        cls,
        variables: Optional[Mapping[str, Any]] = None,
        trigger_data: Optional[Mapping[str, Any]] = None,
        step_results: Optional[Mapping[str, Any]] = None,
    ) -> "TemplateResolver":
        return cls(
            build_scope(variables, trigger_data, step_results),
            build_namespaces(variables, trigger_data, step_results),
        )

    @property
    def scope(self) -> Mapping[str, Any]:
        return self._scope

    def with_scope(self, **extra: Any) -> "TemplateResolver":
        """A resolver whose scope has ``extra`` layered on top."""
        return TemplateResolver({**self._scope, **extra}, self._namespaces)

    def lookup(self, path: str) -> Any:
        path = path.strip()
        value = lookup_path(self._scope, path)
        if value is None:
            # A real key shadowing a namespace still leaves ``ns.x`` reachable
            head, _, rest = path.partition(".")
            if rest and head in self._namespaces:
                value = lookup_path(self._namespaces[head], rest)
        return copy.deepcopy(value)

    def resolve_string(self, text: str) -> Any:
        whole = TOKEN_PATTERN.fullmatch(text.strip())
        if whole:
            return self.lookup(whole.group(1))
        if "{{" not in text:
            return text
        return TOKEN_PATTERN.sub(lambda m: _render(self.lookup(m.group(1))), text)

    def resolve(self, value: Any) -> Any:
        """Return a resolved copy of ``value``; the input is left untouched."""
        if isinstance(value, str):
            return self.resolve_string(value)
        if isinstance(value, Mapping):
            return {key: self.resolve(item) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.resolve(item) for item in value]
        return copy.deepcopy(value)
