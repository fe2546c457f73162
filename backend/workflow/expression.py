"""Safe arithmetic for the ``calculate_value`` action.

A small recursive-descent parser over a restricted grammar. Nothing is ever
handed to ``eval``; names can only resolve to values from the supplied
variables.

    expression := term (("+" | "-") term)*
    term       := unary (("*" | "/" | "%") unary)*
    unary      := ("+" | "-") unary | power
    power      := primary ("**" unary)?
    primary    := NUMBER | NAME | NAME "(" args ")" | "(" expression ")"
    args       := expression ("," expression)*

NAME is a dotted identifier (``order.total``) and may be wrapped in braces
(``{price}``).
"""

import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Union

from core.exceptions import CalculationError
from workflow.resolver import lookup_path

Number = Union[int, float]

MAX_EXPRESSION_LENGTH = 1000
MAX_EXPONENT = 1000

_TOKEN_SPEC = [
    ("NUMBER", r"\d+(?:\.\d*)?(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?"),
    ("NAME", r"\{\s*[A-Za-z_][\w.]*\s*\}|[A-Za-z_][\w.]*"),
    ("POW", r"\*\*"),
    ("OP", r"[-+*/%(),]"),
    ("SKIP", r"\s+"),
    ("MISMATCH", r"."),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))

_FUNCTIONS: dict[str, Callable[..., Number]] = {
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "floor": math.floor,
    "ceil": math.ceil,
}


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    pos: int


def _tokenize(expression: str) -> list[_Token]:
    tokens = []
    for match in _TOKEN_RE.finditer(expression):
        kind = match.lastgroup
        text = match.group()
        if kind == "SKIP":
            continue
        if kind == "MISMATCH":
            raise CalculationError(f"Unexpected character {text!r} at position {match.start()}")
        if kind == "NAME" and text.startswith("{"):
            text = text[1:-1].strip()
        tokens.append(_Token(kind, text, match.start()))
    tokens.append(_Token("END", "", len(expression)))
    return tokens


def _to_number(name: str, value: Any) -> Number:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            try:
                return float(value)
            except ValueError:
                pass
    raise CalculationError(f"Variable '{name}' is not numeric: {value!r}")


class _Parser:
    def __init__(self, tokens: list[_Token], variables: Mapping[str, Any]):
        self._tokens = tokens
        self._index = 0
        self._variables = variables

    @property
    def _current(self) -> _Token:
        return self._tokens[self._index]

    def _advance(self) -> _Token:
        token = self._current
        self._index += 1
        return token

    def _accept(self, text: str) -> bool:
        if self._current.text == text and self._current.kind in ("OP", "POW"):
            self._index += 1
            return True
        return False

    def _expect(self, text: str) -> None:
        if not self._accept(text):
            token = self._current
            found = token.text or "end of expression"
            raise CalculationError(f"Expected '{text}' at position {token.pos}, found {found!r}")

    def parse(self) -> Number:
        value = self._expression()
        if self._current.kind != "END":
            raise CalculationError(
                f"Unexpected {self._current.text!r} at position {self._current.pos}"
            )
        return value

    def _expression(self) -> Number:
        value = self._term()
        while True:
            if self._accept("+"):
                value = value + self._term()
            elif self._accept("-"):
                value = value - self._term()
            else:
                return value

    def _term(self) -> Number:
        value = self._unary()
        while True:
            if self._accept("*"):
                value = value * self._unary()
            elif self._accept("/"):
                divisor = self._unary()
                if divisor == 0:
                    raise CalculationError("Division by zero")
                value = value / divisor
            elif self._accept("%"):
                divisor = self._unary()
                if divisor == 0:
                    raise CalculationError("Modulo by zero")
                value = value % divisor
            else:
                return value

    def _unary(self) -> Number:
        if self._accept("-"):
            return -self._unary()
        if self._accept("+"):
            return +self._unary()
        return self._power()

    def _power(self) -> Number:
        base = self._primary()
        if self._accept("**"):
            exponent = self._unary()
            if abs(exponent) > MAX_EXPONENT:
                raise CalculationError(f"Exponent {exponent} exceeds limit of {MAX_EXPONENT}")
            try:
                result = base ** exponent
            except (OverflowError, ZeroDivisionError) as e:
                raise CalculationError(f"Invalid power: {e}") from e
            if isinstance(result, complex):
                raise CalculationError("Power result is not a real number")
            return result
        return base

    def _primary(self) -> Number:
        token = self._current
        if token.kind == "NUMBER":
            self._advance()
            return float(token.text) if any(c in token.text for c in ".eE") else int(token.text)

        if token.kind == "NAME":
            self._advance()
            if self._accept("("):
                return self._call(token)
            value = lookup_path(self._variables, token.text)
            if value is None:
                raise CalculationError(f"Unknown variable '{token.text}'")
            return _to_number(token.text, value)

        if self._accept("("):
            value = self._expression()
            self._expect(")")
            return value

        found = token.text or "end of expression"
        raise CalculationError(f"Unexpected {found!r} at position {token.pos}")

    def _call(self, name_token: _Token) -> Number:
        func = _FUNCTIONS.get(name_token.text)
        if func is None:
            raise CalculationError(f"Unknown function '{name_token.text}'")
        args = []
        if not self._accept(")"):
            args.append(self._expression())
            while self._accept(","):
                args.append(self._expression())
            self._expect(")")
        try:
            return func(*args)
        except (TypeError, ValueError) as e:
            raise CalculationError(f"{name_token.text}(): {e}") from e


def calculate(expression: str, variables: Mapping[str, Any] = None) -> Number:
    """Evaluate an arithmetic expression.

    Raises:
        CalculationError: Syntax errors, unknown names, non-numeric values,
            division by zero.
    """
    if not isinstance(expression, str) or not expression.strip():
        raise CalculationError("Expression is required")
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise CalculationError(f"Expression longer than {MAX_EXPRESSION_LENGTH} characters")
    tokens = _tokenize(expression)
    return _Parser(tokens, variables or {}).parse()
