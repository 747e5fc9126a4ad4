"""Condition evaluation for CONDITION nodes.

Comparisons are deliberately loose: ``==``/``!=`` coerce numbers, numeric
strings and booleans into one another, and the ordering operators compare
numerically unless both sides are strings. An unknown operator evaluates to
``False`` instead of raising, so a journey with a typo in its operator takes
the false branch. Journeys in the wild depend on this permissive behaviour.
"""

from __future__ import annotations

import math
import operator as _op
import re
from typing import Any, Callable, Dict, Mapping, Optional

from pydantic import BaseModel

from .contracts import ConditionExpression


class _Missing:
    """Marker for a context key that is not present at all."""

    _instance: Optional["_Missing"] = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()

_ORDERING: Dict[str, Callable[[Any, Any], bool]] = {
    ">": _op.gt,
    ">=": _op.ge,
    "<": _op.lt,
    "<=": _op.le,
}


# Strings that count as numbers: decimal literals, signed Infinity and
# unsigned 0x/0o/0b integers. Anything else ("1_000", "inf", "nan") is NaN.
_DECIMAL = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?\Z", re.ASCII)
_INFINITY = re.compile(r"[+-]?Infinity\Z")
_PREFIXED = re.compile(
    r"0(?:[xX](?P<hex>[0-9a-fA-F]+)|[oO](?P<oct>[0-7]+)|[bB](?P<bin>[01]+))\Z"
)
_RADIX = {"hex": 16, "oct": 8, "bin": 2}


def _is_nullish(value: Any) -> bool:
    return value is None or value is MISSING


def _to_number(value: Any) -> float:
    if value is MISSING:
        return math.nan
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        return _parse_numeric_string(text)
    return math.nan


def _parse_numeric_string(text: str) -> float:
    if _DECIMAL.match(text):
        return float(text)
    if _INFINITY.match(text):
        return -math.inf if text.startswith("-") else math.inf
    prefixed = _PREFIXED.match(text)
    if prefixed is None:
        return math.nan
    name, digits = next((k, v) for k, v in prefixed.groupdict().items() if v)
    try:
        return float(int(digits, _RADIX[name]))
    except OverflowError:
        return math.inf


def loose_equals(left: Any, right: Any) -> bool:
    """Coercive equality between context values and literals."""
    if _is_nullish(left) or _is_nullish(right):
        return _is_nullish(left) and _is_nullish(right)
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    scalar = (str, int, float, bool)
    if isinstance(left, scalar) and isinstance(right, scalar):
        return _to_number(left) == _to_number(right)
    return left == right


def evaluate(left: Any, operator: Optional[str], right: Any) -> bool:
    """Compare ``left`` and ``right`` with ``operator``.

    Unknown operators return ``False``.
    """
    if operator == "==":
        return loose_equals(left, right)
    if operator == "!=":
        return not loose_equals(left, right)
    compare = _ORDERING.get(operator or "")
    if compare is None:
        return False
    if isinstance(left, str) and isinstance(right, str):
        return compare(left, right)
    left_num, right_num = _to_number(left), _to_number(right)
    if math.isnan(left_num) or math.isnan(right_num):
        return False
    return compare(left_num, right_num)


def resolve(context: Mapping[str, Any], key: Optional[str]) -> Any:
    """Look up ``key`` in the patient context, or ``MISSING``."""
    if not key or key not in context:
        return MISSING
    return context[key]


class ConditionResult(BaseModel):
    left_key: Optional[str]
    left_value: Any = None
    operator: Optional[str]
    right_value: Any = None
    result: bool

    def to_payload(self) -> Dict[str, Any]:
        """Shape recorded in the ``condition_evaluated`` step."""
        return {
            "leftKey": self.left_key,
            "leftVal": self.left_value,
            "operator": self.operator,
            "rightValue": self.right_value,
            "result": self.result,
        }


def evaluate_condition(
    expression: ConditionExpression, context: Mapping[str, Any]
) -> ConditionResult:
    left = resolve(context, expression.left_key)
    result = evaluate(left, expression.operator, expression.right_value)
    return ConditionResult(
        left_key=expression.left_key,
        left_value=None if left is MISSING else left,
        operator=expression.operator,
        right_value=expression.right_value,
        result=result,
    )
