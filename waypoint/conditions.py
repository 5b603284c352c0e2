"""Boolean expression evaluation against an execution context.

Evaluation is pure and total: malformed expressions, unresolvable fields and
type mismatches all degrade to "condition not met" instead of raising.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)

_MISSING = object()


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_EQUAL = "greater_equal"
    LESS_EQUAL = "less_equal"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    IN = "in"
    NOT_IN = "not_in"


class Condition(BaseModel):
    """Leaf comparison of a context field against a literal value."""

    model_config = ConfigDict(frozen=True)

    field: str
    operator: Operator
    value: Any = None


class CompositeCondition(BaseModel):
    """Homogeneous AND/OR over child expressions."""

    model_config = ConfigDict(frozen=True)

    logic: Literal["AND", "OR"] = "AND"
    conditions: List[Union[Condition, "CompositeCondition"]] = Field(
        default_factory=list
    )


ConditionExpression = Union[Condition, CompositeCondition]

CompositeCondition.model_rebuild()


def parse_condition(raw: Any) -> ConditionExpression:
    """Build an expression from its JSON shape.

    A bare list of conditions is read as an AND composite. Raises
    ``pydantic.ValidationError`` for malformed input.
    """
    if isinstance(raw, (Condition, CompositeCondition)):
        return raw
    if isinstance(raw, list):
        return CompositeCondition(logic="AND", conditions=raw)
    if isinstance(raw, Mapping) and "conditions" in raw:
        data = dict(raw)
        data["logic"] = str(data.get("logic", "AND")).upper()
        return CompositeCondition.model_validate(data)
    return Condition.model_validate(raw)


def resolve_path(context: Any, path: str) -> Any:
    """Walk a dotted path through mappings, sequences and attributes.

    Returns ``_MISSING`` when any segment cannot be resolved.
    """
    current = context
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return _MISSING
        elif hasattr(current, part):
            current = getattr(current, part)
        else:
            return _MISSING
    return current


def lookup(context: Any, path: str, default: Any = None) -> Any:
    """Public variant of :func:`resolve_path` with an explicit default."""
    value = resolve_path(context, path)
    return default if value is _MISSING else value


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def _equals(left: Any, right: Any) -> bool:
    if left == right:
        return True
    a, b = _to_number(left), _to_number(right)
    return a is not None and b is not None and a == b


def _compare(op: Operator, left: Any, right: Any) -> bool:
    a, b = _to_number(left), _to_number(right)
    if a is None or b is None:
        return False
    if op is Operator.GREATER_THAN:
        return a > b
    if op is Operator.LESS_THAN:
        return a < b
    if op is Operator.GREATER_EQUAL:
        return a >= b
    return a <= b


def _membership(left: Any, right: Any) -> Optional[bool]:
    if not isinstance(right, (list, tuple, set)):
        return None
    return any(_equals(left, item) for item in right)


def _evaluate_leaf(cond: Condition, context: Any, default: bool) -> bool:
    actual = resolve_path(context, cond.field)
    op = cond.operator

    if op is Operator.IS_EMPTY:
        return actual is _MISSING or _is_empty(actual)
    if op is Operator.IS_NOT_EMPTY:
        return actual is not _MISSING and not _is_empty(actual)
    if actual is _MISSING:
        return default

    expected = cond.value
    if op is Operator.EQUALS:
        return _equals(actual, expected)
    if op is Operator.NOT_EQUALS:
        return not _equals(actual, expected)
    if op in (
        Operator.GREATER_THAN,
        Operator.LESS_THAN,
        Operator.GREATER_EQUAL,
        Operator.LESS_EQUAL,
    ):
        return _compare(op, actual, expected)
    if op is Operator.CONTAINS:
        if isinstance(actual, str) and isinstance(expected, str):
            return expected in actual
        if isinstance(actual, (list, tuple, set)):
            return any(_equals(item, expected) for item in actual)
        if isinstance(actual, Mapping):
            return expected in actual
        return False
    if op is Operator.STARTS_WITH:
        return isinstance(actual, str) and isinstance(expected, str) and actual.startswith(expected)
    if op is Operator.ENDS_WITH:
        return isinstance(actual, str) and isinstance(expected, str) and actual.endswith(expected)
    if op is Operator.IN:
        return bool(_membership(actual, expected))
    if op is Operator.NOT_IN:
        member = _membership(actual, expected)
        return member is not None and not member
    return False


def _evaluate(expr: ConditionExpression, context: Any, default: bool) -> bool:
    if isinstance(expr, Condition):
        return _evaluate_leaf(expr, context, default)
    if not expr.conditions:
        return default
    results = (_evaluate(child, context, default) for child in expr.conditions)
    return all(results) if expr.logic == "AND" else any(results)


def evaluate(expression: Any, context: Mapping[str, Any], default: bool = False) -> bool:
    """Evaluate ``expression`` against ``context``.

    ``expression`` may be a parsed model, a dict in the trigger/workflow JSON
    shape, or a list (implicit AND). ``None`` evaluates to ``True`` so that an
    absent guard behaves like an unconditional edge.
    """
    if expression is None:
        return True
    try:
        expr = parse_condition(expression)
    except (PydanticValidationError, TypeError, ValueError) as exc:
        logger.debug(f"Malformed condition {expression!r}: {exc}")
        return default
    try:
        return _evaluate(expr, context, default)
    except Exception as exc:
        logger.debug(f"Condition evaluation failed for {expression!r}: {exc}")
        return default
