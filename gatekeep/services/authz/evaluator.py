from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime, time
from operator import eq, ge, gt, le, lt, ne
from typing import Any

from gatekeep.core.errors import AuthorizationEvaluationError


class ConditionInvalidError(AuthorizationEvaluationError):
    code = "AUTHZ_CONDITION_INVALID"


class ConditionTooComplexError(AuthorizationEvaluationError):
    code = "AUTHZ_CONDITION_TOO_COMPLEX"


Comparator = Callable[[Any, Any], bool]

_TIME_FORMATS = ("%H:%M:%S", "%H:%M")


def resolve_path(context: Any, path: str) -> Any:
    # Dotted lookup through nested mappings; a missing segment resolves to None.
    if not path:
        return None
    node: Any = context
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def _ordered(check: Comparator) -> Comparator:
    def _apply(left: Any, right: Any) -> bool:
        if left is None or right is None:
            return False
        try:
            return bool(check(left, right))
        except TypeError:
            return False

    return _apply


def _member(left: Any, right: Any) -> bool:
    if isinstance(right, (list, tuple, set, frozenset)):
        return left in right
    return right is not None and left == right


def _not_member(left: Any, right: Any) -> bool:
    return not _member(left, right)


def _contains(left: Any, right: Any) -> bool:
    if isinstance(left, str):
        return str(right) in left
    if isinstance(left, (list, tuple, set, frozenset)):
        return right in left
    return False


def _starts_with(left: Any, right: Any) -> bool:
    return isinstance(left, str) and right is not None and left.startswith(str(right))


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def _parse_time(value: Any) -> time | None:
    if isinstance(value, time):
        return value
    if isinstance(value, str):
        for fmt in _TIME_FORMATS:
            try:
                return datetime.strptime(value, fmt).time()
            except ValueError:
                continue
    moment = _parse_datetime(value)
    return moment.time() if moment is not None else None


def _bounds(name: str, window: Any, parse: Callable[[Any], Any]) -> tuple[Any, Any]:
    if not isinstance(window, dict):
        raise ConditionInvalidError(f"{name} expects an object with start/end", operator=name)
    return parse(window.get("start")), parse(window.get("end"))


def _time_between(left: Any, right: Any) -> bool:
    start, end = _bounds("time_between", right, _parse_time)
    value = _parse_time(left)
    if value is None or start is None or end is None:
        return False
    if start <= end:
        return start <= value <= end
    # Window wraps midnight, e.g. 22:00-06:00.
    return value >= start or value <= end


def _date_between(left: Any, right: Any) -> bool:
    start, end = _bounds("date_between", right, _parse_datetime)
    value = _parse_datetime(left)
    if value is None or start is None or end is None:
        return False
    try:
        return start <= value <= end
    except TypeError:
        # Naive and aware datetimes do not compare.
        return False


_LOGICAL: dict[str, Callable[[Any], bool]] = {"all": all, "any": any}

_COMPARATORS: dict[str, Comparator] = {
    "eq": eq,
    "ne": ne,
    "in": _member,
    "not_in": _not_member,
    "gt": _ordered(gt),
    "gte": _ordered(ge),
    "lt": _ordered(lt),
    "lte": _ordered(le),
    "contains": _contains,
    "starts_with": _starts_with,
    "time_between": _time_between,
    "date_between": _date_between,
}

LOGICAL_OPERATORS = frozenset({*_LOGICAL, "not"})
COMPARATORS = frozenset(_COMPARATORS)
OPERATORS = LOGICAL_OPERATORS | COMPARATORS


def _split(condition: Any) -> tuple[str, Any]:
    if not isinstance(condition, dict):
        raise ConditionInvalidError("Condition must be an object")
    if len(condition) != 1:
        raise ConditionInvalidError("Condition must hold exactly one operator", operators=sorted(map(str, condition)))
    ((operator, payload),) = condition.items()
    if operator not in OPERATORS:
        raise ConditionInvalidError(f"Unsupported operator: {operator}", operator=operator)
    return operator, payload


def _items(payload: Any, operator: str) -> list[Any]:
    if not isinstance(payload, list):
        raise ConditionInvalidError(f"{operator} expects a list", operator=operator)
    return payload


def _operands(payload: Any, context: dict[str, Any]) -> tuple[Any, Any]:
    # Pairs are [left, right], {"field", "value"} or {"left", "right"}; {"var": path} reads the context.
    if isinstance(payload, list) and len(payload) == 2:
        left, right = payload
    elif isinstance(payload, dict) and "field" in payload:
        left, right = {"var": payload["field"]}, payload.get("value")
    elif isinstance(payload, dict) and "left" in payload:
        left, right = payload["left"], payload.get("right")
    else:
        raise ConditionInvalidError("Comparator payload must be a pair or an object with field/value")
    return _value(left, context), _value(right, context)


def _value(operand: Any, context: dict[str, Any]) -> Any:
    if isinstance(operand, dict) and "var" in operand:
        return resolve_path(context, str(operand["var"]))
    return operand


def condition_depth(condition: Any) -> int:
    """Nesting depth of a condition tree, validating every node on the way down."""
    if condition is None or isinstance(condition, bool) or condition == {}:
        return 1
    operator, payload = _split(condition)
    if operator == "not":
        return 1 + condition_depth(payload)
    if operator in _LOGICAL:
        return 1 + max((condition_depth(item) for item in _items(payload, operator)), default=1)
    return 2


def validate_condition(condition: Any, *, max_depth: int) -> None:
    depth = condition_depth(condition)
    if depth > max_depth:
        raise ConditionTooComplexError(
            f"Condition depth {depth} exceeds max {max_depth}",
            depth=depth,
            max_depth=max_depth,
        )


def evaluate_condition(condition: Any, context: dict[str, Any]) -> bool:
    # Conditions are data: None and {} always hold, booleans are literals.
    if condition is None or condition == {}:
        return True
    if isinstance(condition, bool):
        return condition
    operator, payload = _split(condition)
    if operator == "not":
        return not evaluate_condition(payload, context)
    if operator in _LOGICAL:
        return _LOGICAL[operator](evaluate_condition(item, context) for item in _items(payload, operator))
    left, right = _operands(payload, context)
    return bool(_COMPARATORS[operator](left, right))
