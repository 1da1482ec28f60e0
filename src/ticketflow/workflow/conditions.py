"""Pure predicate evaluation over entity field values."""

from __future__ import annotations

from typing import Any, Mapping

from .schema import ConditionClause, RuleConditions

OPERATORS = ("=", "!=", ">", "<", ">=", "<=", "contains", "starts_with", "ends_with", "in", "not_in")
NULL_OPERATORS = ("is_null", "is_not_null", "is_empty", "is_not_empty")


def resolve_field(data: Any, path: str) -> Any:
    """Follow a dotted path through nested mappings/objects; missing segments give None."""
    if not path:
        return None
    value = data
    for part in path.split("."):
        if isinstance(value, Mapping):
            if part not in value:
                return None
            value = value[part]
        elif isinstance(value, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(value):
                return None
            value = value[index]
        elif value is not None and hasattr(value, part):
            value = getattr(value, part)
        else:
            return None
    return value


def _as_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else ""
    return str(value)


def _equals(actual: Any, expected: Any) -> bool:
    left, right = _as_number(actual), _as_number(expected)
    if left is not None and right is not None:
        return left == right
    return _text(actual) == _text(expected)


def _compare(actual: Any, expected: Any) -> int | None:
    """Three-way comparison; numeric when both sides are numbers, otherwise lexical."""
    if actual is None:
        return None
    left, right = _as_number(actual), _as_number(expected)
    if left is None or right is None:
        left, right = _text(actual), _text(expected)
    return (left > right) - (left < right)


def _is_empty(value: Any) -> bool:
    if value is None or value is False:
        return True
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == 0
    if isinstance(value, str):
        return value in ("", "0")
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def _members(expected: Any) -> list:
    if isinstance(expected, (list, tuple, set, frozenset)):
        return list(expected)
    return [expected]


def evaluate_condition(actual: Any, operator: str, expected: Any) -> bool:
    """Evaluate ``actual <operator> expected``. Unknown operators evaluate to False."""
    if operator in ("=", "!="):
        result = _equals(actual, expected)
        return result if operator == "=" else not result

    if operator in (">", "<", ">=", "<="):
        order = _compare(actual, expected)
        if order is None:
            return False
        return {
            ">": order > 0,
            "<": order < 0,
            ">=": order >= 0,
            "<=": order <= 0,
        }[operator]

    if operator in ("contains", "starts_with", "ends_with"):
        haystack, needle = _text(actual).lower(), _text(expected).lower()
        if operator == "contains":
            return needle in haystack
        if operator == "starts_with":
            return haystack.startswith(needle)
        return haystack.endswith(needle)

    if operator in ("in", "not_in"):
        found = any(_equals(actual, item) for item in _members(expected))
        return found if operator == "in" else not found

    if operator == "is_null":
        return actual is None
    if operator == "is_not_null":
        return actual is not None
    if operator == "is_empty":
        return _is_empty(actual)
    if operator == "is_not_empty":
        return not _is_empty(actual)

    return False


def evaluate_clause(clause: ConditionClause, data: Any) -> bool:
    return evaluate_condition(resolve_field(data, clause.field), clause.operator, clause.value)


def evaluate_rule_conditions(conditions: RuleConditions, data: Any) -> bool:
    """Combine a rule's clauses with ``and``/``or``; no clauses or an unknown combinator match."""
    if not conditions.rules:
        return True
    results = [evaluate_clause(clause, data) for clause in conditions.rules]
    if conditions.operator == "and":
        return all(results)
    if conditions.operator == "or":
        return any(results)
    return True
