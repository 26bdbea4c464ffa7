"""
Condition predicates for action mappings.

Conditions arrive as JSON-like trees from configuration tooling and are parsed
once into a small tagged-variant AST. ``evaluate`` is a pure interpreter over a
context mapping; no expression language or dynamic code execution is involved.

Supported operators::

    {"eq": ["tier", "pro"]}                 {"in": ["lang", ["py", "go"]]}
    {"gt": ["score", 3]}  gte / lt / lte    {"contains": ["input", "refund"]}
    {"exists": "workspace_id"}
    {"and": [...]}  {"or": [...]}  {"not": {...}}

Legacy keys are translated as well: ``contains_keyword``, ``requires_context``
and ``min_confidence``. A mapping with several keys is the conjunction of its
clauses; an empty mapping always holds.
"""

from dataclasses import dataclass
from typing import Any, Mapping, Tuple, Union

from ..utils.error_handling import ConfigurationError


_MISSING = object()

_COMPARISONS = ("gt", "gte", "lt", "lte")


@dataclass(frozen=True)
class Always:
    """Holds for every context."""


@dataclass(frozen=True)
class Eq:
    field: str
    value: Any


@dataclass(frozen=True)
class In:
    field: str
    values: Tuple[Any, ...]


@dataclass(frozen=True)
class Compare:
    field: str
    op: str
    value: float


@dataclass(frozen=True)
class Contains:
    field: str
    needle: Any


@dataclass(frozen=True)
class Exists:
    field: str


@dataclass(frozen=True)
class And:
    items: Tuple["Condition", ...]


@dataclass(frozen=True)
class Or:
    items: Tuple["Condition", ...]


@dataclass(frozen=True)
class Not:
    item: "Condition"


Condition = Union[Always, Eq, In, Compare, Contains, Exists, And, Or, Not]


def parse_condition(raw: Any) -> Condition:
    """
    Parse a JSON-like condition tree.

    Args:
        raw: Mapping (or None) as stored in configuration

    Returns:
        Parsed Condition

    Raises:
        ConfigurationError: If the tree uses an unknown operator or bad operands
    """
    if raw is None:
        return Always()
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"Condition must be a mapping, got {type(raw).__name__}")
    if not raw:
        return Always()

    clauses = [_parse_clause(key, value) for key, value in raw.items()]
    if len(clauses) == 1:
        return clauses[0]
    return And(tuple(clauses))


def _parse_clause(key: str, value: Any) -> Condition:
    if key == "and":
        return And(tuple(parse_condition(item) for item in _as_list(key, value)))
    if key == "or":
        return Or(tuple(parse_condition(item) for item in _as_list(key, value)))
    if key == "not":
        return Not(parse_condition(value))
    if key == "exists":
        return Exists(_field_name(key, value))
    if key == "eq":
        field_name, operand = _binary(key, value)
        return Eq(field_name, operand)
    if key == "in":
        field_name, operand = _binary(key, value)
        if not isinstance(operand, (list, tuple, set, frozenset)):
            raise ConfigurationError(f"'in' condition on '{field_name}' needs a list of values")
        return In(field_name, tuple(operand))
    if key in _COMPARISONS:
        field_name, operand = _binary(key, value)
        if isinstance(operand, bool) or not isinstance(operand, (int, float)):
            raise ConfigurationError(f"'{key}' condition on '{field_name}' needs a number")
        return Compare(field_name, key, float(operand))
    if key == "contains":
        field_name, operand = _binary(key, value)
        return Contains(field_name, operand)

    # Legacy condition keys
    if key == "contains_keyword":
        keywords = value if isinstance(value, (list, tuple)) else [value]
        return Or(tuple(Contains("input", str(keyword)) for keyword in keywords))
    if key == "requires_context":
        required = value if isinstance(value, (list, tuple)) else [value]
        return And(tuple(Exists(str(name)) for name in required))
    if key == "min_confidence":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError("'min_confidence' needs a number")
        return Or((Not(Exists("confidence")), Compare("confidence", "gte", float(value))))

    raise ConfigurationError(f"Unknown condition operator: {key}", config_key=key)


def _as_list(key: str, value: Any) -> list:
    if not isinstance(value, (list, tuple)):
        raise ConfigurationError(f"'{key}' condition needs a list of clauses")
    return list(value)


def _field_name(key: str, value: Any) -> str:
    if not isinstance(value, str) or not value:
        raise ConfigurationError(f"'{key}' condition needs a field name")
    return value


def _binary(key: str, value: Any) -> Tuple[str, Any]:
    if isinstance(value, Mapping):
        if "field" not in value or "value" not in value:
            raise ConfigurationError(f"'{key}' condition needs 'field' and 'value'")
        return _field_name(key, value["field"]), value["value"]
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return _field_name(key, value[0]), value[1]
    raise ConfigurationError(f"'{key}' condition needs [field, value]")


def lookup(scope: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path against nested mappings; returns _MISSING when absent."""
    current: Any = scope
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def evaluate(condition: Condition, scope: Mapping[str, Any]) -> bool:
    """
    Evaluate a parsed condition against a context mapping.

    Missing fields never satisfy Eq, In, Compare or Contains.
    """
    if isinstance(condition, Always):
        return True
    if isinstance(condition, And):
        return all(evaluate(item, scope) for item in condition.items)
    if isinstance(condition, Or):
        return any(evaluate(item, scope) for item in condition.items)
    if isinstance(condition, Not):
        return not evaluate(condition.item, scope)

    actual = lookup(scope, condition.field)
    if isinstance(condition, Exists):
        return actual is not _MISSING and actual is not None
    if actual is _MISSING:
        return False
    if isinstance(condition, Eq):
        return actual == condition.value
    if isinstance(condition, In):
        return actual in condition.values
    if isinstance(condition, Compare):
        return _compare(actual, condition.op, condition.value)
    if isinstance(condition, Contains):
        if isinstance(actual, str):
            return str(condition.needle).lower() in actual.lower()
        if isinstance(actual, (list, tuple, set, frozenset, dict)):
            return condition.needle in actual
        return False
    raise TypeError(f"Unsupported condition node: {condition!r}")


def _compare(actual: Any, op: str, expected: float) -> bool:
    if isinstance(actual, bool) or not isinstance(actual, (int, float)):
        return False
    if op == "gt":
        return actual > expected
    if op == "gte":
        return actual >= expected
    if op == "lt":
        return actual < expected
    return actual <= expected
