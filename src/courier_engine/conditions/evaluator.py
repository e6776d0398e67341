"""Boolean condition trees gating webhook delivery.

A tree is either a leaf condition::

    {"type": "field", "field": "total_amount", "operator": "gt", "value": 10000}

or a combinator ``{"and": [...]}``, ``{"or": [...]}``, ``{"not": node}``.
A bare list is an implicit AND, at the top level and when nested.

Evaluation is pure and fails closed: a missing field, an unknown operator or
a type mismatch makes the leaf ``False``. ``evaluate`` never raises.
"""

import logging
from datetime import datetime, timezone
from numbers import Number
from typing import Any, Callable, Optional

from courier_engine.common.exceptions import ConditionEvaluationError, ConfigurationError
from courier_engine.conditions.predicates import PredicateRegistry

logger = logging.getLogger(__name__)

CONDITION_TYPES: frozenset[str] = frozenset({"field", "role", "tenant", "time", "custom"})
OPERATORS: frozenset[str] = frozenset({
    "equals", "not_equals", "in", "not_in", "gt", "lt", "contains",
})
COMBINATORS: frozenset[str] = frozenset({"and", "or", "not"})
TIME_FIELDS: frozenset[str] = frozenset({"hour", "weekday"})
MAX_DEPTH = 16

_MISSING = object()


# ── Value helpers ──


def resolve_path(path: str, source: Any) -> Any:
    """Walk a dotted path through nested dicts/lists; ``_MISSING`` if absent."""
    current = source
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def _orderable(a: Any, b: Any) -> bool:
    if _is_number(a) and _is_number(b):
        return True
    return type(a) is type(b) and isinstance(a, (str, datetime))


def compare(operator: str, actual: Any, expected: Any) -> bool:
    """Apply ``operator`` to ``actual`` and ``expected``; fail closed."""
    if actual is _MISSING:
        return False
    try:
        if operator == "equals":
            return actual == expected
        if operator == "not_equals":
            return actual != expected
        if operator in ("in", "not_in"):
            if not isinstance(expected, (list, tuple, set, frozenset)):
                return False
            found = actual in expected
            return found if operator == "in" else not found
        if operator in ("gt", "lt"):
            if not _orderable(actual, expected):
                return False
            return actual > expected if operator == "gt" else actual < expected
        if operator == "contains":
            if isinstance(actual, str):
                return isinstance(expected, str) and expected in actual
            if isinstance(actual, (list, tuple, set, frozenset, dict)):
                return expected in actual
            return False
    except TypeError:
        return False
    return False


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _event_view(event: Any) -> dict[str, Any]:
    if hasattr(event, "model_dump"):
        return event.model_dump(mode="python")
    return event if isinstance(event, dict) else {}


def _context_value(view: dict[str, Any], snake: str, camel: str) -> Any:
    context = view.get("context") or {}
    if snake in context:
        return context[snake]
    return context.get(camel, _MISSING)


# ── Leaf evaluators ──


def _eval_field(node: dict, view: dict, predicates: PredicateRegistry) -> bool:
    path = node.get("field")
    if not isinstance(path, str) or not path:
        return False
    actual = resolve_path(path, view.get("data") or {})
    if actual is _MISSING:
        actual = resolve_path(path, view)
    return compare(node.get("operator", ""), actual, node.get("value"))


def _eval_role(node: dict, view: dict, predicates: PredicateRegistry) -> bool:
    actual = _context_value(view, "user_role", "userRole")
    return compare(node.get("operator", ""), actual, node.get("value"))


def _eval_tenant(node: dict, view: dict, predicates: PredicateRegistry) -> bool:
    actual = _context_value(view, "tenant_id", "tenantId")
    return compare(node.get("operator", ""), actual, node.get("value"))


def _eval_time(node: dict, view: dict, predicates: PredicateRegistry) -> bool:
    ts = _as_datetime(_context_value(view, "timestamp", "timestamp"))
    if ts is None:
        return False
    part = node.get("field")
    expected = node.get("value")
    if part == "hour":
        return compare(node.get("operator", ""), ts.hour, expected)
    if part == "weekday":
        return compare(node.get("operator", ""), ts.weekday(), expected)
    if isinstance(expected, (list, tuple)):
        expected = [_as_datetime(v) for v in expected]
        if any(v is None for v in expected):
            return False
    else:
        expected = _as_datetime(expected)
        if expected is None:
            return False
    return compare(node.get("operator", ""), ts, expected)


def _eval_custom(node: dict, view: dict, predicates: PredicateRegistry) -> bool:
    name = node.get("name")
    fn = predicates.get(name) if isinstance(name, str) else None
    if fn is None:
        logger.warning("Unknown custom predicate %r; condition evaluates to false", name)
        return False
    try:
        return bool(fn(view, node.get("value")))
    except Exception as exc:
        error = ConditionEvaluationError(f"Predicate {name!r} raised: {exc}", predicate=name)
        logger.error("%s", error.message, exc_info=True)
        return False


_EVALUATORS: dict[str, Callable[[dict, dict, PredicateRegistry], bool]] = {
    "field": _eval_field,
    "role": _eval_role,
    "tenant": _eval_tenant,
    "time": _eval_time,
    "custom": _eval_custom,
}


# ── Tree walking ──


def _evaluate_node(node: Any, view: dict, predicates: PredicateRegistry, depth: int) -> bool:
    if depth > MAX_DEPTH:
        return False
    if isinstance(node, list):
        return all(_evaluate_node(child, view, predicates, depth + 1) for child in node)
    if not isinstance(node, dict):
        return False
    if "and" in node:
        children = node["and"]
        return isinstance(children, list) and all(
            _evaluate_node(child, view, predicates, depth + 1) for child in children
        )
    if "or" in node:
        children = node["or"]
        return isinstance(children, list) and any(
            _evaluate_node(child, view, predicates, depth + 1) for child in children
        )
    if "not" in node:
        return not _evaluate_node(node["not"], view, predicates, depth + 1)
    evaluator = _EVALUATORS.get(node.get("type"))
    if evaluator is None:
        return False
    return evaluator(node, view, predicates)


def evaluate(tree: Any, event: Any, predicates: Optional[PredicateRegistry] = None) -> bool:
    """Evaluate a condition tree against a lifecycle event.

    ``None`` or an empty list means "no conditions" and passes.
    """
    if tree is None or tree == []:
        return True
    predicates = predicates or PredicateRegistry()
    try:
        return _evaluate_node(tree, _event_view(event), predicates, 0)
    except Exception:
        logger.exception("Condition evaluation failed; treating as false")
        return False


# ── Validation (write path) ──


def _validate_node(node: Any, predicates: PredicateRegistry, depth: int, where: str) -> None:
    if depth > MAX_DEPTH:
        raise ConfigurationError(f"Condition tree deeper than {MAX_DEPTH} levels")
    if isinstance(node, list):
        for i, child in enumerate(node):
            _validate_node(child, predicates, depth + 1, f"{where}[{i}]")
        return
    if not isinstance(node, dict):
        raise ConfigurationError(f"{where}: condition must be an object or a list")

    combinators = COMBINATORS.intersection(node)
    if combinators:
        if len(node) != 1:
            raise ConfigurationError(f"{where}: combinator object must have exactly one key")
        key = next(iter(combinators))
        if key == "not":
            _validate_node(node["not"], predicates, depth + 1, f"{where}.not")
            return
        if not isinstance(node[key], list):
            raise ConfigurationError(f"{where}.{key}: expected a list of conditions")
        for i, child in enumerate(node[key]):
            _validate_node(child, predicates, depth + 1, f"{where}.{key}[{i}]")
        return

    ctype = node.get("type")
    if ctype not in CONDITION_TYPES:
        raise ConfigurationError(
            f"{where}: unknown condition type {ctype!r}. Valid types: {sorted(CONDITION_TYPES)}"
        )
    if ctype == "custom":
        name = node.get("name")
        if not isinstance(name, str) or name not in predicates:
            raise ConfigurationError(
                f"{where}: custom condition references unregistered predicate {name!r}"
            )
        return

    operator = node.get("operator")
    if operator not in OPERATORS:
        raise ConfigurationError(
            f"{where}: unknown operator {operator!r}. Valid operators: {sorted(OPERATORS)}"
        )
    if operator in ("in", "not_in") and not isinstance(node.get("value"), list):
        raise ConfigurationError(f"{where}: operator {operator!r} requires a list value")
    if ctype == "field" and not (isinstance(node.get("field"), str) and node["field"]):
        raise ConfigurationError(f"{where}: field condition requires a 'field' path")
    if ctype == "time" and node.get("field") not in (None, *TIME_FIELDS):
        raise ConfigurationError(f"{where}: time condition field must be 'hour' or 'weekday'")


def validate_tree(tree: Any, predicates: Optional[PredicateRegistry] = None) -> None:
    """Raise ``ConfigurationError`` if ``tree`` cannot be persisted."""
    if tree is None:
        return
    _validate_node(tree, predicates or PredicateRegistry(), 0, "conditions")
