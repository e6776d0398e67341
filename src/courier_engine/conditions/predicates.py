"""Server-side table of named predicates for ``custom`` conditions.

Persisted endpoint configuration only ever stores a predicate *name* plus
JSON parameters; the callable itself lives here and is looked up at
evaluation time.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Optional

PredicateFn = Callable[[dict[str, Any], Any], bool]


class PredicateRegistry:
    """Named predicates available to ``{"type": "custom"}`` conditions."""

    def __init__(self):
        self._predicates: dict[str, PredicateFn] = {}

    def register(self, name: str, fn: Optional[PredicateFn] = None):
        """Register ``fn`` under ``name``. Usable as a decorator."""
        if not name:
            raise ValueError("Predicate name must be non-empty")

        def _add(func: PredicateFn) -> PredicateFn:
            self._predicates[name] = func
            return func

        if fn is not None:
            return _add(fn)
        return _add

    def unregister(self, name: str) -> None:
        self._predicates.pop(name, None)

    def get(self, name: str) -> Optional[PredicateFn]:
        return self._predicates.get(name)

    def names(self) -> list[str]:
        return sorted(self._predicates)

    def __contains__(self, name: object) -> bool:
        return name in self._predicates


def field_changed(event: dict[str, Any], params: Any) -> bool:
    """True when any of the named fields differs between ``previous`` and ``data``."""
    previous = event.get("previous")
    if not isinstance(previous, dict):
        return False
    data = event.get("data") or {}
    fields = [params] if isinstance(params, str) else list(params or [])
    return any(data.get(f) != previous.get(f) for f in fields)


def business_hours(event: dict[str, Any], params: Any) -> bool:
    """True when the event timestamp falls in [start, end) UTC hours on a weekday."""
    params = params or {}
    start = int(params.get("start", 9))
    end = int(params.get("end", 17))
    ts = (event.get("context") or {}).get("timestamp")
    if isinstance(ts, str):
        ts = datetime.fromisoformat(ts)
    if not isinstance(ts, datetime):
        return False
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc)
    return ts.weekday() < 5 and start <= ts.hour < end


def default_predicates() -> PredicateRegistry:
    """Registry pre-loaded with the built-in predicates."""
    registry = PredicateRegistry()
    registry.register("field_changed", field_changed)
    registry.register("business_hours", business_hours)
    return registry
