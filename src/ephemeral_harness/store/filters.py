"""Filter normalization shared by the store backends.

Filters use the same shape as the PostgREST-style client they descend from:
``{"column": ("op", value)}`` or ``{"column": value}`` for equality.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

Filters = Mapping[str, Any]

OPERATORS = frozenset({"eq", "neq", "gt", "lt", "in", "is", "prefix"})


@dataclass(frozen=True, slots=True)
class Condition:
    column: str
    op: str
    value: Any


def normalize_filters(filters: Filters | None) -> tuple[Condition, ...]:
    """Turn a filter mapping into validated conditions."""
    if not filters:
        return ()

    conditions: list[Condition] = []
    for column, spec in filters.items():
        if isinstance(spec, tuple) and len(spec) == 2:
            op, value = spec
        else:
            op, value = "eq", spec
        op = str(op)
        if op not in OPERATORS:
            raise ValueError(f"unsupported filter operator {op!r}")
        if op == "in":
            if not isinstance(value, (list, tuple, set, frozenset)):
                raise ValueError("in operator requires an iterable of values")
            value = tuple(value)
        elif op == "prefix":
            if not isinstance(value, str) or not value:
                raise ValueError("prefix operator requires a non-empty string")
        elif value is None and op != "is":
            # Prefer explicit `is` rather than `eq None`.
            raise ValueError(f"{op} does not support None; use op='is' with value=None")
        conditions.append(Condition(str(column), op, value))
    return tuple(conditions)


def matches(row: Mapping[str, Any], conditions: Iterable[Condition]) -> bool:
    """Evaluate conditions against an in-memory row."""
    for cond in conditions:
        actual = row.get(cond.column)
        if cond.op == "eq":
            ok = actual == cond.value
        elif cond.op == "neq":
            ok = actual is not None and actual != cond.value
        elif cond.op == "gt":
            ok = actual is not None and actual > cond.value
        elif cond.op == "lt":
            ok = actual is not None and actual < cond.value
        elif cond.op == "in":
            ok = actual in cond.value
        elif cond.op == "is":
            ok = actual is cond.value or actual == cond.value
        else:  # prefix
            ok = isinstance(actual, str) and actual.startswith(cond.value)
        if not ok:
            return False
    return True


def parse_order(order: str | None) -> tuple[str, bool] | None:
    """Parse ``"column"`` or ``"column.desc"`` into ``(column, descending)``."""
    if not order:
        return None
    column, _, direction = order.partition(".")
    direction = direction or "asc"
    if direction not in ("asc", "desc"):
        raise ValueError(f"invalid order direction {direction!r}")
    return column, direction == "desc"
