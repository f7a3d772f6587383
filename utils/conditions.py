"""
Shared condition evaluator — used by Multisplit and WaitUntilBranch steps.

Evaluates BranchCondition objects against data dictionaries.
Supports nested dot-notation field access and type coercion.
"""
from __future__ import annotations

import re
import operator as op
from typing import Any, Optional

from models.schemas import Branch, BranchCondition


OPERATORS: dict[str, Any] = {
    "eq": op.eq,
    "neq": op.ne,
    "gt": op.gt,
    "gte": op.ge,
    "lt": op.lt,
    "lte": op.le,
    "in": lambda a, b: a in b,
    "contains": lambda a, b: b in str(a),
    "regex": lambda a, b: bool(re.search(str(b), str(a))),
    "exists": lambda a, b: a is not None,
    "not_exists": lambda a, b: a is None,
}


def get_nested_value(data: dict, field: str) -> Any:
    """Get a value from nested dict using dot notation. e.g. 'order.status'"""
    current = data
    for part in field.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


def evaluate_condition(condition: BranchCondition, data: dict[str, Any]) -> bool:
    """Evaluate a single condition against data."""
    val = get_nested_value(data, condition.field)
    fn = OPERATORS.get(condition.operator)
    if fn is None:
        return False
    try:
        if isinstance(condition.value, (int, float)) and not isinstance(condition.value, bool) and isinstance(val, str):
            val = float(val)
        return fn(val, condition.value)
    except (TypeError, ValueError):
        return False


def evaluate_conditions(conditions: list[BranchCondition], data: dict[str, Any], relation: str = "all") -> bool:
    """Evaluate conditions joined by relation ("all" = AND, "any" = OR). Empty passes."""
    if not conditions:
        return True
    results = (evaluate_condition(c, data) for c in conditions)
    return any(results) if relation == "any" else all(results)


def branch_matches(branch: Branch, data: dict[str, Any], event_name: Optional[str] = None) -> bool:
    """A branch keyed on an event only matches that event; its conditions must also hold."""
    if branch.event is not None and branch.event != event_name:
        return False
    return evaluate_conditions(branch.conditions, data, branch.relation)
