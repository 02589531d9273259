"""Playbook condition evaluator — flat AND of field/operator/value conditions.

Playbooks are authored by operators and only loosely validated, so evaluation
fails closed: unknown fields, unknown operators, non-numeric operands for
numeric comparisons and malformed condition lists all mean "no match" and are
logged, never raised.
"""

import json
import logging
from typing import Any, Optional

from churnpilot.exceptions import EvaluationError

logger = logging.getLogger(__name__)

OPERATORS = ("equals", "not_equals", "greater_than", "less_than", "contains")


def parse_conditions(raw: Any, playbook_id: Optional[str] = None) -> Optional[list]:
    """Decode a stored condition list; None when it is not a list of objects."""
    conditions = raw
    if isinstance(raw, str):
        try:
            conditions = json.loads(raw) if raw.strip() else []
        except (json.JSONDecodeError, TypeError):
            _report(playbook_id, "conditions are not valid JSON")
            return None
    if conditions is None:
        return []
    if not isinstance(conditions, list) or not all(isinstance(c, dict) for c in conditions):
        _report(playbook_id, "conditions must be a list of objects")
        return None
    return conditions


def _report(playbook_id: Optional[str], message: str) -> None:
    logger.warning(str(EvaluationError(playbook_id, message)))


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:  # NaN
        return None
    return number


def evaluate_condition(condition: dict, context: dict, playbook_id: Optional[str] = None) -> bool:
    """Evaluate one condition against a flat record context."""
    field = condition.get("field")
    operator = condition.get("operator")
    expected = condition.get("value")

    if not isinstance(field, str) or field not in context:
        _report(playbook_id, f"unknown field {field!r}")
        return False
    actual = context[field]

    if operator == "equals":
        return actual == expected or str(actual) == str(expected)
    elif operator == "not_equals":
        return not (actual == expected or str(actual) == str(expected))
    elif operator in ("greater_than", "less_than"):
        left, right = _to_number(actual), _to_number(expected)
        if left is None or right is None:
            return False
        return left > right if operator == "greater_than" else left < right
    elif operator == "contains":
        if expected is None:
            return False
        return str(expected).lower() in str(actual).lower()

    _report(playbook_id, f"unknown operator {operator!r}")
    return False


def evaluate_conditions(context: dict, conditions: Any, playbook_id: Optional[str] = None) -> bool:
    """True when every condition matches. An empty list matches everything."""
    parsed = parse_conditions(conditions, playbook_id)
    if parsed is None:
        return False
    try:
        return all(evaluate_condition(cond, context, playbook_id) for cond in parsed)
    except Exception as exc:
        _report(playbook_id, f"evaluation error: {exc!r}")
        return False
