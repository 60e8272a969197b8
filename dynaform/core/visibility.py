"""
Deterministic visibility evaluator for form fields.

A field with no conditions is always visible. Otherwise every condition
gating it (those of enclosing groups plus its own) must pass.

Policy: a condition whose dependency has not been answered yet (value
absent or None) fails, so the dependent field stays hidden until the
question it hangs off is answered. Conditions with an operator this
module does not know pass.
"""

from typing import Any

from dynaform.core.schema import ConditionOperator, VisibilityCondition, get_value


def is_field_visible(field, values: dict[str, Any]) -> bool:
    """Determine if a field should be visible given the current values.

    Pure: the same field and values always give the same answer.

    Args:
        field: A leaf field (as produced by flatten) or any field model.
        values: Current form values keyed by flattened field ID.

    Returns:
        True if the field should be visible, False otherwise.
    """
    return all(evaluate_condition(condition, values) for condition in field.conditions)


def evaluate_visibility(fields: list, values: dict[str, Any]) -> dict[str, bool]:
    """Map every flattened field ID to its current visibility."""
    return {field.id: is_field_visible(field, values) for field in fields}


def evaluate_condition(condition: VisibilityCondition, values: dict[str, Any]) -> bool:
    """Evaluate a single visibility condition against the current values."""
    dependent = get_value(values, condition.depends_on)
    if dependent is None:
        return False

    expected = condition.value

    match condition.condition:
        case ConditionOperator.EQUALS:
            return _strict_equals(dependent, expected)

        case ConditionOperator.NOT_EQUALS:
            return not _strict_equals(dependent, expected)

        case ConditionOperator.CONTAINS:
            if isinstance(dependent, (list, tuple, set)):
                return any(_strict_equals(item, expected) for item in dependent)
            return str(expected) in str(dependent)

        case ConditionOperator.GREATER_THAN:
            return _compare_numbers(dependent, expected, lambda a, b: a > b)

        case ConditionOperator.LESS_THAN:
            return _compare_numbers(dependent, expected, lambda a, b: a < b)

    # Unrecognized condition kind
    return True


def _strict_equals(left: Any, right: Any) -> bool:
    """Equality without cross-type coercion ("1" != 1, True != 1)."""
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    if isinstance(left, str) != isinstance(right, str):
        return False
    return left == right


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _compare_numbers(dependent: Any, expected: Any, comparator) -> bool:
    left = _to_number(dependent)
    right = _to_number(expected)
    if left is None or right is None:
        return False
    return comparator(left, right)
