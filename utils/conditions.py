"""
Shared condition evaluator — used by the Flow Selector and the Action Executor.

Evaluates TriggerCondition objects against a contact's attributes.
Pure and total: a misconfigured condition never raises, it simply does
not match and is reported as a configuration warning.
"""
from __future__ import annotations

import structlog
from typing import Any, Callable, Union

from models.schemas import ConditionType, ContactAttributes, TriggerCondition

logger = structlog.get_logger()


def _equals(actual: str, expected: str) -> bool:
    return actual == expected


def _contains(actual: str, expected: str) -> bool:
    return expected.lower() in actual.lower()


OPERATORS: dict[str, Callable[[str, str], bool]] = {
    "equals": _equals,
    "not_equals": lambda a, b: not _equals(a, b),
    "contains": _contains,
    "any": lambda a, b: True,
}

_KNOWN_TYPES = {t.value for t in ConditionType}


def resolve_attribute(
    condition: TriggerCondition,
    contact: Union[ContactAttributes, dict[str, Any]],
) -> str:
    """Return the contact value a condition compares against; missing → ""."""
    data = contact.model_dump() if isinstance(contact, ContactAttributes) else contact
    if condition.condition_type == ConditionType.CUSTOM_FIELD.value and condition.field_name:
        value = (data.get("custom_fields") or {}).get(condition.field_name)
        if value is None:
            value = data.get(condition.field_name)
    else:
        value = data.get(condition.condition_type)
    if value is None:
        return ""
    return str(value)


def evaluate_condition(
    condition: TriggerCondition,
    contact: Union[ContactAttributes, dict[str, Any]],
) -> bool:
    """Evaluate a single condition against a contact."""
    if condition.condition_type not in _KNOWN_TYPES:
        logger.warning("condition_config_warning",
                       condition_id=condition.id,
                       condition_type=condition.condition_type,
                       problem="unknown condition_type")
        return False

    fn = OPERATORS.get(condition.condition_operator)
    if fn is None:
        logger.warning("condition_config_warning",
                       condition_id=condition.id,
                       operator=condition.condition_operator,
                       problem="unknown operator")
        return False

    if condition.condition_operator == "any":
        return True

    if condition.condition_value is None:
        logger.warning("condition_config_warning",
                       condition_id=condition.id,
                       problem="condition_value required")
        return False

    try:
        return fn(resolve_attribute(condition, contact), condition.condition_value)
    except (TypeError, ValueError, AttributeError):
        return False


def evaluate_conditions(
    conditions: list[TriggerCondition],
    contact: Union[ContactAttributes, dict[str, Any]],
) -> bool:
    """Evaluate all conditions (AND logic). Returns True if all pass."""
    if not conditions:
        return True
    return all(evaluate_condition(c, contact) for c in conditions)


def explain_conditions(
    conditions: list[TriggerCondition],
    contact: Union[ContactAttributes, dict[str, Any]],
) -> list[dict[str, Any]]:
    """Per-condition check records, in definition order."""
    return [
        {
            "type": c.condition_type,
            "operator": c.condition_operator,
            "value": c.condition_value,
            "field_name": c.field_name,
            "contact_value": resolve_attribute(c, contact) or "N/A",
            "result": evaluate_condition(c, contact),
        }
        for c in conditions
    ]
