"""
Flow definition validation.

Returns a list of human-readable problems instead of raising, so the selector
can exclude a misconfigured flow (fail safe) while the API can reject the
same definition on save.
"""
from __future__ import annotations

from models.schemas import (
    Action, ActionType, AICallConfig, ConditionOperator, ConditionType,
    EmailConfig, Flow, TriggerCondition, WaitConfig, WhatsAppConfig,
)
from utils.business_hours import is_valid_timezone

DEFAULT_MAX_WAIT_MINUTES = 1440


class FlowValidationError(ValueError):
    """Raised by callers that refuse to persist an invalid flow."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


def validate_action_config(action: Action, max_wait_minutes: int = DEFAULT_MAX_WAIT_MINUTES) -> list[str]:
    """Check that a step has everything it needs to run."""
    cfg = action.action_config
    prefix = f"action[{action.action_order}]"

    if action.action_type == ActionType.AI_CALL:
        if not isinstance(cfg, AICallConfig) or not cfg.agent_id or not cfg.phone_number_id:
            return [f"{prefix}: AI call action requires agent_id and phone_number_id"]
    elif action.action_type == ActionType.WAIT:
        if not isinstance(cfg, WaitConfig) or cfg.duration_minutes < 1:
            return [f"{prefix}: Wait action requires positive duration_minutes"]
        if cfg.duration_minutes > max_wait_minutes:
            return [f"{prefix}: duration_minutes ({cfg.duration_minutes}) exceeds maximum "
                    f"of {max_wait_minutes} minutes"]
    elif action.action_type == ActionType.WHATSAPP_MESSAGE:
        if not isinstance(cfg, WhatsAppConfig) or not cfg.template_id:
            return [f"{prefix}: WhatsApp action requires template_id"]
    elif action.action_type == ActionType.EMAIL:
        if not isinstance(cfg, EmailConfig) or not cfg.email_template_id:
            return [f"{prefix}: Email action requires email_template_id"]
    return []


def validate_condition(condition: TriggerCondition, index: int) -> list[str]:
    errors = []
    if condition.condition_type not in {t.value for t in ConditionType}:
        errors.append(f"condition[{index}]: unknown condition_type '{condition.condition_type}'")
    if condition.condition_operator not in {o.value for o in ConditionOperator}:
        errors.append(f"condition[{index}]: unknown operator '{condition.condition_operator}'")
    elif condition.condition_operator != ConditionOperator.ANY.value and condition.condition_value is None:
        errors.append(f"condition[{index}]: condition_value is required for "
                      f"operator '{condition.condition_operator}'")
    return errors


def validate_action_order(actions: list[Action]) -> list[str]:
    """action_order must be unique and contiguous from 1."""
    orders = [a.action_order for a in actions]
    if any(o < 1 for o in orders):
        return ["Action orders must be positive integers"]
    if len(set(orders)) != len(orders):
        return ["Action orders must be unique within a flow"]
    if sorted(orders) != list(range(1, len(orders) + 1)):
        return ["Action orders must be contiguous starting at 1"]
    return []


def validate_business_hours(flow: Flow) -> list[str]:
    if not flow.use_custom_business_hours:
        return []
    if flow.business_hours_start is None or flow.business_hours_end is None:
        return ["Both business_hours_start and business_hours_end are required "
                "when use_custom_business_hours is true"]
    errors = []
    if flow.business_hours_start >= flow.business_hours_end:
        errors.append("business_hours_start must be before business_hours_end")
    if flow.business_hours_timezone and not is_valid_timezone(flow.business_hours_timezone):
        errors.append("Invalid timezone identifier")
    return errors


def validate_flow(
    flow: Flow,
    max_wait_minutes: int = DEFAULT_MAX_WAIT_MINUTES,
    require_actions: bool = True,
) -> list[str]:
    """Validate a flow definition. Returns list of error messages."""
    errors = []
    if not flow.name.strip():
        errors.append("Flow name is required")
    if require_actions and not flow.actions:
        errors.append("Flow must have at least one action")

    for i, cond in enumerate(flow.trigger_conditions):
        errors.extend(validate_condition(cond, i))

    errors.extend(validate_action_order(flow.actions))
    for action in flow.actions:
        errors.extend(validate_action_config(action, max_wait_minutes))

    errors.extend(validate_business_hours(flow))
    return errors
