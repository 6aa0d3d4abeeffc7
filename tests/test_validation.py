"""Tests for flow definition validation."""
from datetime import time

import pytest

from conftest import ai_call, email, make_flow, wait, whatsapp
from models.schemas import Action, ActionType, TriggerCondition
from rules.validation import (
    FlowValidationError, validate_action_config, validate_action_order, validate_flow,
)


class TestActionConfig:

    def test_valid_steps(self):
        for action in (ai_call(1), wait(2, 30), whatsapp(3), email(4)):
            assert validate_action_config(action) == []

    def test_ai_call_requires_agent_and_number(self):
        action = Action(action_order=1, action_type=ActionType.AI_CALL, action_config={"agent_id": "a"})
        errors = validate_action_config(action)
        assert errors and "AI call action requires agent_id and phone_number_id" in errors[0]

    def test_wait_requires_positive_duration(self):
        errors = validate_action_config(wait(1, 0))
        assert "Wait action requires positive duration_minutes" in errors[0]

    def test_wait_capped_by_max(self):
        assert validate_action_config(wait(1, 1441)) != []
        assert "exceeds maximum" in validate_action_config(wait(1, 61), max_wait_minutes=60)[0]
        assert validate_action_config(wait(1, 1440)) == []

    def test_messaging_requires_template(self):
        assert "WhatsApp action requires template_id" in validate_action_config(whatsapp(1, template_id=""))[0]
        assert "Email action requires email_template_id" in validate_action_config(email(1, template_id=""))[0]

    def test_missing_config_coerced_to_empty(self):
        action = Action(action_order=1, action_type=ActionType.WAIT, action_config=None)
        assert action.action_config.duration_minutes == 0
        assert validate_action_config(action) != []


class TestActionOrder:

    def test_contiguous_from_one(self):
        assert validate_action_order([ai_call(1), wait(2), whatsapp(3)]) == []

    def test_gap_rejected(self):
        assert validate_action_order([ai_call(1), whatsapp(3)]) == ["Action orders must be contiguous starting at 1"]

    def test_duplicate_rejected(self):
        assert validate_action_order([ai_call(1), whatsapp(1)]) == ["Action orders must be unique within a flow"]

    def test_zero_rejected(self):
        assert validate_action_order([ai_call(0)]) == ["Action orders must be positive integers"]


class TestFlow:

    def test_valid_flow(self, indiamart_flow):
        assert validate_flow(indiamart_flow) == []

    def test_name_required(self):
        assert "Flow name is required" in validate_flow(make_flow(name="  "))

    def test_actions_required_unless_relaxed(self):
        flow = make_flow(actions=[])
        assert "Flow must have at least one action" in validate_flow(flow)
        assert validate_flow(flow, require_actions=False) == []

    def test_bad_condition_reported(self):
        flow = make_flow(conditions=[TriggerCondition(condition_type="lead_source", condition_operator="equals")])
        errors = validate_flow(flow)
        assert any("condition_value is required" in e for e in errors)

    def test_unknown_operator_reported(self):
        flow = make_flow(conditions=[TriggerCondition(condition_type="lead_source",
                                                      condition_operator="startswith",
                                                      condition_value="x")])
        assert any("unknown operator" in e for e in validate_flow(flow))

    def test_custom_hours_must_be_ordered(self):
        flow = make_flow(use_custom_business_hours=True,
                         business_hours_start=time(18, 0), business_hours_end=time(9, 0))
        assert "business_hours_start must be before business_hours_end" in validate_flow(flow)

    def test_custom_hours_timezone_checked(self):
        flow = make_flow(use_custom_business_hours=True,
                         business_hours_start=time(9, 0), business_hours_end=time(18, 0),
                         business_hours_timezone="Mars/Olympus")
        assert "Invalid timezone identifier" in validate_flow(flow)

    def test_custom_hours_need_both_bounds(self):
        flow = make_flow(use_custom_business_hours=True, business_hours_start=time(9, 0))
        assert len(validate_flow(flow)) == 1

    def test_validation_error_carries_errors(self):
        err = FlowValidationError(["a", "b"])
        assert err.errors == ["a", "b"]
        assert str(err) == "a; b"
