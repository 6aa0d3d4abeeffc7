"""Tests for the core data models."""
from datetime import datetime, time, timezone

import pytest
from pydantic import ValidationError

from conftest import ai_call, make_flow, wait, whatsapp
from models.schemas import (
    Action, ActionLogStatus, ActionOutcome, ActionType, AICallConfig, ContactAttributes, ContactEvent,
    EmailConfig, ExecutionStatus, FlowExecution, WaitConfig, WhatsAppConfig,
)


class TestContactAttributes:

    def test_attribute_lookup(self, indiamart_contact):
        assert indiamart_contact.attribute("lead_source") == "IndiaMART"
        assert indiamart_contact.attribute("city") == "Pune"
        assert indiamart_contact.attribute("nope") is None

    def test_custom_fields_not_shadowed_by_containers(self):
        contact = ContactAttributes(contact_id="c", custom_fields={"tags": "vip"}, tags=["x"])
        assert contact.attribute("tags") == "vip"

    @pytest.mark.parametrize("kwargs,dnc", [
        ({}, False),
        ({"do_not_contact": True}, True),
        ({"tags": ["hot", " DNC "]}, True),
        ({"tags": ["do-not-contact"]}, True),
        ({"tags": ["vip"]}, False),
    ])
    def test_dnc(self, kwargs, dnc):
        assert ContactAttributes(contact_id="c", **kwargs).is_dnc is dnc

    def test_naive_trigger_time_is_utc(self):
        event = ContactEvent(contact=ContactAttributes(contact_id="c"), triggered_at=datetime(2026, 1, 1, 10))
        assert event.triggered_at == datetime(2026, 1, 1, 10, tzinfo=timezone.utc)


class TestAction:

    @pytest.mark.parametrize("action_type,config_cls", [
        ("ai_call", AICallConfig),
        ("wait", WaitConfig),
        ("whatsapp_message", WhatsAppConfig),
        ("email", EmailConfig),
    ])
    def test_config_coerced_by_type(self, action_type, config_cls):
        action = Action(action_order=1, action_type=action_type, action_config={})
        assert isinstance(action.action_config, config_cls)

    def test_missing_config_defaults(self):
        action = Action(action_order=1, action_type="wait")
        assert action.action_config == WaitConfig()

    def test_config_model_converted(self):
        action = Action(action_order=1, action_type=ActionType.WAIT,
                        action_config=AICallConfig(agent_id="a"))
        assert isinstance(action.action_config, WaitConfig)

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            Action(action_order=1, action_type="carrier_pigeon", action_config={})


class TestFlow:

    def test_ordered_actions(self):
        flow = make_flow(actions=[whatsapp(3), ai_call(1), wait(2)])
        assert [a.action_order for a in flow.ordered_actions] == [1, 2, 3]

    def test_universal(self, indiamart_flow):
        assert not indiamart_flow.is_universal
        assert make_flow().is_universal

    def test_custom_business_hours(self):
        flow = make_flow(use_custom_business_hours=True,
                         business_hours_start=time(10), business_hours_end=time(16))
        hours = flow.custom_business_hours()
        assert (hours.start, hours.end, hours.timezone) == (time(10), time(16), "UTC")

    def test_custom_hours_incomplete_or_off(self):
        assert make_flow(use_custom_business_hours=True, business_hours_start=time(10)) \
            .custom_business_hours() is None
        assert make_flow(business_hours_start=time(10), business_hours_end=time(16)) \
            .custom_business_hours() is None


class TestFlowExecution:

    def test_status_sets(self):
        execution = FlowExecution(flow_id="f", contact_id="c")
        assert execution.is_active and not execution.is_terminal
        execution.status = ExecutionStatus.SKIPPED
        assert execution.is_terminal and not execution.is_active

    def test_action_at_uses_order(self):
        execution = FlowExecution(flow_id="f", contact_id="c", action_snapshot=[whatsapp(7), ai_call(3)])
        assert execution.total_steps == 2
        assert execution.action_at(1).action_type == ActionType.AI_CALL
        assert execution.action_at(2).action_type == ActionType.WHATSAPP_MESSAGE
        assert execution.action_at(0) is None
        assert execution.action_at(3) is None

    def test_contact_from_snapshot(self, indiamart_contact):
        execution = FlowExecution(flow_id="f", contact_id="c_001",
                                  metadata={"contact": indiamart_contact.model_dump(mode="json")})
        assert execution.contact() == indiamart_contact

    def test_contact_fallback(self):
        execution = FlowExecution(flow_id="f", contact_id="c", contact_name="N", contact_phone="+1")
        assert execution.contact() == ContactAttributes(contact_id="c", name="N", phone_number="+1")


class TestActionOutcome:

    def test_constructors(self):
        assert ActionOutcome.success({"a": 1}).result_data == {"a": 1}
        assert ActionOutcome.failed("boom").error_message == "boom"
        assert ActionOutcome.skipped("not_implemented").status == ActionLogStatus.SKIPPED

    def test_suspends_only_on_successful_wait(self):
        assert ActionOutcome.success(suspend_minutes=5).suspends
        assert not ActionOutcome.success().suspends
        failed = ActionOutcome(status=ActionLogStatus.FAILED, suspend_minutes=5)
        assert not failed.suspends
