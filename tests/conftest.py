"""Shared test fixtures for the auto-engagement engine."""
from datetime import datetime, time, timedelta, timezone
from typing import Any

import pytest

from channels.base import CallPlacer, ChannelError, MessageSender
from core.executor import ActionExecutor
from core.orchestrator import ExecutionOrchestrator
from database.store_memory import InMemoryEngagementStore
from models.schemas import (
    Action, ActionType, BusinessHours, ContactAttributes, Flow, TriggerCondition,
)


# Monday 2026-01-05 10:00 UTC, inside the default 09:00–18:00 UTC window.
MONDAY_10AM = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)
UTC_OFFICE_HOURS = BusinessHours(start=time(9, 0), end=time(18, 0), timezone="UTC")


# ──────────────────────────────────────────────────────────────
#  Fake collaborators
# ──────────────────────────────────────────────────────────────

class FakeCallPlacer(CallPlacer):
    """Records calls; answers with a configurable outcome or raises."""

    def __init__(self, outcome: str = "initiated", error: str = ""):
        self.outcome = outcome
        self.error = error
        self.calls: list[dict[str, Any]] = []

    @property
    def is_available(self) -> bool:
        return True

    async def place_call(self, agent_id, phone_number_id, contact):
        self.calls.append({
            "agent_id": agent_id,
            "phone_number_id": phone_number_id,
            "contact_id": contact.contact_id,
        })
        if self.error:
            raise ChannelError(self.error, "ai_call")
        return {
            "call_initiated": True,
            "call_id": f"call_{len(self.calls)}",
            "call_outcome": self.outcome,
            "agent_id": agent_id,
        }


class FakeSender(MessageSender):

    def __init__(self, available: bool = True, error: str = ""):
        self.available = available
        self.error = error
        self.sent: list[tuple[Any, str]] = []

    @property
    def is_available(self) -> bool:
        return self.available

    async def send(self, template_ref, contact):
        self.sent.append((template_ref, contact.contact_id))
        if self.error:
            raise ChannelError(self.error, "fake")
        return {"status": "sent", "message_id": f"msg_{len(self.sent)}"}


# ──────────────────────────────────────────────────────────────
#  Builders
# ──────────────────────────────────────────────────────────────

def ai_call(order: int = 1, **kwargs) -> Action:
    return Action(
        action_order=order,
        action_type=ActionType.AI_CALL,
        action_config={"agent_id": "agent_a", "phone_number_id": "pn_1"},
        **kwargs,
    )


def wait(order: int, minutes: int = 30, until_business_hours: bool = False, **kwargs) -> Action:
    return Action(
        action_order=order,
        action_type=ActionType.WAIT,
        action_config={"duration_minutes": minutes, "wait_until_business_hours": until_business_hours},
        **kwargs,
    )


def whatsapp(order: int, template_id: str = "tmpl_followup", **kwargs) -> Action:
    return Action(
        action_order=order,
        action_type=ActionType.WHATSAPP_MESSAGE,
        action_config={"template_id": template_id},
        **kwargs,
    )


def email(order: int, template_id: str = "welcome", **kwargs) -> Action:
    return Action(
        action_order=order,
        action_type=ActionType.EMAIL,
        action_config={"email_template_id": template_id},
        **kwargs,
    )


def lead_source_is(value: str) -> TriggerCondition:
    return TriggerCondition(condition_type="lead_source", condition_operator="equals", condition_value=value)


def make_flow(name: str = "Flow", priority: int = 0, conditions=None, actions=None, **kwargs) -> Flow:
    return Flow(
        name=name,
        priority=priority,
        is_enabled=kwargs.pop("is_enabled", True),
        trigger_conditions=conditions or [],
        actions=actions if actions is not None else [ai_call(1)],
        **kwargs,
    )


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def indiamart_contact() -> ContactAttributes:
    return ContactAttributes(
        contact_id="c_001",
        name="Sharma Ji",
        phone_number="+91 98765 43210",
        email="sharma@example.com",
        company="Sharma Traders",
        lead_source="IndiaMART",
        entry_type="webform",
        custom_fields={"city": "Pune", "budget": "50000"},
    )


@pytest.fixture
def indiamart_flow() -> Flow:
    return make_flow(
        name="IndiaMART Follow-up",
        priority=0,
        conditions=[lead_source_is("IndiaMART")],
        actions=[ai_call(1), wait(2, 30), whatsapp(3)],
    )


@pytest.fixture
def store():
    return InMemoryEngagementStore()


@pytest.fixture
def call_placer():
    return FakeCallPlacer()


@pytest.fixture
def executor(call_placer):
    # No messaging senders: whatsapp/email steps skip as not_implemented.
    return ActionExecutor(call_placer=call_placer)


@pytest.fixture
def orchestrator(store, executor):
    return ExecutionOrchestrator(store=store, executor=executor, default_hours=UTC_OFFICE_HOURS)


@pytest.fixture
def at():
    """Offsets from MONDAY_10AM."""
    def _at(minutes: int = 0, hours: int = 0, days: int = 0) -> datetime:
        return MONDAY_10AM + timedelta(minutes=minutes, hours=hours, days=days)
    return _at
