"""
Core data models for the auto-engagement flow engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, time, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ConditionType(str, Enum):
    LEAD_SOURCE = "lead_source"
    ENTRY_TYPE = "entry_type"
    CUSTOM_FIELD = "custom_field"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    ANY = "any"


class ActionType(str, Enum):
    AI_CALL = "ai_call"
    WHATSAPP_MESSAGE = "whatsapp_message"
    EMAIL = "email"
    WAIT = "wait"


class StepConditionType(str, Enum):
    ALWAYS = "always"
    CALL_OUTCOME = "call_outcome"
    PREVIOUS_ACTION_STATUS = "previous_action_status"
    LEAD_SOURCE = "lead_source"
    ENTRY_TYPE = "entry_type"
    CUSTOM_FIELD = "custom_field"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class ActionLogStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


ACTIVE_EXECUTION_STATUSES = frozenset({ExecutionStatus.PENDING, ExecutionStatus.RUNNING})
TERMINAL_EXECUTION_STATUSES = frozenset({
    ExecutionStatus.COMPLETED, ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED, ExecutionStatus.SKIPPED,
})

DNC_TAGS = frozenset({"dnc", "do-not-contact", "do_not_contact"})

SKIP_REASON_NOT_IMPLEMENTED = "not_implemented"
SKIP_REASON_CANCELLED = "cancelled"


# ──────────────────────────────────────────────────────────────
#  Contact, as delivered by the contact event source
# ──────────────────────────────────────────────────────────────

class ContactAttributes(BaseModel):
    """A lead/contact as seen by the engine at trigger time."""
    contact_id: str
    name: str = ""
    phone_number: str = ""
    email: str = ""
    company: str = ""
    lead_source: str = ""                     # e.g. "IndiaMART", "website"
    entry_type: str = ""                      # e.g. "webform", "phone", "manual"
    custom_fields: dict[str, Any] = {}
    tags: list[str] = []
    do_not_contact: bool = False

    @property
    def is_dnc(self) -> bool:
        if self.do_not_contact:
            return True
        return any(t.strip().lower() in DNC_TAGS for t in self.tags)

    def attribute(self, name: str) -> Any:
        """Top-level attribute lookup, falling back to custom fields."""
        if name in type(self).model_fields and name not in ("custom_fields", "tags"):
            return getattr(self, name)
        return self.custom_fields.get(name)


class ContactEvent(BaseModel):
    """A new contact/lead arrived — the input to flow selection."""
    contact: ContactAttributes
    triggered_at: datetime = Field(default_factory=utcnow)
    trigger_source: str = "contact_creation"
    account_id: str = "default"

    @field_validator("triggered_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Trigger conditions
# ──────────────────────────────────────────────────────────────

class TriggerCondition(BaseModel):
    id: str = Field(default_factory=new_id)
    condition_type: str                       # lead_source | entry_type | custom_field
    condition_operator: str = ConditionOperator.EQUALS.value
    condition_value: Optional[str] = None     # null only for "any"
    field_name: Optional[str] = None          # custom_field key inside contact.custom_fields


# ──────────────────────────────────────────────────────────────
#  Action configs, one variant per ActionType
# ──────────────────────────────────────────────────────────────

class AICallConfig(BaseModel):
    agent_id: str = ""
    phone_number_id: str = ""


class WaitConfig(BaseModel):
    duration_minutes: int = 0
    wait_until_business_hours: bool = False


class WhatsAppConfig(BaseModel):
    template_id: str = ""
    whatsapp_phone_number_id: str = ""
    variable_mappings: dict[str, str] = {}    # template var -> contact attribute


class EmailConfig(BaseModel):
    email_template_id: str = ""
    subject_override: str = ""
    from_name: str = ""


ActionConfig = Union[AICallConfig, WaitConfig, WhatsAppConfig, EmailConfig]

CONFIG_TYPES: dict[ActionType, type[BaseModel]] = {
    ActionType.AI_CALL: AICallConfig,
    ActionType.WAIT: WaitConfig,
    ActionType.WHATSAPP_MESSAGE: WhatsAppConfig,
    ActionType.EMAIL: EmailConfig,
}


class Action(BaseModel):
    """One step in a flow's ordered sequence."""
    id: str = Field(default_factory=new_id)
    action_order: int
    action_type: ActionType
    action_config: ActionConfig
    condition_type: Optional[str] = None      # see StepConditionType
    condition_value: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _coerce_config(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        try:
            action_type = ActionType(data.get("action_type"))
        except ValueError:
            return data  # field validation reports the bad action_type
        config_cls = CONFIG_TYPES[action_type]
        raw = data.get("action_config")
        if raw is None:
            data["action_config"] = config_cls()
        elif isinstance(raw, dict):
            data["action_config"] = config_cls(**raw)
        elif not isinstance(raw, config_cls):
            data["action_config"] = config_cls(**raw.model_dump())
        return data


# ──────────────────────────────────────────────────────────────
#  Business hours
# ──────────────────────────────────────────────────────────────

class BusinessHours(BaseModel):
    """A daily [start, end) window in a named timezone."""
    start: time
    end: time
    timezone: str = "UTC"


# ──────────────────────────────────────────────────────────────
#  Flow
# ──────────────────────────────────────────────────────────────

class Flow(BaseModel):
    id: str = Field(default_factory=new_id)
    account_id: str = "default"
    name: str
    description: str = ""
    priority: int = 0                         # lower = higher precedence
    is_enabled: bool = False
    trigger_conditions: list[TriggerCondition] = []
    actions: list[Action] = []
    use_custom_business_hours: bool = False
    business_hours_start: Optional[time] = None
    business_hours_end: Optional[time] = None
    business_hours_timezone: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_universal(self) -> bool:
        return not self.trigger_conditions

    @property
    def ordered_actions(self) -> list[Action]:
        return sorted(self.actions, key=lambda a: a.action_order)

    def custom_business_hours(self) -> Optional[BusinessHours]:
        if not self.use_custom_business_hours:
            return None
        if self.business_hours_start is None or self.business_hours_end is None:
            return None
        return BusinessHours(
            start=self.business_hours_start,
            end=self.business_hours_end,
            timezone=self.business_hours_timezone or "UTC",
        )


# ──────────────────────────────────────────────────────────────
#  Execution records
# ──────────────────────────────────────────────────────────────

class FlowExecution(BaseModel):
    """
    One run of a flow against one contact.

    Flow and contact names are denormalized so history stays readable after
    the flow is edited or deleted. The action list and business hours are
    snapshotted at creation; the live flow is never consulted again.
    """
    id: str = Field(default_factory=new_id)
    account_id: str = "default"
    flow_id: str
    flow_name: str = ""
    contact_id: str
    contact_name: str = ""
    contact_phone: str = ""
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_action_step: int = 1
    triggered_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    is_test_run: bool = False
    action_snapshot: list[Action] = []
    business_hours: Optional[BusinessHours] = None
    resume_at: Optional[datetime] = None
    cancel_requested: bool = False
    metadata: dict[str, Any] = {}

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_EXECUTION_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES

    @property
    def total_steps(self) -> int:
        return len(self.action_snapshot)

    def action_at(self, step: int) -> Optional[Action]:
        ordered = sorted(self.action_snapshot, key=lambda a: a.action_order)
        if 1 <= step <= len(ordered):
            return ordered[step - 1]
        return None

    def contact(self) -> ContactAttributes:
        raw = self.metadata.get("contact")
        if raw:
            return ContactAttributes(**raw)
        return ContactAttributes(
            contact_id=self.contact_id,
            name=self.contact_name,
            phone_number=self.contact_phone,
        )


class ActionLog(BaseModel):
    id: str = Field(default_factory=new_id)
    execution_id: str
    action_id: str = ""
    action_order: int
    action_type: ActionType
    status: ActionLogStatus = ActionLogStatus.PENDING
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    skip_reason: Optional[str] = None
    error_message: Optional[str] = None
    result_data: dict[str, Any] = {}
    resume_at: Optional[datetime] = None      # due time of a suspended wait


class ActionOutcome(BaseModel):
    """What the Action Executor hands back to the orchestrator."""
    status: ActionLogStatus
    result_data: dict[str, Any] = {}
    error_message: Optional[str] = None
    skip_reason: Optional[str] = None
    suspend_minutes: int = 0                  # > 0 only for wait steps
    wait_until_business_hours: bool = False

    @classmethod
    def success(cls, result_data: dict[str, Any] = None, **kwargs) -> ActionOutcome:
        return cls(status=ActionLogStatus.SUCCESS, result_data=result_data or {}, **kwargs)

    @classmethod
    def failed(cls, error_message: str, result_data: dict[str, Any] = None) -> ActionOutcome:
        return cls(status=ActionLogStatus.FAILED, error_message=error_message,
                   result_data=result_data or {})

    @classmethod
    def skipped(cls, reason: str) -> ActionOutcome:
        return cls(status=ActionLogStatus.SKIPPED, skip_reason=reason)

    @property
    def suspends(self) -> bool:
        return self.status == ActionLogStatus.SUCCESS and self.suspend_minutes > 0
