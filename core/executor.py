"""
Action Executor — runs one flow step and reports a structured outcome.

Dispatch is a table keyed by ActionType and checked for exhaustiveness at
construction, so a new action kind without a handler fails loudly at startup.
The per-step condition is evaluated before any handler; an unmet condition
never touches a collaborator.

The executor never raises for collaborator trouble: errors become a failed
outcome, and an absent or unconfigured messaging channel becomes skipped
with reason not_implemented.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional

from channels.base import CallPlacer, ChannelError, MessageSender
from models.schemas import (
    Action, ActionLog, ActionLogStatus, ActionOutcome, ActionType,
    ContactAttributes, StepConditionType, TriggerCondition, FlowExecution,
    SKIP_REASON_NOT_IMPLEMENTED, utcnow,
)
from rules.validation import DEFAULT_MAX_WAIT_MINUTES, validate_action_config
from utils.conditions import evaluate_condition

logger = structlog.get_logger()


@dataclass
class ExecutionContext:
    """Everything a step needs to know about the run it belongs to."""
    execution: FlowExecution
    contact: ContactAttributes
    previous_logs: list[ActionLog] = field(default_factory=list)
    now: datetime = field(default_factory=utcnow)

    @property
    def is_test_run(self) -> bool:
        return self.execution.is_test_run

    @property
    def previous_log(self) -> Optional[ActionLog]:
        """Most recent step that actually ran."""
        for log in reversed(self.previous_logs):
            if log.status != ActionLogStatus.SKIPPED:
                return log
        return None

    @property
    def last_call_outcome(self) -> Optional[str]:
        for log in reversed(self.previous_logs):
            outcome = log.result_data.get("call_outcome")
            if outcome:
                return outcome
        return None


Handler = Callable[[Action, ExecutionContext], Awaitable[ActionOutcome]]

_CONTACT_STEP_CONDITIONS = {
    StepConditionType.LEAD_SOURCE.value,
    StepConditionType.ENTRY_TYPE.value,
    StepConditionType.CUSTOM_FIELD.value,
}


class ActionExecutor:

    def __init__(
        self,
        call_placer: Optional[CallPlacer] = None,
        whatsapp_sender: Optional[MessageSender] = None,
        email_sender: Optional[MessageSender] = None,
        max_wait_minutes: int = DEFAULT_MAX_WAIT_MINUTES,
    ):
        self.call_placer = call_placer
        self.whatsapp_sender = whatsapp_sender
        self.email_sender = email_sender
        self.max_wait_minutes = max_wait_minutes

        self._handlers: dict[ActionType, Handler] = {
            ActionType.AI_CALL: self._execute_ai_call,
            ActionType.WAIT: self._execute_wait,
            ActionType.WHATSAPP_MESSAGE: self._execute_whatsapp,
            ActionType.EMAIL: self._execute_email,
        }
        missing = set(ActionType) - set(self._handlers)
        if missing:
            raise ValueError(f"no handler for action types: {sorted(m.value for m in missing)}")

    # ── Entry point ───────────────────────────────────────────

    async def execute(self, action: Action, ctx: ExecutionContext) -> ActionOutcome:
        skip_reason = self.check_step_condition(action, ctx)
        if skip_reason:
            logger.info("action_skipped",
                        execution_id=ctx.execution.id,
                        action_order=action.action_order,
                        reason=skip_reason)
            return ActionOutcome.skipped(skip_reason)

        errors = validate_action_config(action, self.max_wait_minutes)
        if errors:
            logger.warning("action_config_invalid",
                           execution_id=ctx.execution.id,
                           action_order=action.action_order,
                           errors=errors)
            return ActionOutcome.skipped("invalid_config: " + "; ".join(errors))

        outcome = await self._handlers[action.action_type](action, ctx)
        logger.info("action_executed",
                    execution_id=ctx.execution.id,
                    action_order=action.action_order,
                    action_type=action.action_type.value,
                    status=outcome.status.value,
                    test_run=ctx.is_test_run)
        return outcome

    # ── Step conditions ───────────────────────────────────────

    def check_step_condition(self, action: Action, ctx: ExecutionContext) -> Optional[str]:
        """Return a skip reason when the step must not run, else None."""
        ctype = action.condition_type
        expected = action.condition_value

        if not ctype or ctype == StepConditionType.ALWAYS.value:
            return None

        if ctype in _CONTACT_STEP_CONDITIONS:
            cond = TriggerCondition(condition_type=ctype, condition_value=expected)
            if evaluate_condition(cond, ctx.contact):
                return None
            return f"Contact {ctype} doesn't match condition ({expected})"

        if ctype == StepConditionType.PREVIOUS_ACTION_STATUS.value:
            previous = ctx.previous_log
            if previous is None:
                return None
            if previous.status.value == expected:
                return None
            return f"Previous action status ({previous.status.value}) doesn't match condition ({expected})"

        if ctype == StepConditionType.CALL_OUTCOME.value:
            actual = ctx.last_call_outcome
            if actual is None:
                return "No previous call outcome available for call_outcome condition"
            if expected == "answered" and actual == "answered":
                return "Call was answered - stopping flow"
            if expected == "missed" and actual != "answered":
                return None
            if expected == "failed" and actual == "failed":
                return None
            return f"Call outcome ({actual}) doesn't match condition ({expected})"

        logger.warning("step_condition_config_warning",
                       execution_id=ctx.execution.id,
                       action_order=action.action_order,
                       condition_type=ctype)
        return f"unknown step condition {ctype}"

    # ── Handlers ──────────────────────────────────────────────

    @staticmethod
    def _simulated(action: Action) -> ActionOutcome:
        return ActionOutcome.success({"simulated": True, "action_type": action.action_type.value})

    async def _execute_ai_call(self, action: Action, ctx: ExecutionContext) -> ActionOutcome:
        if ctx.is_test_run:
            return self._simulated(action)
        if self.call_placer is None:
            return ActionOutcome.failed("Call placement is not configured")

        cfg = action.action_config
        try:
            result = await self.call_placer.place_call(cfg.agent_id, cfg.phone_number_id, ctx.contact)
        except ChannelError as e:
            logger.error("ai_call_failed", execution_id=ctx.execution.id, error=str(e))
            return ActionOutcome.failed(str(e))
        return ActionOutcome.success(result)

    async def _execute_wait(self, action: Action, ctx: ExecutionContext) -> ActionOutcome:
        cfg = action.action_config
        return ActionOutcome.success(
            {"duration_minutes": cfg.duration_minutes,
             "wait_until_business_hours": cfg.wait_until_business_hours},
            suspend_minutes=cfg.duration_minutes,
            wait_until_business_hours=cfg.wait_until_business_hours,
        )

    async def _execute_whatsapp(self, action: Action, ctx: ExecutionContext) -> ActionOutcome:
        return await self._send_message(action, ctx, self.whatsapp_sender)

    async def _execute_email(self, action: Action, ctx: ExecutionContext) -> ActionOutcome:
        return await self._send_message(action, ctx, self.email_sender)

    async def _send_message(
        self,
        action: Action,
        ctx: ExecutionContext,
        sender: Optional[MessageSender],
    ) -> ActionOutcome:
        if ctx.is_test_run:
            return self._simulated(action)
        if sender is None or not sender.is_available:
            return ActionOutcome.skipped(SKIP_REASON_NOT_IMPLEMENTED)
        try:
            result = await sender.send(action.action_config, ctx.contact)
        except ChannelError as e:
            logger.error("message_send_failed",
                         execution_id=ctx.execution.id,
                         action_type=action.action_type.value,
                         error=str(e))
            return ActionOutcome.failed(str(e))
        return ActionOutcome.success(result)
