"""
Flow Selector — picks the single flow a new contact should enter.

Enabled, valid flows are ranked by priority (lower wins), ties broken by
creation time and then id, and the first whose trigger conditions all match
the contact is returned. DNC contacts never match anything.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from pydantic import BaseModel

from models.schemas import ContactAttributes, Flow
from rules.validation import DEFAULT_MAX_WAIT_MINUTES, validate_flow
from utils.conditions import evaluate_conditions, explain_conditions

logger = structlog.get_logger()


class MatchReport(BaseModel):
    """Result of a side-effect free dry run of one flow against one contact."""
    flow_id: str
    flow_name: str
    matches: bool
    reason: str
    conditions_checked: list[dict[str, Any]] = []
    action_plan: list[dict[str, Any]] = []


def rank_key(flow: Flow) -> tuple:
    return (flow.priority, flow.created_at, flow.id)


class FlowSelector:

    def __init__(self, max_wait_minutes: int = DEFAULT_MAX_WAIT_MINUTES):
        self.max_wait_minutes = max_wait_minutes

    def is_candidate(self, flow: Flow) -> bool:
        if not flow.is_enabled or not flow.actions:
            return False
        errors = validate_flow(flow, self.max_wait_minutes)
        if errors:
            logger.warning("flow_config_invalid", flow_id=flow.id, flow_name=flow.name, errors=errors)
            return False
        return True

    def select_flow(self, contact: ContactAttributes, flows: list[Flow]) -> Optional[Flow]:
        """Return the winning flow for a contact, or None."""
        if contact.is_dnc:
            logger.info("flow_selection_dnc_excluded", contact_id=contact.contact_id)
            return None

        for flow in sorted(flows, key=rank_key):
            if not self.is_candidate(flow):
                continue
            if evaluate_conditions(flow.trigger_conditions, contact):
                logger.info("flow_selected",
                            flow_id=flow.id,
                            flow_name=flow.name,
                            priority=flow.priority,
                            contact_id=contact.contact_id)
                return flow

        logger.debug("no_flow_matched", contact_id=contact.contact_id, flows_considered=len(flows))
        return None

    def dry_run(self, flow: Flow, contact: ContactAttributes) -> MatchReport:
        """Explain whether ``flow`` would match ``contact``, without side effects."""
        checks = explain_conditions(flow.trigger_conditions, contact)
        plan = [
            {
                "action_order": a.action_order,
                "action_type": a.action_type.value,
                "config": a.action_config.model_dump(),
                "condition": (
                    {"type": a.condition_type, "value": a.condition_value}
                    if a.condition_type else None
                ),
            }
            for a in flow.ordered_actions
        ]

        errors = validate_flow(flow, self.max_wait_minutes)
        if contact.is_dnc:
            matches, reason = False, "Contact is marked do-not-contact"
        elif errors:
            matches, reason = False, "Flow configuration is invalid: " + "; ".join(errors)
        elif not flow.trigger_conditions:
            matches, reason = True, "No trigger conditions - flow matches all contacts"
        elif all(c["result"] for c in checks):
            matches, reason = True, "All trigger conditions met"
        else:
            matches, reason = False, "Trigger conditions not met"

        return MatchReport(
            flow_id=flow.id,
            flow_name=flow.name,
            matches=matches,
            reason=reason,
            conditions_checked=checks,
            action_plan=plan,
        )
