"""
Execution State Machine — the legal status transitions for executions and
action logs.

    FlowExecution:  pending → running → {completed | failed | cancelled | skipped}
                    pending → {cancelled | skipped | failed}
    ActionLog:      pending → running → {success | failed | skipped}
                    pending → skipped

Terminal states are immutable. Every status change made by the orchestrator
goes through transition_execution / transition_action_log so an illegal move
raises instead of silently corrupting history.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Optional

from models.schemas import (
    ActionLog, ActionLogStatus, ExecutionStatus, FlowExecution, utcnow,
)

logger = structlog.get_logger()


EXECUTION_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({
        ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED,
        ExecutionStatus.SKIPPED, ExecutionStatus.FAILED,
    }),
    ExecutionStatus.RUNNING: frozenset({
        ExecutionStatus.COMPLETED, ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED, ExecutionStatus.SKIPPED,
    }),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
    ExecutionStatus.SKIPPED: frozenset(),
}

ACTION_LOG_TRANSITIONS: dict[ActionLogStatus, frozenset[ActionLogStatus]] = {
    ActionLogStatus.PENDING: frozenset({ActionLogStatus.RUNNING, ActionLogStatus.SKIPPED}),
    ActionLogStatus.RUNNING: frozenset({
        ActionLogStatus.SUCCESS, ActionLogStatus.FAILED, ActionLogStatus.SKIPPED,
    }),
    ActionLogStatus.SUCCESS: frozenset(),
    ActionLogStatus.FAILED: frozenset(),
    ActionLogStatus.SKIPPED: frozenset(),
}


class InvalidTransitionError(Exception):
    """An illegal status change was attempted."""

    def __init__(self, entity: str, entity_id: str, from_status: str, to_status: str):
        self.entity = entity
        self.entity_id = entity_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"{entity} {entity_id}: illegal transition {from_status} → {to_status}")


# ──────────────────────────────────────────────────────────────
#  Transition Result
# ──────────────────────────────────────────────────────────────

class TransitionResult:
    """Outcome of a status change."""

    def __init__(self, transitioned: bool, from_status: str = "", to_status: str = ""):
        self.transitioned = transitioned
        self.from_status = from_status
        self.to_status = to_status

    def __bool__(self):
        return self.transitioned

    def __repr__(self):
        if self.transitioned:
            return f"<Transition {self.from_status} → {self.to_status}>"
        return "<NoTransition>"


def can_transition_execution(current: ExecutionStatus, target: ExecutionStatus) -> bool:
    return target in EXECUTION_TRANSITIONS[current]


def can_transition_action_log(current: ActionLogStatus, target: ActionLogStatus) -> bool:
    return target in ACTION_LOG_TRANSITIONS[current]


def transition_execution(
    execution: FlowExecution,
    target: ExecutionStatus,
    error_message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """
    Move an execution to ``target``. Same-state moves are a no-op.
    Terminal targets stamp completed_at and release resume_at.
    """
    current = execution.status
    if current == target:
        return TransitionResult(transitioned=False, from_status=current.value, to_status=target.value)
    if not can_transition_execution(current, target):
        raise InvalidTransitionError("execution", execution.id, current.value, target.value)

    execution.status = target
    if error_message is not None:
        execution.error_message = error_message
    if execution.is_terminal:
        execution.completed_at = now or utcnow()
        execution.resume_at = None

    logger.info("execution_status_changed",
                execution_id=execution.id,
                transition=f"{current.value} → {target.value}")
    return TransitionResult(transitioned=True, from_status=current.value, to_status=target.value)


def transition_action_log(
    log: ActionLog,
    target: ActionLogStatus,
    now: Optional[datetime] = None,
    skip_reason: Optional[str] = None,
    error_message: Optional[str] = None,
) -> TransitionResult:
    current = log.status
    if current == target:
        return TransitionResult(transitioned=False, from_status=current.value, to_status=target.value)
    if not can_transition_action_log(current, target):
        raise InvalidTransitionError("action_log", log.id, current.value, target.value)

    log.status = target
    if skip_reason is not None:
        log.skip_reason = skip_reason
    if error_message is not None:
        log.error_message = error_message
    if target in (ActionLogStatus.SUCCESS, ActionLogStatus.FAILED, ActionLogStatus.SKIPPED):
        log.completed_at = now or utcnow()
        log.resume_at = None
    return TransitionResult(transitioned=True, from_status=current.value, to_status=target.value)
