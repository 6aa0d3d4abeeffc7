"""Tests for execution and action log status transitions."""
import pytest

from conftest import MONDAY_10AM
from context.state_machine import (
    InvalidTransitionError, can_transition_action_log, can_transition_execution,
    transition_action_log, transition_execution,
)
from models.schemas import ActionLog, ActionLogStatus, ActionType, ExecutionStatus, FlowExecution


@pytest.fixture
def execution():
    return FlowExecution(flow_id="f1", contact_id="c1")


@pytest.fixture
def log():
    return ActionLog(execution_id="e1", action_order=1, action_type=ActionType.WAIT)


class TestExecutionTransitions:

    def test_happy_path(self, execution):
        assert transition_execution(execution, ExecutionStatus.RUNNING)
        result = transition_execution(execution, ExecutionStatus.COMPLETED, now=MONDAY_10AM)
        assert result.from_status == "running"
        assert execution.completed_at == MONDAY_10AM

    def test_pending_can_be_cancelled_or_skipped(self):
        for target in (ExecutionStatus.CANCELLED, ExecutionStatus.SKIPPED, ExecutionStatus.FAILED):
            assert can_transition_execution(ExecutionStatus.PENDING, target)

    def test_pending_cannot_complete(self, execution):
        with pytest.raises(InvalidTransitionError) as exc:
            transition_execution(execution, ExecutionStatus.COMPLETED)
        assert exc.value.from_status == "pending"
        assert exc.value.to_status == "completed"

    @pytest.mark.parametrize("terminal", [
        ExecutionStatus.COMPLETED, ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED, ExecutionStatus.SKIPPED,
    ])
    def test_terminal_states_are_final(self, terminal):
        for target in ExecutionStatus:
            if target != terminal:
                assert not can_transition_execution(terminal, target)

    def test_same_state_is_noop(self, execution):
        result = transition_execution(execution, ExecutionStatus.PENDING)
        assert not result
        assert repr(result) == "<NoTransition>"

    def test_failure_records_message(self, execution):
        transition_execution(execution, ExecutionStatus.RUNNING)
        transition_execution(execution, ExecutionStatus.FAILED, error_message="boom")
        assert execution.error_message == "boom"
        assert execution.completed_at is not None

    def test_terminal_clears_resume_at(self, execution):
        execution.resume_at = MONDAY_10AM
        transition_execution(execution, ExecutionStatus.CANCELLED)
        assert execution.resume_at is None


class TestActionLogTransitions:

    def test_running_to_success(self, log):
        transition_action_log(log, ActionLogStatus.RUNNING)
        transition_action_log(log, ActionLogStatus.SUCCESS, now=MONDAY_10AM)
        assert log.completed_at == MONDAY_10AM

    def test_pending_can_skip_directly(self):
        assert can_transition_action_log(ActionLogStatus.PENDING, ActionLogStatus.SKIPPED)
        assert not can_transition_action_log(ActionLogStatus.PENDING, ActionLogStatus.SUCCESS)

    def test_skip_reason_recorded(self, log):
        transition_action_log(log, ActionLogStatus.SKIPPED, skip_reason="cancelled")
        assert log.skip_reason == "cancelled"

    def test_success_is_final(self, log):
        log.status = ActionLogStatus.SUCCESS
        with pytest.raises(InvalidTransitionError):
            transition_action_log(log, ActionLogStatus.FAILED)
