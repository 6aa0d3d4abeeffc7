"""
Execution Orchestrator — owns the lifecycle of every flow execution.

Architecture:
  Contact event → FlowSelector picks one flow
            → execution created pending (one active per contact)
            → dispatch job → advance()

  advance(): cancel checkpoint → business hours gate → steps in order
            → each step gets an ActionLog, run by the ActionExecutor
            → wait steps persist resume_at and publish a delayed job
            → past the last step: completed

Nothing here ever sleeps. A suspended execution is a persisted due time plus
a delayed queue job; recover() rebuilds those jobs after a restart.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta
from typing import Optional

from context.state_machine import transition_action_log, transition_execution
from core.executor import ActionExecutor, ExecutionContext
from database.store_base import BaseEngagementStore
from job_queue.message_queue import MessageQueue, QueueJob
from models.schemas import (
    ActionLog, ActionLogStatus, ActionType, BusinessHours, ContactAttributes, ContactEvent,
    ExecutionStatus, Flow, FlowExecution, SKIP_REASON_CANCELLED, utcnow,
)
from rules.selector import FlowSelector, MatchReport
from rules.validation import FlowValidationError, validate_flow
from utils.business_hours import check_gate, parse_time, resolve_hours

logger = structlog.get_logger()

DEFAULT_HOURS = BusinessHours(start=parse_time("09:00"), end=parse_time("18:00"), timezone="UTC")


class ExecutionOrchestrator:
    """
    Drives executions through pending → running → terminal.

    All mutation of one execution happens under that execution's lock, so
    duplicate queue deliveries for the same execution are serialised. Distinct
    executions advance independently.
    """

    def __init__(
        self,
        store: BaseEngagementStore,
        executor: ActionExecutor,
        queue: Optional[MessageQueue] = None,
        selector: Optional[FlowSelector] = None,
        default_hours: Optional[BusinessHours] = None,
        default_trigger_source: str = "contact_creation",
    ):
        self.store = store
        self.executor = executor
        self.queue = queue
        self.selector = selector or FlowSelector(max_wait_minutes=executor.max_wait_minutes)
        self.default_hours = default_hours or DEFAULT_HOURS
        self.default_trigger_source = default_trigger_source
        self._locks: dict[str, asyncio.Lock] = {}
        self._cancel_intents: set[str] = set()

    # ── Triggering ────────────────────────────────────────────

    async def handle_contact_event(self, event: ContactEvent) -> Optional[FlowExecution]:
        """
        Select a flow for a new contact and start an execution.
        Returns None when no flow matches or the contact already has an
        active execution.
        """
        contact = event.contact
        flows = await self.store.list_flows(account_id=event.account_id, enabled_only=True)
        flow = self.selector.select_flow(contact, flows)
        if flow is None:
            return None

        execution = self._new_execution(
            flow, contact,
            account_id=event.account_id,
            triggered_at=event.triggered_at,
            trigger_source=event.trigger_source or self.default_trigger_source,
        )
        created = await self.store.create_execution_if_none_active(execution)
        if created is None:
            logger.info("duplicate_trigger_dropped",
                        contact_id=contact.contact_id,
                        flow_id=flow.id)
            return None

        logger.info("execution_created",
                    execution_id=execution.id,
                    flow_id=flow.id,
                    flow_name=flow.name,
                    contact_id=contact.contact_id)
        await self._schedule(execution.id, execution.triggered_at, reason="start")
        return created

    async def run_test(
        self,
        flow_id: str,
        contact: ContactAttributes,
        now: Optional[datetime] = None,
    ) -> Optional[FlowExecution]:
        """
        Run a flow against a contact with simulated side effects, bypassing
        selection. The first advance happens inline; waits resume via the queue.
        """
        flow = await self.store.get_flow(flow_id)
        if flow is None:
            return None
        errors = validate_flow(flow, self.executor.max_wait_minutes, require_actions=False)
        if errors:
            raise FlowValidationError(errors)

        now = now or utcnow()
        execution = self._new_execution(
            flow, contact,
            account_id=flow.account_id,
            triggered_at=now,
            trigger_source="test_run",
            is_test_run=True,
        )
        await self.store.create_execution_if_none_active(execution)
        logger.info("test_run_started", execution_id=execution.id, flow_id=flow.id)
        return await self.advance(execution.id, now=now)

    def dry_run(self, flow: Flow, contact: ContactAttributes) -> MatchReport:
        return self.selector.dry_run(flow, contact)

    def _new_execution(
        self,
        flow: Flow,
        contact: ContactAttributes,
        account_id: str,
        triggered_at: datetime,
        trigger_source: str,
        is_test_run: bool = False,
    ) -> FlowExecution:
        return FlowExecution(
            account_id=account_id,
            flow_id=flow.id,
            flow_name=flow.name,
            contact_id=contact.contact_id,
            contact_name=contact.name,
            contact_phone=contact.phone_number,
            triggered_at=triggered_at,
            is_test_run=is_test_run,
            action_snapshot=[a.model_copy(deep=True) for a in flow.ordered_actions],
            business_hours=resolve_hours(flow, self.default_hours),
            metadata={
                "trigger_source": trigger_source,
                "matched_conditions": [c.model_dump() for c in flow.trigger_conditions],
                "contact": contact.model_dump(mode="json"),
            },
        )

    # ── Advancing ─────────────────────────────────────────────

    def _lock_for(self, execution_id: str) -> asyncio.Lock:
        lock = self._locks.get(execution_id)
        if lock is None:
            lock = self._locks[execution_id] = asyncio.Lock()
        return lock

    async def advance(self, execution_id: str, now: Optional[datetime] = None) -> Optional[FlowExecution]:
        """
        Move an execution as far as it can go at ``now``: until it suspends,
        defers for business hours, or ends. Safe to call repeatedly.
        """
        now = now or utcnow()
        async with self._lock_for(execution_id):
            execution = await self.store.get_execution(execution_id)
            if execution is None:
                logger.warning("execution_not_found", execution_id=execution_id)
                return None
            if not execution.is_terminal:
                try:
                    await self._advance(execution, now)
                except Exception as e:
                    logger.error("execution_advance_error",
                                 execution_id=execution_id,
                                 error=str(e),
                                 exc_info=True)
                    await self._fail_unexpected(execution_id, e, now)
            execution = await self.store.get_execution(execution_id)

        if execution is not None and execution.is_terminal:
            self._locks.pop(execution_id, None)
            self._cancel_intents.discard(execution_id)
        return execution

    async def process_job(self, job: QueueJob) -> None:
        """Queue entry point."""
        await self.advance(job.execution_id)

    def _cancel_pending(self, execution: FlowExecution) -> bool:
        return execution.cancel_requested or execution.id in self._cancel_intents

    async def _advance(self, execution: FlowExecution, now: datetime) -> None:
        logs = await self.store.list_action_logs(execution.id)

        if self._cancel_pending(execution):
            await self._finish_cancel(execution, logs, now)
            return

        if execution.status == ExecutionStatus.PENDING:
            if not await self._start(execution, now):
                return

        if not await self._resume_wait(execution, logs, now):
            return

        await self._run_steps(execution, logs, now)

    async def _start(self, execution: FlowExecution, now: datetime) -> bool:
        """pending → running once the gate opens. False when still pending or closed."""
        if execution.total_steps == 0:
            execution.metadata["skip_reason"] = "no_actions"
            transition_execution(execution, ExecutionStatus.SKIPPED, now=now)
            await self.store.update_execution(execution)
            logger.info("execution_skipped_no_actions", execution_id=execution.id)
            return False

        if execution.resume_at is not None and now < execution.resume_at:
            return False

        decision = check_gate(execution.business_hours or self.default_hours, now)
        if not decision:
            execution.resume_at = decision.at
            await self.store.update_execution(execution)
            await self._schedule(execution.id, decision.at, reason="resume")
            logger.info("execution_deferred_business_hours",
                        execution_id=execution.id,
                        resume_at=decision.at.isoformat())
            return False

        transition_execution(execution, ExecutionStatus.RUNNING, now=now)
        execution.current_action_step = 1
        execution.resume_at = None
        await self.store.update_execution(execution)
        return True

    async def _resume_wait(self, execution: FlowExecution, logs: list[ActionLog], now: datetime) -> bool:
        """Close a due wait step. False while the wait is still in progress."""
        action = execution.action_at(execution.current_action_step)
        if action is None:
            return True
        log = next(
            (l for l in logs
             if l.action_order == action.action_order and l.status == ActionLogStatus.RUNNING),
            None,
        )
        if log is None:
            return True

        if action.action_type != ActionType.WAIT or log.resume_at is None:
            # the process stopped mid-step; the side effect may or may not have happened
            await self._fail_interrupted(execution, log, now)
            return False

        if now < log.resume_at:
            logger.debug("wait_not_due", execution_id=execution.id, resume_at=log.resume_at.isoformat())
            return False

        if log.result_data.get("wait_until_business_hours"):
            decision = check_gate(execution.business_hours or self.default_hours, now)
            if not decision:
                log.resume_at = decision.at
                execution.resume_at = decision.at
                await self.store.update_action_log(log)
                await self.store.update_execution(execution)
                await self._schedule(execution.id, decision.at, reason="resume")
                logger.info("wait_extended_to_business_hours",
                            execution_id=execution.id,
                            resume_at=decision.at.isoformat())
                return False

        transition_action_log(log, ActionLogStatus.SUCCESS, now=now)
        await self.store.update_action_log(log)
        execution.current_action_step += 1
        execution.resume_at = None
        await self.store.update_execution(execution)
        logger.info("wait_completed", execution_id=execution.id, action_order=log.action_order)
        return True

    async def _run_steps(self, execution: FlowExecution, logs: list[ActionLog], now: datetime) -> None:
        contact = execution.contact()
        while True:
            stored = await self.store.get_execution(execution.id)
            if stored is not None and stored.cancel_requested:
                execution.cancel_requested = True
            if self._cancel_pending(execution):
                await self._finish_cancel(execution, logs, now)
                return

            action = execution.action_at(execution.current_action_step)
            if action is None:
                transition_execution(execution, ExecutionStatus.COMPLETED, now=now)
                await self.store.update_execution(execution)
                logger.info("execution_completed",
                            execution_id=execution.id,
                            steps=execution.total_steps)
                return

            log = ActionLog(
                execution_id=execution.id,
                action_id=action.id,
                action_order=action.action_order,
                action_type=action.action_type,
                status=ActionLogStatus.RUNNING,
                started_at=now,
            )
            await self.store.add_action_log(log)

            ctx = ExecutionContext(execution=execution, contact=contact, previous_logs=list(logs), now=now)
            outcome = await self.executor.execute(action, ctx)
            log.result_data = outcome.result_data

            if outcome.status == ActionLogStatus.FAILED:
                transition_action_log(log, ActionLogStatus.FAILED, now=now, error_message=outcome.error_message)
                await self.store.update_action_log(log)
                transition_execution(execution, ExecutionStatus.FAILED,
                                     error_message=outcome.error_message, now=now)
                await self.store.update_execution(execution)
                logger.warning("execution_failed",
                               execution_id=execution.id,
                               action_order=action.action_order,
                               error=outcome.error_message)
                return

            if outcome.suspends:
                due = now + timedelta(minutes=outcome.suspend_minutes)
                log.resume_at = due
                execution.resume_at = due
                await self.store.update_action_log(log)
                await self.store.update_execution(execution)
                await self._schedule(execution.id, due, reason="resume")
                logger.info("execution_suspended",
                            execution_id=execution.id,
                            action_order=action.action_order,
                            resume_at=due.isoformat())
                return

            transition_action_log(log, outcome.status, now=now, skip_reason=outcome.skip_reason)
            await self.store.update_action_log(log)
            logs.append(log)
            execution.current_action_step += 1
            await self.store.update_execution(execution)

    async def _finish_cancel(self, execution: FlowExecution, logs: list[ActionLog], now: datetime) -> None:
        for log in logs:
            if log.status in (ActionLogStatus.RUNNING, ActionLogStatus.PENDING):
                transition_action_log(log, ActionLogStatus.SKIPPED, now=now, skip_reason=SKIP_REASON_CANCELLED)
                await self.store.update_action_log(log)
        execution.cancel_requested = True
        transition_execution(execution, ExecutionStatus.CANCELLED, now=now)
        await self.store.update_execution(execution)
        logger.info("execution_cancelled", execution_id=execution.id)

    async def _fail_interrupted(self, execution: FlowExecution, log: ActionLog, now: datetime) -> None:
        message = f"interrupted during step {log.action_order} ({log.action_type.value})"
        transition_action_log(log, ActionLogStatus.FAILED, now=now, error_message=message)
        await self.store.update_action_log(log)
        transition_execution(execution, ExecutionStatus.FAILED, error_message=message, now=now)
        await self.store.update_execution(execution)
        logger.warning("execution_interrupted",
                       execution_id=execution.id,
                       action_order=log.action_order,
                       action_type=log.action_type.value)

    async def _fail_unexpected(self, execution_id: str, error: Exception, now: datetime) -> None:
        execution = await self.store.get_execution(execution_id)
        if execution is None or execution.is_terminal:
            return
        message = f"internal error: {error}"
        for log in await self.store.list_action_logs(execution_id):
            if log.status in (ActionLogStatus.RUNNING, ActionLogStatus.PENDING):
                transition_action_log(log, ActionLogStatus.FAILED, now=now, error_message=message)
                await self.store.update_action_log(log)
        transition_execution(execution, ExecutionStatus.FAILED, error_message=message, now=now)
        await self.store.update_execution(execution)

    # ── Cancellation ──────────────────────────────────────────

    async def cancel(self, execution_id: str, now: Optional[datetime] = None) -> Optional[FlowExecution]:
        """
        Request cancellation. Returns None when the execution does not exist
        or has already ended. An idle execution (pending, waiting) is cancelled
        immediately; one mid-step is cancelled at its next checkpoint.
        """
        execution = await self.store.get_execution(execution_id)
        if execution is None or not execution.is_active:
            return None

        self._cancel_intents.add(execution_id)
        lock = self._lock_for(execution_id)
        if lock.locked():
            await self.store.request_cancel(execution_id)
            logger.info("cancel_requested", execution_id=execution_id, deferred=True)
            return execution

        async with lock:
            execution = await self.store.get_execution(execution_id)
            if execution is not None and execution.is_active:
                execution.cancel_requested = True
                await self.store.update_execution(execution)
        logger.info("cancel_requested", execution_id=execution_id, deferred=False)
        return await self.advance(execution_id, now=now)

    # ── Scheduling & recovery ─────────────────────────────────

    async def _schedule(self, execution_id: str, when: datetime, reason: str) -> None:
        if self.queue is None:
            return
        await self.queue.enqueue(QueueJob.at(execution_id, when, reason=reason))

    async def recover(self, now: Optional[datetime] = None) -> int:
        """Re-enqueue every active execution at its persisted due time."""
        now = now or utcnow()
        active = await self.store.list_active_executions()
        for execution in active:
            await self._schedule(execution.id, execution.resume_at or now, reason="recover")
        logger.info("executions_recovered", count=len(active))
        return len(active)
