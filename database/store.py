"""
SqlEngagementStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Datetimes read back from SQLite come out naive; every row conversion passes
them through _aware() so callers always see UTC-aware values.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from database.models import (
    ActionLogRow, FlowActionRow, FlowExecutionRow, FlowRow, TriggerConditionRow,
)
from database.session import Database
from database.store_base import BaseEngagementStore, active_contact_key
from models.schemas import (
    Action, ActionLog, BusinessHours, ExecutionStatus, Flow, FlowExecution,
    TriggerCondition, utcnow,
)

logger = structlog.get_logger()


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class SqlEngagementStore(BaseEngagementStore):
    """
    Persistent engagement store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, db: Database):
        self.db = db

    async def initialize(self) -> None:
        await self.db.init()

    async def close(self) -> None:
        await self.db.close()

    # ── Flow operations ────────────────────────────────────

    async def list_flows(self, account_id: Optional[str] = None, enabled_only: bool = False) -> list[Flow]:
        async with self.db.session() as s:
            stmt = select(FlowRow)
            if account_id is not None:
                stmt = stmt.where(FlowRow.account_id == account_id)
            if enabled_only:
                stmt = stmt.where(FlowRow.is_enabled.is_(True))
            stmt = stmt.order_by(FlowRow.priority, FlowRow.created_at, FlowRow.id)
            result = await s.execute(stmt)
            return [self._row_to_flow(r) for r in result.scalars()]

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        async with self.db.session() as s:
            row = await s.get(FlowRow, flow_id)
            return self._row_to_flow(row) if row else None

    async def save_flow(self, flow: Flow) -> Flow:
        async with self.db.session() as s:
            row = await s.get(FlowRow, flow.id)
            if row is None:
                row = FlowRow(id=flow.id, created_at=flow.created_at)
                s.add(row)
            else:
                flow.created_at = _aware(row.created_at)

            row.account_id = flow.account_id
            row.name = flow.name
            row.description = flow.description
            row.priority = flow.priority
            row.is_enabled = flow.is_enabled
            row.use_custom_business_hours = flow.use_custom_business_hours
            row.business_hours_start = flow.business_hours_start
            row.business_hours_end = flow.business_hours_end
            row.business_hours_timezone = flow.business_hours_timezone
            row.updated_at = flow.updated_at

            # Children are matched by id so unchanged rows are updated in place.
            existing_conditions = {c.id: c for c in row.conditions}
            conditions = []
            for i, c in enumerate(flow.trigger_conditions):
                cond_row = existing_conditions.get(c.id) or TriggerConditionRow(id=c.id)
                cond_row.position = i
                cond_row.condition_type = c.condition_type
                cond_row.condition_operator = c.condition_operator
                cond_row.condition_value = c.condition_value
                cond_row.field_name = c.field_name
                conditions.append(cond_row)
            row.conditions = conditions

            existing_actions = {a.id: a for a in row.actions}
            actions = []
            for a in flow.actions:
                action_row = existing_actions.get(a.id) or FlowActionRow(id=a.id)
                action_row.action_order = a.action_order
                action_row.action_type = a.action_type.value
                action_row.action_config = a.action_config.model_dump(mode="json")
                action_row.condition_type = a.condition_type
                action_row.condition_value = a.condition_value
                actions.append(action_row)
            row.actions = actions
        return flow

    async def delete_flow(self, flow_id: str) -> bool:
        async with self.db.session() as s:
            row = await s.get(FlowRow, flow_id)
            if row is None:
                return False
            await s.delete(row)
            return True

    async def set_priorities(self, priorities: dict[str, int]) -> list[Flow]:
        async with self.db.session() as s:
            result = await s.execute(select(FlowRow).where(FlowRow.id.in_(list(priorities))))
            rows = {r.id: r for r in result.scalars()}
            unknown = [fid for fid in priorities if fid not in rows]
            if unknown:
                raise KeyError(", ".join(unknown))
            now = utcnow()
            for fid, priority in priorities.items():
                rows[fid].priority = priority
                rows[fid].updated_at = now
            return [self._row_to_flow(rows[fid]) for fid in priorities]

    # ── Execution operations ───────────────────────────────

    async def create_execution_if_none_active(self, execution: FlowExecution) -> Optional[FlowExecution]:
        try:
            async with self.db.session() as s:
                row = FlowExecutionRow(id=execution.id)
                self._apply_execution(row, execution)
                s.add(row)
        except IntegrityError:
            logger.debug("active_execution_collision",
                         contact_id=execution.contact_id,
                         account_id=execution.account_id)
            return None
        return execution

    async def get_execution(self, execution_id: str) -> Optional[FlowExecution]:
        async with self.db.session() as s:
            row = await s.get(FlowExecutionRow, execution_id)
            return self._row_to_execution(row) if row else None

    async def update_execution(self, execution: FlowExecution) -> FlowExecution:
        async with self.db.session() as s:
            row = await s.get(FlowExecutionRow, execution.id)
            if row is None:
                raise KeyError(execution.id)
            self._apply_execution(row, execution)
        return execution

    async def request_cancel(self, execution_id: str) -> bool:
        async with self.db.session() as s:
            result = await s.execute(
                update(FlowExecutionRow)
                .where(FlowExecutionRow.id == execution_id)
                .values(cancel_requested=True)
            )
            return result.rowcount > 0

    async def find_active_execution(self, contact_id: str, account_id: str = "default") -> Optional[FlowExecution]:
        async with self.db.session() as s:
            stmt = select(FlowExecutionRow).where(
                FlowExecutionRow.active_contact_key == f"{account_id}:{contact_id}"
            )
            result = await s.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_execution(row) if row else None

    async def list_executions(
        self,
        account_id: Optional[str] = None,
        flow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        contact_id: Optional[str] = None,
        include_test_runs: bool = True,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[FlowExecution]:
        async with self.db.session() as s:
            stmt = select(FlowExecutionRow)
            if account_id is not None:
                stmt = stmt.where(FlowExecutionRow.account_id == account_id)
            if flow_id is not None:
                stmt = stmt.where(FlowExecutionRow.flow_id == flow_id)
            if status is not None:
                stmt = stmt.where(FlowExecutionRow.status == ExecutionStatus(status).value)
            if contact_id is not None:
                stmt = stmt.where(FlowExecutionRow.contact_id == contact_id)
            if not include_test_runs:
                stmt = stmt.where(FlowExecutionRow.is_test_run.is_(False))
            stmt = stmt.order_by(FlowExecutionRow.triggered_at.desc(), FlowExecutionRow.id.desc())
            if offset:
                stmt = stmt.offset(offset)
            if limit is not None:
                stmt = stmt.limit(limit)
            result = await s.execute(stmt)
            return [self._row_to_execution(r) for r in result.scalars()]

    async def list_active_executions(self) -> list[FlowExecution]:
        async with self.db.session() as s:
            stmt = select(FlowExecutionRow).where(
                FlowExecutionRow.status.in_([ExecutionStatus.PENDING.value, ExecutionStatus.RUNNING.value])
            )
            result = await s.execute(stmt)
            return [self._row_to_execution(r) for r in result.scalars()]

    # ── Action log operations ──────────────────────────────

    async def add_action_log(self, log: ActionLog) -> ActionLog:
        async with self.db.session() as s:
            row = ActionLogRow(id=log.id)
            self._apply_log(row, log)
            s.add(row)
        return log

    async def update_action_log(self, log: ActionLog) -> ActionLog:
        async with self.db.session() as s:
            row = await s.get(ActionLogRow, log.id)
            if row is None:
                raise KeyError(log.id)
            self._apply_log(row, log)
        return log

    async def list_action_logs(self, execution_id: str) -> list[ActionLog]:
        async with self.db.session() as s:
            stmt = (
                select(ActionLogRow)
                .where(ActionLogRow.execution_id == execution_id)
                .order_by(ActionLogRow.action_order, ActionLogRow.started_at)
            )
            result = await s.execute(stmt)
            return [self._row_to_log(r) for r in result.scalars()]

    async def list_action_logs_for(self, execution_ids: list[str]) -> list[ActionLog]:
        if not execution_ids:
            return []
        async with self.db.session() as s:
            stmt = (
                select(ActionLogRow)
                .where(ActionLogRow.execution_id.in_(execution_ids))
                .order_by(ActionLogRow.execution_id, ActionLogRow.action_order)
            )
            result = await s.execute(stmt)
            return [self._row_to_log(r) for r in result.scalars()]

    # ── Row ↔ model conversion ─────────────────────────────

    @staticmethod
    def _row_to_flow(row: FlowRow) -> Flow:
        return Flow(
            id=row.id,
            account_id=row.account_id,
            name=row.name,
            description=row.description or "",
            priority=row.priority,
            is_enabled=row.is_enabled,
            trigger_conditions=[
                TriggerCondition(
                    id=c.id,
                    condition_type=c.condition_type,
                    condition_operator=c.condition_operator,
                    condition_value=c.condition_value,
                    field_name=c.field_name,
                )
                for c in row.conditions
            ],
            actions=[
                Action(
                    id=a.id,
                    action_order=a.action_order,
                    action_type=a.action_type,
                    action_config=a.action_config or {},
                    condition_type=a.condition_type,
                    condition_value=a.condition_value,
                )
                for a in row.actions
            ],
            use_custom_business_hours=row.use_custom_business_hours,
            business_hours_start=row.business_hours_start,
            business_hours_end=row.business_hours_end,
            business_hours_timezone=row.business_hours_timezone,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _apply_execution(row: FlowExecutionRow, execution: FlowExecution) -> None:
        data = execution.model_dump(mode="json", include={"action_snapshot", "business_hours", "metadata"})
        row.account_id = execution.account_id
        row.flow_id = execution.flow_id
        row.flow_name = execution.flow_name
        row.contact_id = execution.contact_id
        row.contact_name = execution.contact_name
        row.contact_phone = execution.contact_phone
        row.status = execution.status.value
        row.current_action_step = execution.current_action_step
        row.triggered_at = execution.triggered_at
        row.completed_at = execution.completed_at
        row.error_message = execution.error_message
        row.is_test_run = execution.is_test_run
        row.action_snapshot = data["action_snapshot"]
        row.business_hours = data["business_hours"]
        row.resume_at = execution.resume_at
        row.cancel_requested = bool(row.cancel_requested) or execution.cancel_requested
        row.metadata_ = data["metadata"]
        row.active_contact_key = active_contact_key(execution)

    @staticmethod
    def _row_to_execution(row: FlowExecutionRow) -> FlowExecution:
        return FlowExecution(
            id=row.id,
            account_id=row.account_id,
            flow_id=row.flow_id,
            flow_name=row.flow_name or "",
            contact_id=row.contact_id,
            contact_name=row.contact_name or "",
            contact_phone=row.contact_phone or "",
            status=row.status,
            current_action_step=row.current_action_step,
            triggered_at=_aware(row.triggered_at),
            completed_at=_aware(row.completed_at),
            error_message=row.error_message,
            is_test_run=row.is_test_run,
            action_snapshot=[Action(**a) for a in (row.action_snapshot or [])],
            business_hours=BusinessHours(**row.business_hours) if row.business_hours else None,
            resume_at=_aware(row.resume_at),
            cancel_requested=row.cancel_requested,
            metadata=row.metadata_ or {},
        )

    @staticmethod
    def _apply_log(row: ActionLogRow, log: ActionLog) -> None:
        row.execution_id = log.execution_id
        row.action_id = log.action_id
        row.action_order = log.action_order
        row.action_type = log.action_type.value
        row.status = log.status.value
        row.started_at = log.started_at
        row.completed_at = log.completed_at
        row.skip_reason = log.skip_reason
        row.error_message = log.error_message
        row.result_data = log.model_dump(mode="json", include={"result_data"})["result_data"]
        row.resume_at = log.resume_at

    @staticmethod
    def _row_to_log(row: ActionLogRow) -> ActionLog:
        return ActionLog(
            id=row.id,
            execution_id=row.execution_id,
            action_id=row.action_id or "",
            action_order=row.action_order,
            action_type=row.action_type,
            status=row.status,
            started_at=_aware(row.started_at),
            completed_at=_aware(row.completed_at),
            skip_reason=row.skip_reason,
            error_message=row.error_message,
            result_data=row.result_data or {},
            resume_at=_aware(row.resume_at),
        )
