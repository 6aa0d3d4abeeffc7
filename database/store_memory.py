"""
InMemoryEngagementStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlEngagementStore
  - Single active execution per contact enforced under an asyncio.Lock
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from database.store_base import BaseEngagementStore, active_contact_key
from models.schemas import ActionLog, ExecutionStatus, Flow, FlowExecution, utcnow

logger = structlog.get_logger()


class InMemoryEngagementStore(BaseEngagementStore):

    def __init__(self):
        self._flows: dict[str, Flow] = {}
        self._executions: dict[str, FlowExecution] = {}
        self._logs: dict[str, ActionLog] = {}

        # Indexes
        self._active_index: dict[str, str] = {}       # "account:contact" → execution_id
        self._lock = asyncio.Lock()
        logger.info("inmemory_store_initialized")

    # ── Flows ─────────────────────────────────────────────

    async def list_flows(self, account_id: Optional[str] = None, enabled_only: bool = False) -> list[Flow]:
        flows = [
            f for f in self._flows.values()
            if (account_id is None or f.account_id == account_id)
            and (not enabled_only or f.is_enabled)
        ]
        flows.sort(key=lambda f: (f.priority, f.created_at, f.id))
        return [f.model_copy(deep=True) for f in flows]

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        flow = self._flows.get(flow_id)
        return flow.model_copy(deep=True) if flow else None

    async def save_flow(self, flow: Flow) -> Flow:
        existing = self._flows.get(flow.id)
        if existing is not None:
            flow.created_at = existing.created_at
        self._flows[flow.id] = flow.model_copy(deep=True)
        return flow

    async def delete_flow(self, flow_id: str) -> bool:
        return self._flows.pop(flow_id, None) is not None

    async def set_priorities(self, priorities: dict[str, int]) -> list[Flow]:
        unknown = [fid for fid in priorities if fid not in self._flows]
        if unknown:
            raise KeyError(", ".join(unknown))
        now = utcnow()
        for fid, priority in priorities.items():
            self._flows[fid].priority = priority
            self._flows[fid].updated_at = now
        return [self._flows[fid].model_copy(deep=True) for fid in priorities]

    # ── Executions ────────────────────────────────────────

    async def create_execution_if_none_active(self, execution: FlowExecution) -> Optional[FlowExecution]:
        key = active_contact_key(execution)
        async with self._lock:
            if key is not None and key in self._active_index:
                return None
            self._executions[execution.id] = execution.model_copy(deep=True)
            if key is not None:
                self._active_index[key] = execution.id
        return execution

    async def get_execution(self, execution_id: str) -> Optional[FlowExecution]:
        ex = self._executions.get(execution_id)
        return ex.model_copy(deep=True) if ex else None

    async def update_execution(self, execution: FlowExecution) -> FlowExecution:
        async with self._lock:
            stored = self._executions.get(execution.id)
            copy = execution.model_copy(deep=True)
            if stored is not None and stored.cancel_requested:
                copy.cancel_requested = True
            self._executions[execution.id] = copy
            key = f"{execution.account_id}:{execution.contact_id}"
            if active_contact_key(execution) is None and self._active_index.get(key) == execution.id:
                del self._active_index[key]
        return execution

    async def request_cancel(self, execution_id: str) -> bool:
        async with self._lock:
            ex = self._executions.get(execution_id)
            if ex is None:
                return False
            ex.cancel_requested = True
        return True

    async def find_active_execution(self, contact_id: str, account_id: str = "default") -> Optional[FlowExecution]:
        ex_id = self._active_index.get(f"{account_id}:{contact_id}")
        return await self.get_execution(ex_id) if ex_id else None

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
        rows = [
            e for e in self._executions.values()
            if (account_id is None or e.account_id == account_id)
            and (flow_id is None or e.flow_id == flow_id)
            and (status is None or e.status == status)
            and (contact_id is None or e.contact_id == contact_id)
            and (include_test_runs or not e.is_test_run)
        ]
        rows.sort(key=lambda e: (e.triggered_at, e.id), reverse=True)
        rows = rows[offset:] if limit is None else rows[offset:offset + limit]
        return [e.model_copy(deep=True) for e in rows]

    async def list_active_executions(self) -> list[FlowExecution]:
        return [e.model_copy(deep=True) for e in self._executions.values() if e.is_active]

    # ── Action logs ───────────────────────────────────────

    async def add_action_log(self, log: ActionLog) -> ActionLog:
        self._logs[log.id] = log.model_copy(deep=True)
        return log

    async def update_action_log(self, log: ActionLog) -> ActionLog:
        self._logs[log.id] = log.model_copy(deep=True)
        return log

    async def list_action_logs(self, execution_id: str) -> list[ActionLog]:
        logs = [l for l in self._logs.values() if l.execution_id == execution_id]
        logs.sort(key=lambda l: (l.action_order, l.started_at))
        return [l.model_copy(deep=True) for l in logs]

    async def list_action_logs_for(self, execution_ids: list[str]) -> list[ActionLog]:
        wanted = set(execution_ids)
        logs = [l for l in self._logs.values() if l.execution_id in wanted]
        logs.sort(key=lambda l: (l.execution_id, l.action_order))
        return [l.model_copy(deep=True) for l in logs]
