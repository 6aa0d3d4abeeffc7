"""
Abstract Engagement Store — Interface for all storage backends.

Implementations:
  - SqlEngagementStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryEngagementStore (dict-based, single-process, no persistence)

Stores hand out copies: mutating a returned model never changes stored state
until it is written back with save_flow / update_execution / update_action_log.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from models.schemas import ActionLog, ExecutionStatus, Flow, FlowExecution


def active_contact_key(execution: FlowExecution) -> Optional[str]:
    """Uniqueness key held by a live, non-test execution; None otherwise."""
    if execution.is_test_run or not execution.is_active:
        return None
    return f"{execution.account_id}:{execution.contact_id}"


class BaseEngagementStore(ABC):
    """Interface that all engagement store backends must implement."""

    # ── Flows ─────────────────────────────────────────────────

    @abstractmethod
    async def list_flows(self, account_id: Optional[str] = None, enabled_only: bool = False) -> list[Flow]:
        ...

    @abstractmethod
    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        ...

    @abstractmethod
    async def save_flow(self, flow: Flow) -> Flow:
        """Insert or fully replace a flow, its trigger conditions and actions."""

    @abstractmethod
    async def delete_flow(self, flow_id: str) -> bool:
        ...

    @abstractmethod
    async def set_priorities(self, priorities: dict[str, int]) -> list[Flow]:
        """Apply flow_id → priority in one step; unknown ids raise KeyError."""

    # ── Executions ────────────────────────────────────────────

    @abstractmethod
    async def create_execution_if_none_active(self, execution: FlowExecution) -> Optional[FlowExecution]:
        """
        Atomically insert ``execution`` unless the contact already has an
        active execution. Returns None on collision.
        """

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Optional[FlowExecution]:
        ...

    @abstractmethod
    async def update_execution(self, execution: FlowExecution) -> FlowExecution:
        """Persist ``execution``. A stored cancel request is never cleared."""

    @abstractmethod
    async def request_cancel(self, execution_id: str) -> bool:
        """Set only the cancel flag. False when the execution does not exist."""

    @abstractmethod
    async def find_active_execution(self, contact_id: str, account_id: str = "default") -> Optional[FlowExecution]:
        ...

    @abstractmethod
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
        """Newest first."""

    @abstractmethod
    async def list_active_executions(self) -> list[FlowExecution]:
        ...

    # ── Action logs ───────────────────────────────────────────

    @abstractmethod
    async def add_action_log(self, log: ActionLog) -> ActionLog:
        ...

    @abstractmethod
    async def update_action_log(self, log: ActionLog) -> ActionLog:
        ...

    @abstractmethod
    async def list_action_logs(self, execution_id: str) -> list[ActionLog]:
        """Ordered by action_order."""

    @abstractmethod
    async def list_action_logs_for(self, execution_ids: list[str]) -> list[ActionLog]:
        ...

    # ── Lifecycle ─────────────────────────────────────────────

    async def initialize(self) -> None:
        """Create tables or connections; no-op for in-process stores."""

    async def close(self) -> None:
        ...
