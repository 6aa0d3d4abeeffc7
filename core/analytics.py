"""
Analytics Aggregator — read-only rollups over flows, executions and logs.

Success rates are percentages over decided outcomes only
(completed / (completed + failed)); cancelled and skipped executions never
count against a flow. Test runs are excluded unless asked for.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from datetime import date as Date, datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel

from database.store_base import BaseEngagementStore
from models.schemas import ActionLogStatus, ActionType, ExecutionStatus, FlowExecution, utcnow
from utils.business_hours import get_zone

logger = structlog.get_logger()

TIMELINE_DAYS = 30


def success_rate(successes: int, failures: int) -> float:
    decided = successes + failures
    if decided == 0:
        return 0.0
    return round(successes / decided * 100, 2)


class AnalyticsSummary(BaseModel):
    total_flows: int = 0
    enabled_flows: int = 0
    total_executions: int = 0
    completed_executions: int = 0
    failed_executions: int = 0
    cancelled_executions: int = 0
    success_rate: float = 0.0


class FlowStats(BaseModel):
    flow_id: str
    flow_name: str
    priority: Optional[int] = None          # None once the flow is deleted
    is_enabled: bool = False
    execution_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    success_rate: float = 0.0
    last_execution: Optional[datetime] = None


class ActionTypeStats(BaseModel):
    action_type: str
    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    success_rate: float = 0.0


class TimelinePoint(BaseModel):
    date: Date
    execution_count: int = 0
    success_count: int = 0


class AnalyticsAggregator:

    def __init__(self, store: BaseEngagementStore, timezone: str = "UTC", include_test_runs: bool = False):
        self.store = store
        self.timezone = timezone
        self.include_test_runs = include_test_runs

    async def _executions(self, account_id: Optional[str], include_test_runs: Optional[bool]) -> list[FlowExecution]:
        if include_test_runs is None:
            include_test_runs = self.include_test_runs
        return await self.store.list_executions(account_id=account_id, include_test_runs=include_test_runs)

    async def summary(self, account_id: Optional[str] = None, include_test_runs: Optional[bool] = None) -> AnalyticsSummary:
        flows = await self.store.list_flows(account_id=account_id)
        executions = await self._executions(account_id, include_test_runs)

        counts: dict[ExecutionStatus, int] = defaultdict(int)
        for ex in executions:
            counts[ex.status] += 1

        completed = counts[ExecutionStatus.COMPLETED]
        failed = counts[ExecutionStatus.FAILED]
        return AnalyticsSummary(
            total_flows=len(flows),
            enabled_flows=sum(1 for f in flows if f.is_enabled),
            total_executions=len(executions),
            completed_executions=completed,
            failed_executions=failed,
            cancelled_executions=counts[ExecutionStatus.CANCELLED],
            success_rate=success_rate(completed, failed),
        )

    async def per_flow(self, account_id: Optional[str] = None, include_test_runs: Optional[bool] = None) -> list[FlowStats]:
        flows = await self.store.list_flows(account_id=account_id)
        executions = await self._executions(account_id, include_test_runs)

        stats: dict[str, FlowStats] = {
            f.id: FlowStats(flow_id=f.id, flow_name=f.name, priority=f.priority, is_enabled=f.is_enabled)
            for f in flows
        }
        for ex in executions:
            row = stats.get(ex.flow_id)
            if row is None:
                # deleted flow: keep its history under the denormalized name
                row = stats[ex.flow_id] = FlowStats(flow_id=ex.flow_id, flow_name=ex.flow_name)
            row.execution_count += 1
            if ex.status == ExecutionStatus.COMPLETED:
                row.success_count += 1
            elif ex.status == ExecutionStatus.FAILED:
                row.failure_count += 1
            if row.last_execution is None or ex.triggered_at > row.last_execution:
                row.last_execution = ex.triggered_at

        for row in stats.values():
            row.success_rate = success_rate(row.success_count, row.failure_count)

        return sorted(
            stats.values(),
            key=lambda r: (r.priority is None, r.priority if r.priority is not None else 0, r.flow_name),
        )

    async def for_flow(self, flow_id: str, include_test_runs: Optional[bool] = None) -> Optional[FlowStats]:
        """One flow's row, including deleted flows that still have executions."""
        flow = await self.store.get_flow(flow_id)
        account_id = flow.account_id if flow is not None else None
        for row in await self.per_flow(account_id, include_test_runs):
            if row.flow_id == flow_id:
                return row
        return None

    async def per_action_type(self, account_id: Optional[str] = None, include_test_runs: Optional[bool] = None) -> list[ActionTypeStats]:
        executions = await self._executions(account_id, include_test_runs)
        logs = await self.store.list_action_logs_for([ex.id for ex in executions])

        stats = {t.value: ActionTypeStats(action_type=t.value) for t in ActionType}
        for log in logs:
            row = stats[log.action_type.value]
            row.total += 1
            if log.status == ActionLogStatus.SUCCESS:
                row.successful += 1
            elif log.status == ActionLogStatus.FAILED:
                row.failed += 1
            elif log.status == ActionLogStatus.SKIPPED:
                row.skipped += 1

        for row in stats.values():
            row.success_rate = success_rate(row.successful, row.failed)
        return list(stats.values())

    async def timeline(
        self,
        account_id: Optional[str] = None,
        include_test_runs: Optional[bool] = None,
        now: Optional[datetime] = None,
        days: int = TIMELINE_DAYS,
    ) -> list[TimelinePoint]:
        """Executions per local calendar day over the trailing window, oldest first."""
        zone = get_zone(self.timezone)
        today = (now or utcnow()).astimezone(zone).date()
        first_day = today - timedelta(days=days - 1)

        points: dict[Date, TimelinePoint] = {}
        for ex in await self._executions(account_id, include_test_runs):
            day = ex.triggered_at.astimezone(zone).date()
            if day < first_day or day > today:
                continue
            point = points.get(day)
            if point is None:
                point = points[day] = TimelinePoint(date=day)
            point.execution_count += 1
            if ex.status == ExecutionStatus.COMPLETED:
                point.success_count += 1

        return [points[d] for d in sorted(points)]

    async def report(self, account_id: Optional[str] = None, include_test_runs: Optional[bool] = None) -> dict[str, Any]:
        return {
            "summary": (await self.summary(account_id, include_test_runs)).model_dump(),
            "flows": [r.model_dump() for r in await self.per_flow(account_id, include_test_runs)],
            "action_types": [r.model_dump() for r in await self.per_action_type(account_id, include_test_runs)],
            "timeline": [p.model_dump() for p in await self.timeline(account_id, include_test_runs)],
        }
