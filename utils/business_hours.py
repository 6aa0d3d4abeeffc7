"""
Business Hours Gate — decides whether a flow may act now or must wait.

The gate is advisory: it never sleeps. The orchestrator turns a WaitUntil
into a persisted resume time plus a delayed queue job.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from config.settings import Settings
from models.schemas import BusinessHours, Flow

logger = structlog.get_logger()


@dataclass(frozen=True)
class RunNow:
    def __bool__(self):
        return True


@dataclass(frozen=True)
class WaitUntil:
    at: datetime                              # aware, UTC

    def __bool__(self):
        return False


GateDecision = Union[RunNow, WaitUntil]


def get_zone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("business_hours_unknown_timezone", timezone=name)
        return ZoneInfo("UTC")


def is_valid_timezone(name: str) -> bool:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def parse_time(value: Union[str, time]) -> time:
    """Accept HH:MM or HH:MM:SS."""
    if isinstance(value, time):
        return value
    return time.fromisoformat(value)


def default_hours(settings: Settings) -> BusinessHours:
    """Account-wide window from configuration."""
    return BusinessHours(
        start=parse_time(settings.business_hours.start),
        end=parse_time(settings.business_hours.end),
        timezone=settings.business_hours_timezone,
    )


def resolve_hours(flow: Flow, default: BusinessHours) -> BusinessHours:
    """The flow's own window when configured, else the account default."""
    return flow.custom_business_hours() or default


def check_gate(hours: BusinessHours, now: datetime) -> GateDecision:
    """
    RunNow if local time-of-day is within [start, end), else WaitUntil the
    next local occurrence of start (today if before start, else tomorrow).
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    zone = get_zone(hours.timezone)
    local = now.astimezone(zone)
    tod = local.time().replace(tzinfo=None)

    if hours.start <= tod < hours.end:
        return RunNow()

    day = local.date()
    if tod >= hours.start:
        day = day + timedelta(days=1)
    next_start = datetime.combine(day, hours.start, tzinfo=zone)
    return WaitUntil(at=next_start.astimezone(timezone.utc))


def check_flow_gate(flow: Flow, default: BusinessHours, now: datetime) -> GateDecision:
    return check_gate(resolve_hours(flow, default), now)
