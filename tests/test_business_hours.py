"""Tests for the business hours gate."""
from datetime import datetime, time, timezone

import pytest

from config.settings import BusinessHoursConfig, Settings
from conftest import MONDAY_10AM, UTC_OFFICE_HOURS, make_flow
from models.schemas import BusinessHours
from utils.business_hours import (
    RunNow, WaitUntil, check_flow_gate, check_gate, default_hours, get_zone,
    is_valid_timezone, parse_time, resolve_hours,
)


def utc(h, m=0, day=5):
    return datetime(2026, 1, day, h, m, tzinfo=timezone.utc)


class TestGate:

    def test_inside_window_runs_now(self):
        assert isinstance(check_gate(UTC_OFFICE_HOURS, utc(10)), RunNow)
        assert check_gate(UTC_OFFICE_HOURS, utc(10))

    def test_start_is_inclusive(self):
        assert check_gate(UTC_OFFICE_HOURS, utc(9))

    def test_end_is_exclusive(self):
        decision = check_gate(UTC_OFFICE_HOURS, utc(18))
        assert not decision
        assert decision.at == utc(9, day=6)

    def test_before_start_waits_until_today(self):
        decision = check_gate(UTC_OFFICE_HOURS, utc(7, 30))
        assert isinstance(decision, WaitUntil)
        assert decision.at == utc(9)

    def test_after_end_waits_until_tomorrow(self):
        assert check_gate(UTC_OFFICE_HOURS, utc(22)).at == utc(9, day=6)

    def test_idempotent(self):
        for now in (utc(7), utc(12), utc(20)):
            assert check_gate(UTC_OFFICE_HOURS, now) == check_gate(UTC_OFFICE_HOURS, now)

    def test_naive_now_treated_as_utc(self):
        assert check_gate(UTC_OFFICE_HOURS, datetime(2026, 1, 5, 10, 0))

    def test_local_timezone_window(self):
        # 09:00–18:00 in Kolkata is 03:30–12:30 UTC
        ist = BusinessHours(start=time(9, 0), end=time(18, 0), timezone="Asia/Kolkata")
        assert check_gate(ist, utc(4))
        decision = check_gate(ist, utc(13))
        assert decision.at == datetime(2026, 1, 6, 3, 30, tzinfo=timezone.utc)

    def test_resume_time_is_utc(self):
        ist = BusinessHours(start=time(9, 0), end=time(18, 0), timezone="Asia/Kolkata")
        assert check_gate(ist, utc(1)).at.utcoffset().total_seconds() == 0


class TestResolution:

    def test_flow_without_custom_hours_uses_default(self):
        assert resolve_hours(make_flow(), UTC_OFFICE_HOURS) == UTC_OFFICE_HOURS

    def test_custom_hours_win(self):
        flow = make_flow(use_custom_business_hours=True,
                         business_hours_start=time(12, 0), business_hours_end=time(14, 0))
        hours = resolve_hours(flow, UTC_OFFICE_HOURS)
        assert hours.start == time(12, 0)
        assert not check_flow_gate(flow, UTC_OFFICE_HOURS, MONDAY_10AM)
        assert check_flow_gate(flow, UTC_OFFICE_HOURS, MONDAY_10AM).at == utc(12)

    def test_custom_flag_without_bounds_falls_back(self):
        flow = make_flow(use_custom_business_hours=True)
        assert resolve_hours(flow, UTC_OFFICE_HOURS) == UTC_OFFICE_HOURS

    def test_default_hours_from_settings(self):
        settings = Settings(timezone="Asia/Kolkata",
                            business_hours=BusinessHoursConfig(start="10:00", end="19:30:00"))
        hours = default_hours(settings)
        assert hours.start == time(10, 0)
        assert hours.end == time(19, 30)
        assert hours.timezone == "Asia/Kolkata"


class TestHelpers:

    def test_parse_time(self):
        assert parse_time("09:00") == time(9, 0)
        assert parse_time("17:30:15") == time(17, 30, 15)
        assert parse_time(time(8)) == time(8)

    def test_timezones(self):
        assert is_valid_timezone("Europe/London")
        assert not is_valid_timezone("Nowhere/Special")
        assert str(get_zone("Nowhere/Special")) == "UTC"
        assert str(get_zone(None)) == "UTC"
