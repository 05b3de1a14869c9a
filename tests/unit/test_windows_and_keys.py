"""Tests for window arithmetic and storage key shapes."""

from datetime import date

import pytest

from assist_adoption.models.usage import Timeframe, parse_date
from assist_adoption.services.windows import (
    add_months,
    month_start,
    trailing_days,
    week_start,
    window_range,
    window_start,
)
from assist_adoption.storage.keys import (
    agent_by_user_partition_key,
    agent_totals_partition_key,
    daily_partition_key,
    split_daily_partition_key,
    timeframe_partition_key,
)


class TestWindows:
    def test_week_start_monday(self):
        # 2024-01-03 is a Wednesday
        assert week_start(date(2024, 1, 3)) == date(2024, 1, 1)
        assert week_start(date(2024, 1, 1)) == date(2024, 1, 1)
        assert week_start(date(2024, 1, 7)) == date(2024, 1, 1)

    def test_week_start_sunday(self):
        assert week_start(date(2024, 1, 3), "sunday") == date(2023, 12, 31)
        assert week_start(date(2024, 1, 7), "sunday") == date(2024, 1, 7)

    def test_month_start(self):
        assert month_start(date(2024, 2, 29)) == date(2024, 2, 1)

    def test_add_months_wraps_year(self):
        assert add_months(date(2024, 12, 1), 1) == date(2025, 1, 1)
        assert add_months(date(2024, 1, 1), -1) == date(2023, 12, 1)

    def test_window_start(self):
        assert window_start(Timeframe.DAILY, "2024-03-14") == "2024-03-14"
        assert window_start(Timeframe.WEEKLY, "2024-03-14") == "2024-03-11"
        assert window_start(Timeframe.MONTHLY, "2024-03-14") == "2024-03-01"
        assert window_start(Timeframe.ALL_TIME, "2024-03-14") is None

    def test_window_range(self):
        assert window_range(Timeframe.DAILY, "2024-02-28") == ("2024-02-28", "2024-02-29")
        assert window_range(Timeframe.WEEKLY, "2024-03-11") == ("2024-03-11", "2024-03-18")
        assert window_range(Timeframe.MONTHLY, "2024-12-01") == ("2024-12-01", "2025-01-01")
        with pytest.raises(ValueError):
            window_range(Timeframe.ALL_TIME, "2024-01-01")

    def test_trailing_days_inclusive(self):
        days = trailing_days(date(2024, 1, 3), 7)
        assert len(days) == 8
        assert days[0] == "2024-01-03"
        assert days[-1] == "2023-12-27"

    def test_parse_date_requires_padding(self):
        assert parse_date("2024-01-05") == date(2024, 1, 5)
        with pytest.raises(ValueError):
            parse_date("2024-1-5")


class TestKeys:
    def test_daily_partition_key(self):
        assert daily_partition_key("2024-01-01", "abc") == "2024-01-01-abc"

    def test_split_daily_partition_key(self):
        assert split_daily_partition_key("2024-01-01-abc-def") == ("2024-01-01", "abc-def")
        with pytest.raises(ValueError):
            split_daily_partition_key("abc")

    def test_timeframe_partition_key(self):
        assert timeframe_partition_key("2024-01-01", "Word") == "2024-01-01-Word"
        assert timeframe_partition_key(None, "Word") == "allTimeWord"

    def test_agent_partition_keys(self):
        assert agent_by_user_partition_key("2024-01-01", "agent-1") == "2024-01-01-agent-1"
        assert agent_by_user_partition_key(None, "agent-1") == "allTime-agent-1"
        assert agent_totals_partition_key("2024-01-01") == "2024-01-01"
        assert agent_totals_partition_key(None) == "allTime"
