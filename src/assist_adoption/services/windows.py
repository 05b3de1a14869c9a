"""Aggregation window arithmetic."""

from datetime import date, timedelta
from typing import Optional, Tuple

from ..models.usage import Timeframe, format_date, parse_date


def week_start(day: date, first_day: str = "monday") -> date:
    """First day of the week containing *day*."""
    if first_day == "sunday":
        # date.weekday(): Monday=0 .. Sunday=6
        offset = (day.weekday() + 1) % 7
    else:
        offset = day.weekday()
    return day - timedelta(days=offset)


def month_start(day: date) -> date:
    return day.replace(day=1)


def add_months(day: date, months: int) -> date:
    """Add months to a first-of-month date."""
    month_index = day.month - 1 + months
    return date(day.year + month_index // 12, month_index % 12 + 1, 1)


def window_start(timeframe: Timeframe, report_date: str, first_day: str = "monday") -> Optional[str]:
    """Window key for a report date. None for all-time, which is unwindowed."""
    day = parse_date(report_date)
    if timeframe == Timeframe.DAILY:
        return report_date
    if timeframe == Timeframe.WEEKLY:
        return format_date(week_start(day, first_day))
    if timeframe == Timeframe.MONTHLY:
        return format_date(month_start(day))
    return None


def window_range(timeframe: Timeframe, start: str) -> Tuple[str, str]:
    """[start, end) partition key range covering every key of a window."""
    day = parse_date(start)
    if timeframe == Timeframe.DAILY:
        end = day + timedelta(days=1)
    elif timeframe == Timeframe.WEEKLY:
        end = day + timedelta(days=7)
    elif timeframe == Timeframe.MONTHLY:
        end = add_months(day, 1)
    else:
        raise ValueError("All-time has no window range")
    return start, format_date(end)


def trailing_days(today: date, days: int):
    """today, today-1, ... today-days (inclusive), newest first."""
    return [format_date(today - timedelta(days=i)) for i in range(days + 1)]
