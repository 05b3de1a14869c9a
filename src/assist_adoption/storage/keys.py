"""Partition and row key shapes.

These shapes are read by other consumers of the tables and must stay
bit-exact.
"""

from typing import Optional

ALL_TIME_PREFIX = "allTime"

# "yyyy-MM-dd-"
DATE_PREFIX_LENGTH = 11


def daily_partition_key(day: str, encrypted_upn: str) -> str:
    """Daily side tables: "{yyyy-MM-dd}-{enc}"."""
    return f"{day}-{encrypted_upn}"


def timeframe_partition_key(window_start: Optional[str], app: str) -> str:
    """Usage aggregates: "{windowStart}-{app}", or "allTime{app}" when window_start is None."""
    if window_start is None:
        return f"{ALL_TIME_PREFIX}{app}"
    return f"{window_start}-{app}"


def agent_by_user_partition_key(window_start: Optional[str], agent_id: str) -> str:
    """Agent aggregates by user: "{windowStart}-{agentId}", or "allTime-{agentId}"."""
    prefix = window_start if window_start is not None else ALL_TIME_PREFIX
    return f"{prefix}-{agent_id}"


def agent_totals_partition_key(window_start: Optional[str]) -> str:
    """Agent totals: the window start, or "allTime"."""
    return window_start if window_start is not None else ALL_TIME_PREFIX


def split_daily_partition_key(partition_key: str):
    """Return (date, encrypted identifier) from a daily partition key."""
    if len(partition_key) <= DATE_PREFIX_LENGTH or partition_key[DATE_PREFIX_LENGTH - 1] != "-":
        raise ValueError("Partition key does not start with a date prefix")
    return partition_key[:DATE_PREFIX_LENGTH - 1], partition_key[DATE_PREFIX_LENGTH:]
