"""Latest report refresh date and active window starts.

Stored at pk "ReportRefreshDate", rk = timeframe. Key rotation reads the
weekly and monthly rows to scope row-key tables to the active window.
"""

from typing import Optional

from ..models.usage import Timeframe
from ..storage import tables
from ..storage.base import TableEntity, TableStore, UpdateMode
from ..storage.retry import write_with_retry
from .windows import window_start

REPORT_REFRESH_PARTITION_KEY = "ReportRefreshDate"
REPORT_REFRESH_DATE = "ReportRefreshDate"
START_DATE = "StartDate"

TRACKED_TIMEFRAMES = (Timeframe.DAILY, Timeframe.WEEKLY, Timeframe.MONTHLY)


async def record_report_refresh(store: TableStore, report_refresh_date: str, first_day: str = "monday"):
    """Record the report date and its window start for daily, weekly and monthly."""
    for timeframe in TRACKED_TIMEFRAMES:
        start = window_start(timeframe, report_refresh_date, first_day)

        def mutate(current, timeframe=timeframe, start=start):
            # Never move the record backwards when an older day is replayed
            if current is not None and current.get(REPORT_REFRESH_DATE, "") > report_refresh_date:
                return None
            return TableEntity(
                REPORT_REFRESH_PARTITION_KEY,
                timeframe.value,
                {REPORT_REFRESH_DATE: report_refresh_date, START_DATE: start},
            )

        await write_with_retry(
            store,
            tables.REPORT_REFRESH,
            REPORT_REFRESH_PARTITION_KEY,
            timeframe.value,
            mutate,
            mode=UpdateMode.MERGE,
        )


async def get_window_start(store: TableStore, timeframe: Timeframe) -> Optional[str]:
    """Start of the active window for timeframe, or None when nothing was recorded."""
    entity = await store.get_entity(
        tables.REPORT_REFRESH, REPORT_REFRESH_PARTITION_KEY, timeframe.value
    )
    if entity is None:
        return None
    return entity.get(START_DATE)
