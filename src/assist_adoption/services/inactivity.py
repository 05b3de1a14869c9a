"""Inactivity ledger: users whose last activity is older than the reminder threshold."""

import logging
from typing import Optional

from ..models.usage import EPOCH_DATE, parse_date
from ..storage import tables
from ..storage.base import TableEntity, TableStore, UpdateMode

logger = logging.getLogger(__name__)

LAST_ACTIVITY_DATE = "LastActivityDate"
REPORT_REFRESH_DATE = "ReportRefreshDate"
DAYS_SINCE_LAST_ACTIVITY = "DaysSinceLastActivity"


def inactive_since(
    last_activity_date: Optional[str], report_refresh_date: str, reminder_days: int
) -> Optional[str]:
    """Return the last-activity date to record, or None when the user is active enough.

    No entry when the user was active on the report date. A missing last
    activity is recorded as the epoch.
    """
    if last_activity_date == report_refresh_date:
        return None
    if not last_activity_date:
        return EPOCH_DATE

    report_day = parse_date(report_refresh_date)
    last_day = parse_date(last_activity_date)
    if (report_day - last_day).days > reminder_days:
        return last_activity_date
    return None


class InactivityLedger:
    """Writes (encrypted user, last-activity date) rows to UsersLastUsageTracker."""

    def __init__(self, store: TableStore, reminder_days: int = 14):
        self._store = store
        self.reminder_days = reminder_days

    async def record_if_inactive(
        self,
        encrypted_upn: str,
        last_activity_date: Optional[str],
        report_refresh_date: str,
    ) -> bool:
        """Record the user when inactive beyond the threshold. Returns True when written."""
        since = inactive_since(last_activity_date, report_refresh_date, self.reminder_days)
        if since is None:
            return False
        await self.record(encrypted_upn, since, report_refresh_date)
        return True

    async def record(self, encrypted_upn: str, last_activity_date: str, report_refresh_date: str):
        days = (parse_date(report_refresh_date) - parse_date(last_activity_date)).days
        entity = TableEntity(
            encrypted_upn,
            last_activity_date,
            {
                LAST_ACTIVITY_DATE: last_activity_date,
                REPORT_REFRESH_DATE: report_refresh_date,
                DAYS_SINCE_LAST_ACTIVITY: float(days),
            },
        )
        await self._store.upsert_entity(tables.LAST_USAGE_TRACKER, entity, mode=UpdateMode.MERGE)
        logger.debug("Recorded inactivity of %d days as of %s", days, report_refresh_date)
