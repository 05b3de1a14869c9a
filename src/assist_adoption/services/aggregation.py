"""Aggregation engine.

Folds one user's daily usage into the weekly, monthly and all-time
aggregates per application, maintains daily streaks, and feeds the
inactivity ledger and the report refresh record.

Aggregate update rules, per (timeframe, window, app, user):

    usage, existing     -> activity +1, interactions += n, streak +1, best = max
    no usage, existing  -> streak = 0, other counters unchanged
    usage, missing      -> create (1, n, 1, 1)
    no usage, missing   -> nothing
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from ..config import Settings
from ..models.usage import (
    AGENT_NAME,
    BEST_DAILY_STREAK,
    COUNT_DERIVED_APPS,
    CURRENT_DAILY_STREAK,
    LAST_PROCESSED_DATE,
    NATIVE_APPS,
    TOTAL_DAILY_ACTIVITY_COUNT,
    TOTAL_INTERACTION_COUNT,
    AppType,
    Timeframe,
    UsageSnapshot,
)
from ..observability.logging import set_log_context
from ..observability.metrics import record_aggregate_update, record_snapshot
from ..security.encryption import DeterministicEncryptionService
from ..storage import tables
from ..storage.base import EntityFilter, TableEntity, TableStore
from ..storage.keys import (
    agent_by_user_partition_key,
    agent_totals_partition_key,
    daily_partition_key,
    timeframe_partition_key,
)
from ..storage.pagination import iter_entities, list_entities
from ..storage.retry import write_with_retry
from .email_list import EmailListFilter
from .inactivity import InactivityLedger
from .pause_state import PauseState
from .report_refresh import record_report_refresh
from .windows import window_range, window_start

logger = logging.getLogger(__name__)

# Order matters only for log readability
AGGREGATE_TIMEFRAMES = (Timeframe.ALL_TIME, Timeframe.MONTHLY, Timeframe.WEEKLY)

USAGE_TABLES = {
    Timeframe.WEEKLY: tables.WEEKLY_USAGE,
    Timeframe.MONTHLY: tables.MONTHLY_USAGE,
    Timeframe.ALL_TIME: tables.ALL_TIME_USAGE,
}

AGENT_BY_USER_TABLES = {
    Timeframe.WEEKLY: tables.WEEKLY_AGENT_BY_USER,
    Timeframe.MONTHLY: tables.MONTHLY_AGENT_BY_USER,
    Timeframe.ALL_TIME: tables.ALL_TIME_AGENT_BY_USER,
}

AGENT_TOTALS_TABLES = {
    Timeframe.WEEKLY: tables.WEEKLY_AGENT_TOTALS,
    Timeframe.MONTHLY: tables.MONTHLY_AGENT_TOTALS,
    Timeframe.ALL_TIME: tables.ALL_TIME_AGENT_TOTALS,
}


@dataclass
class AppUsage:
    """Whether an app was used on the day, and how many interactions it saw."""

    used: bool = False
    interactions: int = 0


@dataclass
class AgentUsage:
    agent_id: str
    agent_name: str
    interactions: int


class UserAggregationDispatcher(Protocol):
    async def queue_user_aggregations(
        self, encrypted_upns: Sequence[str], report_refresh_date: str
    ) -> int:
        ...


def advance_streak(
    current: Optional[TableEntity],
    partition_key: str,
    row_key: str,
    usage: AppUsage,
    report_date: str,
    dedupe: bool = False,
) -> Optional[TableEntity]:
    """Next state of a timeframe aggregate, or None when nothing should be written."""
    if current is None:
        if not usage.used:
            return None
        return TableEntity(
            partition_key,
            row_key,
            {
                TOTAL_DAILY_ACTIVITY_COUNT: 1,
                TOTAL_INTERACTION_COUNT: usage.interactions,
                CURRENT_DAILY_STREAK: 1,
                BEST_DAILY_STREAK: 1,
                LAST_PROCESSED_DATE: report_date,
            },
        )

    if dedupe and current.get(LAST_PROCESSED_DATE) == report_date:
        return None

    updated = current.with_keys(partition_key, row_key)
    if usage.used:
        streak = int(current.get(CURRENT_DAILY_STREAK) or 0) + 1
        updated[TOTAL_DAILY_ACTIVITY_COUNT] = int(current.get(TOTAL_DAILY_ACTIVITY_COUNT) or 0) + 1
        updated[TOTAL_INTERACTION_COUNT] = (
            int(current.get(TOTAL_INTERACTION_COUNT) or 0) + usage.interactions
        )
        updated[CURRENT_DAILY_STREAK] = streak
        updated[BEST_DAILY_STREAK] = max(int(current.get(BEST_DAILY_STREAK) or 0), streak)
    else:
        updated[CURRENT_DAILY_STREAK] = 0
    updated[LAST_PROCESSED_DATE] = report_date
    return updated


def _agent_increment(
    current: Optional[TableEntity],
    partition_key: str,
    row_key: str,
    agent: AgentUsage,
    report_date: str,
    dedupe: bool = False,
) -> Optional[TableEntity]:
    if current is None:
        return TableEntity(
            partition_key,
            row_key,
            {
                TOTAL_DAILY_ACTIVITY_COUNT: 1,
                TOTAL_INTERACTION_COUNT: agent.interactions,
                AGENT_NAME: agent.agent_name,
                LAST_PROCESSED_DATE: report_date,
            },
        )
    if dedupe and current.get(LAST_PROCESSED_DATE) == report_date:
        return None
    updated = current.with_keys(partition_key, row_key)
    updated[TOTAL_DAILY_ACTIVITY_COUNT] = int(current.get(TOTAL_DAILY_ACTIVITY_COUNT) or 0) + 1
    updated[TOTAL_INTERACTION_COUNT] = (
        int(current.get(TOTAL_INTERACTION_COUNT) or 0) + agent.interactions
    )
    updated[LAST_PROCESSED_DATE] = report_date
    return updated


class AggregationEngine:
    """Applies daily usage to the timeframe aggregates."""

    def __init__(
        self,
        store: TableStore,
        pause_state: PauseState,
        settings: Settings,
        ledger: Optional[InactivityLedger] = None,
    ):
        self._store = store
        self._pause_state = pause_state
        self.week_start = settings.week_start
        self.dedupe = settings.dedupe_snapshot_dates
        self._ledger = ledger or InactivityLedger(store, settings.reminder_days)

    # --- Entry points ---

    async def apply_daily_snapshots(
        self,
        snapshots: Sequence[UsageSnapshot],
        encryption: DeterministicEncryptionService,
        email_filter: Optional[EmailListFilter] = None,
    ) -> int:
        """Apply every snapshot directly. Returns the number applied successfully.

        Raises:
            IngestionPausedError: Key rotation is in progress.
        """
        await self._pause_state.ensure_not_paused()
        set_log_context(run_id=uuid.uuid4().hex[:12])

        snapshots = self._filter(snapshots, email_filter)
        processed = 0
        report_dates = set()

        for snapshot in snapshots:
            report_date = snapshot.report_refresh_date
            try:
                encrypted = encryption.encrypt(snapshot.user_principal_name)
                usage = await self.load_daily_usage(encrypted, report_date, snapshot)
                await self._apply_user(encrypted, report_date, usage)
                await self._ledger.record_if_inactive(
                    encrypted, snapshot.last_activity_date, report_date
                )
                processed += 1
                report_dates.add(report_date)
                record_snapshot("processed")
            except Exception:
                # One bad user must not stop the batch
                logger.exception("Failed to apply usage snapshot for %s", report_date)
                record_snapshot("failed")

        if report_dates:
            await record_report_refresh(self._store, max(report_dates), self.week_start)

        logger.info("Applied %d of %d usage snapshots", processed, len(snapshots))
        return processed

    async def queue_daily_snapshots(
        self,
        snapshots: Sequence[UsageSnapshot],
        encryption: DeterministicEncryptionService,
        dispatcher: UserAggregationDispatcher,
        email_filter: Optional[EmailListFilter] = None,
    ) -> int:
        """Record inactivity and refresh tracking, then queue one work item per user.

        Returns:
            Number of messages queued.

        Raises:
            IngestionPausedError: Key rotation is in progress.
        """
        await self._pause_state.ensure_not_paused()
        set_log_context(run_id=uuid.uuid4().hex[:12])

        snapshots = self._filter(snapshots, email_filter)
        by_date: Dict[str, List[str]] = defaultdict(list)

        for snapshot in snapshots:
            report_date = snapshot.report_refresh_date
            try:
                encrypted = encryption.encrypt(snapshot.user_principal_name)
                await self._ledger.record_if_inactive(
                    encrypted, snapshot.last_activity_date, report_date
                )
            except Exception:
                logger.exception("Failed to prepare usage snapshot for %s", report_date)
                record_snapshot("failed")
                continue
            by_date[report_date].append(encrypted)

        queued = 0
        for report_date in sorted(by_date):
            queued += await dispatcher.queue_user_aggregations(by_date[report_date], report_date)

        if by_date:
            await record_report_refresh(self._store, max(by_date), self.week_start)

        logger.info("Queued %d of %d usage snapshots", queued, len(snapshots))
        return queued

    async def process_single_user(self, encrypted_upn: str, report_refresh_date: str):
        """Apply one queued user. Usage for every app comes from the side table counts.

        Raises:
            IngestionPausedError: Key rotation is in progress.
        """
        await self._pause_state.ensure_not_paused()
        usage = await self.load_daily_usage(encrypted_upn, report_refresh_date)
        await self._apply_user(encrypted_upn, report_refresh_date, usage)
        record_snapshot("processed")

    async def apply_agent_totals(self, day: str) -> int:
        """Add one day of agent interactions to the per-agent totals.

        Returns:
            Number of distinct agents updated.
        """
        await self._pause_state.ensure_not_paused()

        start, end = window_range(Timeframe.DAILY, day)
        totals: Dict[str, Tuple[int, str]] = {}
        async for row in iter_entities(
            self._store,
            tables.DAILY_AGENT_AGGREGATES,
            EntityFilter.partition_range(f"{start}-", end),
        ):
            count, name = totals.get(row.row_key, (0, row.get(AGENT_NAME) or ""))
            totals[row.row_key] = (count + int(row.get(TOTAL_INTERACTION_COUNT) or 0), name)

        for timeframe in AGGREGATE_TIMEFRAMES:
            table = AGENT_TOTALS_TABLES[timeframe]
            partition_key = agent_totals_partition_key(
                window_start(timeframe, day, self.week_start)
            )
            for agent_id, (count, name) in totals.items():

                def mutate(current, agent_id=agent_id, count=count, name=name):
                    if current is None:
                        return TableEntity(
                            partition_key,
                            agent_id,
                            {TOTAL_INTERACTION_COUNT: count, AGENT_NAME: name},
                        )
                    updated = current.with_keys(partition_key, agent_id)
                    updated[TOTAL_INTERACTION_COUNT] = (
                        int(current.get(TOTAL_INTERACTION_COUNT) or 0) + count
                    )
                    return updated

                try:
                    await write_with_retry(self._store, table, partition_key, agent_id, mutate)
                except Exception:
                    logger.exception("Failed to update %s totals for agent %s", timeframe.value, agent_id)

        logger.info("Applied agent totals for %d agents on %s", len(totals), day)
        return len(totals)

    # --- Daily usage ---

    async def load_daily_usage(
        self,
        encrypted_upn: str,
        report_date: str,
        snapshot: Optional[UsageSnapshot] = None,
    ) -> Dict[AppType, AppUsage]:
        """Per-app usage for one user and day.

        With a snapshot, native apps use its last-activity dates. Without one,
        every app is judged by its side table count. No side table rows means
        no usage at all.
        """
        rows = await list_entities(
            self._store,
            tables.DAILY_APP_AGGREGATES,
            EntityFilter.partition(daily_partition_key(report_date, encrypted_upn)),
        )
        if not rows:
            return {app: AppUsage() for app in AppType}

        counts: Dict[AppType, int] = defaultdict(int)
        for row in rows:
            try:
                app = AppType(row.row_key)
            except ValueError:
                logger.warning("Ignoring unknown app row %r in daily aggregates", row.row_key)
                continue
            counts[app] += int(row.get(TOTAL_INTERACTION_COUNT) or 0)

        usage: Dict[AppType, AppUsage] = {}
        for app in NATIVE_APPS:
            if snapshot is not None:
                used = snapshot.native_last_activity(app) == report_date
            else:
                used = counts[app] > 0
            usage[app] = AppUsage(used, counts[app])
        for app in COUNT_DERIVED_APPS:
            usage[app] = AppUsage(counts[app] > 0, counts[app])

        usage[AppType.ALL] = AppUsage(any(u.used for u in usage.values()), counts[AppType.ALL])
        return usage

    async def load_daily_agents(self, encrypted_upn: str, report_date: str) -> List[AgentUsage]:
        rows = await list_entities(
            self._store,
            tables.DAILY_AGENT_AGGREGATES,
            EntityFilter.partition(daily_partition_key(report_date, encrypted_upn)),
        )
        return [
            AgentUsage(
                agent_id=row.row_key,
                agent_name=row.get(AGENT_NAME) or "",
                interactions=int(row.get(TOTAL_INTERACTION_COUNT) or 0),
            )
            for row in rows
        ]

    # --- Aggregate updates ---

    async def _apply_user(
        self, encrypted_upn: str, report_date: str, usage: Dict[AppType, AppUsage]
    ):
        agents = await self.load_daily_agents(encrypted_upn, report_date)

        for timeframe in AGGREGATE_TIMEFRAMES:
            start = window_start(timeframe, report_date, self.week_start)
            for app, app_usage in usage.items():
                await self._update_usage(timeframe, start, app, encrypted_upn, app_usage, report_date)
            for agent in agents:
                await self._update_agent(timeframe, start, agent, encrypted_upn, report_date)

    async def _update_usage(
        self,
        timeframe: Timeframe,
        start: Optional[str],
        app: AppType,
        encrypted_upn: str,
        usage: AppUsage,
        report_date: str,
    ):
        table = USAGE_TABLES[timeframe]
        partition_key = timeframe_partition_key(start, app.value)
        outcome = {}

        def mutate(current):
            desired = advance_streak(
                current, partition_key, encrypted_upn, usage, report_date, self.dedupe
            )
            if desired is None:
                outcome["value"] = "skipped"
            elif current is None:
                outcome["value"] = "created"
            else:
                outcome["value"] = "updated" if usage.used else "reset"
            return desired

        await write_with_retry(self._store, table, partition_key, encrypted_upn, mutate)
        record_aggregate_update(timeframe.value, outcome.get("value", "skipped"))

    async def _update_agent(
        self,
        timeframe: Timeframe,
        start: Optional[str],
        agent: AgentUsage,
        encrypted_upn: str,
        report_date: str,
    ):
        table = AGENT_BY_USER_TABLES[timeframe]
        partition_key = agent_by_user_partition_key(start, agent.agent_id)
        await write_with_retry(
            self._store,
            table,
            partition_key,
            encrypted_upn,
            lambda current: _agent_increment(
                current, partition_key, encrypted_upn, agent, report_date, self.dedupe
            ),
        )

    @staticmethod
    def _filter(
        snapshots: Sequence[UsageSnapshot], email_filter: Optional[EmailListFilter]
    ) -> Sequence[UsageSnapshot]:
        if email_filter is None:
            return snapshots
        kept = email_filter.apply(snapshots, key=lambda s: s.user_principal_name)
        if len(kept) != len(snapshots):
            logger.info("Email list removed %d of %d snapshots", len(snapshots) - len(kept), len(snapshots))
        return kept
