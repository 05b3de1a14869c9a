"""Ingestion of classified interactions into the daily side tables.

For each (user, event date) the ingestor adds to:
  - one app row per classified bucket, plus a WebPlugin row for web search
    and an All row carrying the user's total for the batch
  - one agent row per agent id
  - the unhandled host counter for tags it cannot classify
"""

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from ..models.usage import (
    AGENT_NAME,
    TOTAL_DAILY_ACTIVITY_COUNT,
    TOTAL_INTERACTION_COUNT,
    AppType,
    InteractionRecord,
)
from ..security.encryption import DeterministicEncryptionService
from ..storage import tables
from ..storage.base import TableEntity, TableStore
from ..storage.exceptions import StoreError
from ..storage.keys import daily_partition_key
from ..storage.retry import write_with_retry
from .classification import UnhandledHostCounter, classify, uses_web_search
from .email_list import EmailListFilter
from .pause_state import PauseState

logger = logging.getLogger(__name__)


@dataclass
class IngestionResult:
    """Counts from one ingest call."""

    records: int = 0
    filtered: int = 0
    classified: int = 0
    unhandled: int = 0
    users: int = 0
    errors: int = 0


def _daily_counter(
    partition_key: str, row_key: str, count: int, extra: Optional[Dict] = None
):
    def mutate(current: Optional[TableEntity]) -> TableEntity:
        if current is None:
            properties = {TOTAL_DAILY_ACTIVITY_COUNT: 1, TOTAL_INTERACTION_COUNT: count}
            properties.update(extra or {})
            return TableEntity(partition_key, row_key, properties)
        updated = current.with_keys(partition_key, row_key)
        updated[TOTAL_INTERACTION_COUNT] = int(current.get(TOTAL_INTERACTION_COUNT, 0)) + count
        return updated

    return mutate


class InteractionIngestor:
    """Writes interaction counts to the daily app and agent side tables."""

    def __init__(self, store: TableStore, pause_state: PauseState):
        self._store = store
        self._pause_state = pause_state
        self._unhandled = UnhandledHostCounter(store)

    async def ingest(
        self,
        records: Sequence[InteractionRecord],
        encryption: DeterministicEncryptionService,
        email_filter: Optional[EmailListFilter] = None,
    ) -> IngestionResult:
        """Ingest a batch of interactions.

        Raises:
            IngestionPausedError: Key rotation is in progress.
        """
        await self._pause_state.ensure_not_paused()

        result = IngestionResult(records=len(records))
        if email_filter is not None:
            kept = email_filter.apply(records, key=lambda r: r.user_id)
            result.filtered = len(records) - len(kept)
            records = kept

        groups: Dict[Tuple[str, str], List[InteractionRecord]] = defaultdict(list)
        for record in records:
            groups[(record.user_id, record.event_date)].append(record)

        for (user_id, event_date), user_records in groups.items():
            encrypted = encryption.encrypt(user_id)
            try:
                classified, unhandled = await self._ingest_user_day(
                    encrypted, event_date, user_records
                )
                result.classified += classified
                result.unhandled += unhandled
                result.users += 1
            except StoreError:
                logger.exception("Failed to ingest interactions for one user on %s", event_date)
                result.errors += 1

        logger.info(
            "Ingested %d interactions for %d user-days (%d unhandled, %d filtered, %d errors)",
            result.records - result.filtered,
            result.users,
            result.unhandled,
            result.filtered,
            result.errors,
        )
        return result

    async def _ingest_user_day(
        self, encrypted: str, event_date: str, records: List[InteractionRecord]
    ) -> Tuple[int, int]:
        partition_key = daily_partition_key(event_date, encrypted)

        app_counts: Counter = Counter()
        unknown_hosts: Counter = Counter()
        for record in records:
            app = classify(record)
            if app is None:
                unknown_hosts[record.app_host] += 1
            else:
                app_counts[app] += 1

        web_searches = sum(1 for r in records if uses_web_search(r))
        if web_searches:
            app_counts[AppType.WEB_PLUGIN] += web_searches
        app_counts[AppType.ALL] = len(records)

        for app, count in app_counts.items():
            await write_with_retry(
                self._store,
                tables.DAILY_APP_AGGREGATES,
                partition_key,
                app.value,
                _daily_counter(partition_key, app.value, count),
            )

        for app_host, count in unknown_hosts.items():
            await self._unhandled.record(app_host, count)

        agent_counts: Counter = Counter()
        agent_names: Dict[str, Optional[str]] = {}
        for record in records:
            if record.agent_id:
                agent_counts[record.agent_id] += 1
                agent_names.setdefault(record.agent_id, record.agent_name)

        for agent_id, count in agent_counts.items():
            await write_with_retry(
                self._store,
                tables.DAILY_AGENT_AGGREGATES,
                partition_key,
                agent_id,
                _daily_counter(
                    partition_key, agent_id, count, {AGENT_NAME: agent_names[agent_id] or ""}
                ),
            )

        classified = sum(1 for r in records if classify(r) is not None)
        return classified, sum(unknown_hosts.values())
