"""Online re-keying of identifier-bearing tables.

Rotation re-encrypts every stored identifier from the active key to a new
key while the tables stay live. Keys cannot be changed in place, so each
row is copied under its new key and the old row deleted afterwards. Three
key shapes are handled:

  - partition-key: pk "{yyyy-MM-dd}-{enc}" (daily side tables), scoped to
    the trailing days
  - whole-partition-key: pk "{enc}" (inactivity ledger), unscoped
  - row-key: rk "{enc}" (timeframe aggregates), scoped to the active
    weekly or monthly window, all-time unscoped

A rotation is restartable. Scopes that finished cleanly are recorded in
KeyRotationProgress under the old and new key fingerprints and skipped next
time.
Rows already carrying a new-key identifier are skipped, not rewritten.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from ..config import Settings
from ..models.usage import Timeframe
from ..observability.logging import log_context
from ..observability.metrics import record_rotation_rows
from ..security.encryption import DecryptionError, DeterministicEncryptionService
from ..security.secrets import SecretProvider
from ..storage import tables
from ..storage.base import (
    MAX_BATCH_SIZE,
    EntityFilter,
    TableEntity,
    TableStore,
    TransactionAction,
    TransactionActionType,
)
from ..storage.exceptions import AlreadyExistsError, NotFoundError, StoreError
from ..storage.keys import DATE_PREFIX_LENGTH, split_daily_partition_key
from ..storage.pagination import iter_pages
from .pause_state import PauseState
from .report_refresh import get_window_start
from .windows import trailing_days, window_range

logger = logging.getLogger(__name__)

ALL_SCOPE = "all"

Key = Tuple[str, str]


@dataclass
class ScopeReport:
    """Counts for one day or window of one table."""

    scope: str
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    previously_completed: bool = False


@dataclass
class RotationReport:
    """Outcome of rotating one table."""

    table: str
    shape: str
    scopes: Dict[str, ScopeReport] = field(default_factory=OrderedDict)

    def scope(self, name: str) -> ScopeReport:
        if name not in self.scopes:
            self.scopes[name] = ScopeReport(scope=name)
        return self.scopes[name]

    @property
    def processed(self) -> int:
        return sum(s.processed for s in self.scopes.values())

    @property
    def skipped(self) -> int:
        return sum(s.skipped for s in self.scopes.values())

    @property
    def errors(self) -> int:
        return sum(s.errors for s in self.scopes.values())

    def to_dict(self) -> dict:
        return {
            "table": self.table,
            "shape": self.shape,
            "processed": self.processed,
            "skipped": self.skipped,
            "errors": self.errors,
            "scopes": [
                {
                    "scope": s.scope,
                    "processed": s.processed,
                    "skipped": s.skipped,
                    "errors": s.errors,
                    "previouslyCompleted": s.previously_completed,
                }
                for s in self.scopes.values()
            ],
        }


@dataclass
class _Rekey:
    original: TableEntity
    replacement: TableEntity

    @property
    def new_key(self) -> Key:
        return self.replacement.partition_key, self.replacement.row_key


class RotationProgress:
    """Completion markers for rotation scopes, keyed by the source and target key fingerprints."""

    def __init__(self, store: TableStore, old_fingerprint: str, new_fingerprint: str):
        self._store = store
        self.fingerprint = f"{old_fingerprint}-{new_fingerprint}"

    @staticmethod
    def _row_key(table: str, scope: str) -> str:
        return f"{table}:{scope}"

    async def is_complete(self, table: str, scope: str) -> bool:
        entity = await self._store.get_entity(
            tables.KEY_ROTATION_PROGRESS, self.fingerprint, self._row_key(table, scope)
        )
        return entity is not None

    async def mark_complete(self, table: str, scope: ScopeReport):
        await self._store.upsert_entity(
            tables.KEY_ROTATION_PROGRESS,
            TableEntity(
                self.fingerprint,
                self._row_key(table, scope.scope),
                {
                    "Table": table,
                    "Scope": scope.scope,
                    "Processed": scope.processed,
                    "Skipped": scope.skipped,
                    "CompletedAt": datetime.now(timezone.utc).isoformat(),
                },
            ),
        )


class KeyRotationProcessor:
    """Rewrites identifier keys from one encryption key to another."""

    def __init__(
        self,
        store: TableStore,
        old: DeterministicEncryptionService,
        new: DeterministicEncryptionService,
        settings: Settings,
        progress: Optional[RotationProgress] = None,
        today: Optional[date] = None,
    ):
        self._store = store
        self._old = old
        self._new = new
        self._progress = progress or RotationProgress(store, old.fingerprint, new.fingerprint)
        self._today = today or datetime.now(timezone.utc).date()

        self.window_days = settings.rotation_daily_window_days
        self.page_size = settings.rotation_page_size
        self.partition_chunk_size = settings.rotation_partition_chunk_size
        self.row_chunk_size = min(settings.rotation_row_chunk_size, MAX_BATCH_SIZE)
        self.batch_delay = settings.rotation_batch_delay_seconds
        self.page_delay = settings.rotation_page_delay_seconds

        # Keys created by this processor, per table
        self._written: Dict[str, Set[Key]] = {}

    # --- Entry points ---

    async def rotate_all(self) -> List[RotationReport]:
        """Rotate every identifier-bearing table. Per-table failures are reported, not raised."""
        reports = []
        for table in tables.DATE_PREFIXED_PARTITION_TABLES:
            reports.append(await self._guarded(table, "partition_key", self.rotate_partition_key_table))
        for table in tables.WHOLE_PARTITION_TABLES:
            reports.append(
                await self._guarded(table, "whole_partition_key", self.rotate_whole_partition_key_table)
            )
        for table, timeframe in tables.ROW_KEY_TABLES:
            reports.append(
                await self._guarded(
                    table,
                    "row_key",
                    lambda t, tf=Timeframe(timeframe): self.rotate_row_key_table(t, tf),
                )
            )

        logger.info(
            "Key rotation finished: %d processed, %d skipped, %d errors across %d tables",
            sum(r.processed for r in reports),
            sum(r.skipped for r in reports),
            sum(r.errors for r in reports),
            len(reports),
        )
        return reports

    async def rotate_partition_key_table(self, table: str) -> RotationReport:
        """Rotate "{day}-{enc}" partition keys for today back through the trailing window."""
        report = RotationReport(table=table, shape="partition_key")
        for day in trailing_days(self._today, self.window_days):
            start, end = window_range(Timeframe.DAILY, day)
            await self._rotate_scope(
                report,
                table,
                day,
                EntityFilter.partition_range(start, end),
                self._plan_partition_key,
                self._apply_partition_key_chunks,
            )
        return report

    async def rotate_whole_partition_key_table(self, table: str) -> RotationReport:
        """Rotate tables whose partition key is the identifier itself."""
        report = RotationReport(table=table, shape="whole_partition_key")
        await self._rotate_scope(
            report,
            table,
            ALL_SCOPE,
            None,
            self._plan_whole_partition_key,
            self._apply_partition_key_chunks,
        )
        return report

    async def rotate_row_key_table(self, table: str, timeframe: Timeframe) -> RotationReport:
        """Rotate identifier row keys within the active window of timeframe."""
        report = RotationReport(table=table, shape="row_key")

        if timeframe == Timeframe.ALL_TIME:
            scope, entity_filter = Timeframe.ALL_TIME.value, None
        else:
            start = await get_window_start(self._store, timeframe)
            if start is None:
                logger.warning("No %s report window recorded, nothing to rotate in %s", timeframe.value, table)
                return report
            scope = start
            entity_filter = EntityFilter.partition_range(*window_range(timeframe, start))

        await self._rotate_scope(
            report,
            table,
            scope,
            entity_filter,
            self._plan_row_key,
            self._apply_row_key_chunks,
        )
        return report

    # --- Scope loop ---

    async def _guarded(self, table: str, shape: str, rotate: Callable) -> RotationReport:
        try:
            with log_context(table=table):
                return await rotate(table)
        except Exception:
            logger.exception("Key rotation of %s failed", table)
            report = RotationReport(table=table, shape=shape)
            report.scope(ALL_SCOPE).errors += 1
            record_rotation_rows(table, "error")
            return report

    async def _rotate_scope(
        self,
        report: RotationReport,
        table: str,
        scope: str,
        entity_filter: Optional[EntityFilter],
        plan: Callable[[TableEntity], Optional[_Rekey]],
        apply: Callable,
    ):
        scope_report = report.scope(scope)
        if await self._progress.is_complete(table, scope):
            scope_report.previously_completed = True
            logger.info("Skipping %s scope %s, already rotated", table, scope)
            return

        written = self._written.setdefault(table, set())

        try:
            with log_context(table=table, scope=scope):
                await self._scan_scope(
                    table, scope, entity_filter, plan, apply, scope_report, written
                )
        except StoreError:
            # Reading the scope failed, rows not yet reached stay for the next run
            logger.exception("Scanning %s scope %s failed", table, scope)
            scope_report.errors += 1
            record_rotation_rows(table, "error")

        if scope_report.errors == 0:
            await self._progress.mark_complete(table, scope_report)

    async def _scan_scope(
        self,
        table: str,
        scope: str,
        entity_filter: Optional[EntityFilter],
        plan: Callable[[TableEntity], Optional[_Rekey]],
        apply: Callable,
        scope_report: ScopeReport,
        written: Set[Key],
    ):
        async for page in iter_pages(self._store, table, entity_filter, page_size=self.page_size):
            pending: List[_Rekey] = []
            for entity in page.entities:
                if (entity.partition_key, entity.row_key) in written:
                    # Rotated earlier in this run and met again further along the scan
                    continue
                try:
                    rekey = plan(entity)
                except (DecryptionError, ValueError) as e:
                    logger.error(
                        "Cannot rotate a row of %s in scope %s: %s", table, scope, e
                    )
                    scope_report.errors += 1
                    record_rotation_rows(table, "error")
                    continue
                if rekey is None:
                    scope_report.skipped += 1
                    record_rotation_rows(table, "skipped")
                    continue
                pending.append(rekey)

            if pending:
                await apply(table, pending, scope_report, written)

            logger.info(
                "Rotated page of %s scope %s: %d processed, %d skipped, %d errors so far",
                table,
                scope,
                scope_report.processed,
                scope_report.skipped,
                scope_report.errors,
            )
            if len(page) >= self.page_size:
                await asyncio.sleep(self.page_delay)

    # --- Planning ---

    def _rekey_identifier(self, ciphertext: str) -> Optional[str]:
        """New-key ciphertext for an old-key one, or None when already under the new key."""
        plaintext = self._old.try_decrypt(ciphertext)
        if plaintext is None:
            if self._new.try_decrypt(ciphertext) is not None:
                return None
            raise DecryptionError("Identifier does not decrypt under the old or the new key")
        return self._new.encrypt(plaintext)

    def _plan_partition_key(self, entity: TableEntity) -> Optional[_Rekey]:
        _, encrypted = split_daily_partition_key(entity.partition_key)
        rekeyed = self._rekey_identifier(encrypted)
        if rekeyed is None:
            return None
        new_pk = f"{entity.partition_key[:DATE_PREFIX_LENGTH]}{rekeyed}"
        return _Rekey(entity, entity.with_keys(new_pk, entity.row_key))

    def _plan_whole_partition_key(self, entity: TableEntity) -> Optional[_Rekey]:
        rekeyed = self._rekey_identifier(entity.partition_key)
        if rekeyed is None:
            return None
        return _Rekey(entity, entity.with_keys(rekeyed, entity.row_key))

    def _plan_row_key(self, entity: TableEntity) -> Optional[_Rekey]:
        rekeyed = self._rekey_identifier(entity.row_key)
        if rekeyed is None:
            return None
        return _Rekey(entity, entity.with_keys(entity.partition_key, rekeyed))

    # --- Applying ---

    async def _apply_partition_key_chunks(
        self, table: str, pending: List[_Rekey], report: ScopeReport, written: Set[Key]
    ):
        for chunk in _chunks(pending, self.partition_chunk_size):
            await self._apply_partition_key_chunk(table, chunk, report, written)
            await asyncio.sleep(self.batch_delay)

    async def _apply_partition_key_chunk(
        self, table: str, chunk: List[_Rekey], report: ScopeReport, written: Set[Key]
    ):
        # New rows land in other partitions than the old ones, so only the adds batch
        try:
            by_partition: Dict[str, List[_Rekey]] = OrderedDict()
            for item in chunk:
                by_partition.setdefault(item.replacement.partition_key, []).append(item)
            for items in by_partition.values():
                for batch in _chunks(items, MAX_BATCH_SIZE):
                    await self._store.submit_transaction(
                        table,
                        [TransactionAction(TransactionActionType.ADD, i.replacement) for i in batch],
                    )
                    written.update(i.new_key for i in batch)
        except StoreError as e:
            logger.warning("Batch add on %s failed, falling back to single rows: %s", table, e)
            await self._apply_individually(table, chunk, report, written)
            return

        for item in chunk:
            await self._delete_original(table, item, report)

    async def _apply_row_key_chunks(
        self, table: str, pending: List[_Rekey], report: ScopeReport, written: Set[Key]
    ):
        by_partition: Dict[str, List[_Rekey]] = OrderedDict()
        for item in pending:
            by_partition.setdefault(item.original.partition_key, []).append(item)

        for items in by_partition.values():
            for chunk in _chunks(items, self.row_chunk_size):
                await self._apply_row_key_chunk(table, chunk, report, written)
                await asyncio.sleep(self.batch_delay)

    async def _apply_row_key_chunk(
        self, table: str, chunk: List[_Rekey], report: ScopeReport, written: Set[Key]
    ):
        # Same partition throughout, so adds and deletes can both batch
        try:
            await self._store.submit_transaction(
                table, [TransactionAction(TransactionActionType.ADD, i.replacement) for i in chunk]
            )
            written.update(i.new_key for i in chunk)
            await self._store.submit_transaction(
                table, [TransactionAction(TransactionActionType.DELETE, i.original) for i in chunk]
            )
        except StoreError as e:
            logger.warning("Batch rotation on %s failed, falling back to single rows: %s", table, e)
            await self._apply_individually(table, chunk, report, written)
            return

        report.processed += len(chunk)
        record_rotation_rows(table, "processed", len(chunk))

    async def _apply_individually(
        self, table: str, chunk: Iterable[_Rekey], report: ScopeReport, written: Set[Key]
    ):
        for item in chunk:
            try:
                if item.new_key not in written:
                    await self._store.add_entity(table, item.replacement)
                    written.add(item.new_key)
            except AlreadyExistsError:
                logger.warning("Rotated key already exists in %s, leaving the old row in place", table)
                report.errors += 1
                record_rotation_rows(table, "error")
                continue
            except StoreError:
                logger.exception("Failed to add rotated row to %s", table)
                report.errors += 1
                record_rotation_rows(table, "error")
                continue

            await self._delete_original(table, item, report)

    async def _delete_original(self, table: str, item: _Rekey, report: ScopeReport):
        try:
            await self._store.delete_entity(
                table, item.original.partition_key, item.original.row_key
            )
        except NotFoundError:
            # Someone else already removed it, the row is rotated either way
            logger.warning("Old row in %s was already deleted", table)
        except StoreError:
            logger.exception("Failed to delete old row from %s", table)
            report.errors += 1
            record_rotation_rows(table, "error")
            return
        report.processed += 1
        record_rotation_rows(table, "processed")


def _chunks(items: List, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class KeyRotationController:
    """prepare / confirm protocol around KeyRotationProcessor.

    prepare validates the new key, pauses ingestion and rotates every table,
    leaving ingestion paused. The operator then switches the active key and
    calls confirm to resume ingestion.
    """

    def __init__(
        self,
        store: TableStore,
        pause_state: PauseState,
        secrets: SecretProvider,
        settings: Settings,
    ):
        self._store = store
        self._pause_state = pause_state
        self._secrets = secrets
        self._settings = settings

    async def prepare(
        self, new_key_secret_name: str, today: Optional[date] = None
    ) -> List[RotationReport]:
        """Rotate every table to the named key.

        Raises:
            ValueError: The key name is empty or names the active key.
            SecretNotFoundError: No secret with that name.
        """
        if not new_key_secret_name or not new_key_secret_name.strip():
            raise ValueError("newKeySecretName is required")

        old = await DeterministicEncryptionService.create(self._settings, self._secrets)
        new = await DeterministicEncryptionService.create_for_key_rotation(
            self._secrets, new_key_secret_name.strip()
        )
        if old.fingerprint == new.fingerprint:
            raise ValueError("New key is the same as the active key")

        await self._pause_state.set_paused(True)
        logger.info("Key rotation prepared, rotating to key %s", new.fingerprint)

        processor = KeyRotationProcessor(self._store, old, new, self._settings, today=today)
        return await processor.rotate_all()

    async def confirm(self):
        await self._pause_state.set_paused(False)
        logger.info("Key rotation confirmed")
