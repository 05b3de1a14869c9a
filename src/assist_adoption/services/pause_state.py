"""Ingestion pause flag.

A single entity at (Webhook, Pause) in the WebhookFunctionState table.
Key rotation sets it for the duration of a rotation. Every ingestion entry
point reads it before writing.
"""

import logging

from ..storage import tables
from ..storage.base import TableEntity, TableStore, UpdateMode

logger = logging.getLogger(__name__)

PAUSE_PARTITION_KEY = "Webhook"
PAUSE_ROW_KEY = "Pause"
IS_PAUSED = "IsPaused"


class IngestionPausedError(Exception):
    """Ingestion is paused while identifiers are being re-keyed."""

    def __init__(self, message: str = "Ingestion is paused for key rotation"):
        super().__init__(message)


class PauseState:
    """Reads and writes the ingestion pause flag."""

    def __init__(self, store: TableStore):
        self._store = store

    async def is_paused(self) -> bool:
        # A missing entity means ingestion was never paused
        entity = await self._store.get_entity(
            tables.WEBHOOK_STATE, PAUSE_PARTITION_KEY, PAUSE_ROW_KEY
        )
        if entity is None:
            return False
        return bool(entity.get(IS_PAUSED, False))

    async def set_paused(self, paused: bool):
        await self._store.upsert_entity(
            tables.WEBHOOK_STATE,
            TableEntity(PAUSE_PARTITION_KEY, PAUSE_ROW_KEY, {IS_PAUSED: paused}),
            mode=UpdateMode.MERGE,
        )
        logger.info("Ingestion %s", "paused" if paused else "resumed")

    async def ensure_not_paused(self):
        """Raise IngestionPausedError when the flag is set."""
        if await self.is_paused():
            raise IngestionPausedError()
