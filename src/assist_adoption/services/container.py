"""Wiring of the services the HTTP surface and the worker share."""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from ..config import Settings
from ..security.encryption import DeterministicEncryptionService
from ..security.secrets import SecretProvider, SettingsSecretProvider
from ..storage.base import TableStore
from ..storage.sql import SqlTableStore
from .aggregation import AggregationEngine
from .email_list import EmailListCache, EmailListFilter, HttpEmailListLoader, build_email_filter
from .inactivity import InactivityLedger
from .interactions import InteractionIngestor
from .key_rotation import KeyRotationController
from .pause_state import PauseState
from .queue import AggregationQueueDispatcher, AggregationWorker, SqlWorkQueue


@dataclass
class AppServices:
    settings: Settings
    store: TableStore
    secrets: SecretProvider
    pause_state: PauseState
    engine: AggregationEngine
    ingestor: InteractionIngestor
    queue: SqlWorkQueue
    dispatcher: AggregationQueueDispatcher
    worker: AggregationWorker
    rotation: KeyRotationController
    email_cache: Optional[EmailListCache] = None

    async def encryption(self) -> DeterministicEncryptionService:
        """Encryption service for the currently active key."""
        return await DeterministicEncryptionService.create(self.settings, self.secrets)

    async def email_filter(self) -> Optional[EmailListFilter]:
        return await build_email_filter(self.email_cache, self.settings.is_email_list_exclusive)


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker,
    secrets: Optional[SecretProvider] = None,
) -> AppServices:
    store = SqlTableStore(session_factory)
    secrets = secrets or SettingsSecretProvider(settings)
    pause_state = PauseState(store)
    engine = AggregationEngine(
        store, pause_state, settings, InactivityLedger(store, settings.reminder_days)
    )
    queue = SqlWorkQueue(session_factory, settings.user_aggregations_queue_name)

    email_cache = None
    if settings.email_list_url:
        email_cache = EmailListCache(
            HttpEmailListLoader(settings.email_list_url, field=settings.email_list_field),
            ttl=timedelta(minutes=settings.email_list_cache_minutes),
        )

    return AppServices(
        settings=settings,
        store=store,
        secrets=secrets,
        pause_state=pause_state,
        engine=engine,
        ingestor=InteractionIngestor(store, pause_state),
        queue=queue,
        dispatcher=AggregationQueueDispatcher(queue),
        worker=AggregationWorker(queue, engine, pause_state, settings),
        rotation=KeyRotationController(store, pause_state, secrets, settings),
        email_cache=email_cache,
    )
