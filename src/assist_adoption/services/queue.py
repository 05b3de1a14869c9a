"""Per-user aggregation work queue.

SqlWorkQueue is a durable queue with visibility timeouts: a received
message stays hidden for the timeout and reappears unless deleted, so a
crashed worker's message is redelivered. Messages failing too many times
move to "{queue}-poison".
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..config import Settings
from ..models.queue_message import QueueMessageRecord, QueueRecord
from ..models.usage import UserAggregationMessage, parse_date
from ..observability.logging import log_context
from ..observability.metrics import record_queue_message
from .aggregation import AggregationEngine
from .pause_state import IngestionPausedError, PauseState

logger = logging.getLogger(__name__)

POISON_SUFFIX = "-poison"
PROGRESS_LOG_INTERVAL = 1000


def _utcnow() -> datetime:
    # Stored naive
    return datetime.now(timezone.utc).replace(tzinfo=None)


class QueueError(Exception):
    """Queue operation failed."""

    pass


@dataclass
class QueueMessage:
    """A received message. pop_receipt must be presented to delete it."""

    id: str
    body: str
    dequeue_count: int
    pop_receipt: str


class SqlWorkQueue:
    """Named durable queue over the queue_messages table."""

    def __init__(self, session_factory: async_sessionmaker, name: str):
        self._session_factory = session_factory
        self.name = name

    @property
    def poison_name(self) -> str:
        return f"{self.name}{POISON_SUFFIX}"

    async def create_if_not_exists(self):
        async with self._session_factory() as session:
            async with session.begin():
                existing = await session.get(QueueRecord, self.name)
                if existing is None:
                    session.add(QueueRecord(name=self.name))
                    logger.info("Created queue %s", self.name)

    async def send_message(self, body: str, delay_seconds: float = 0) -> str:
        message_id = str(uuid.uuid4())
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    QueueMessageRecord(
                        id=message_id,
                        queue_name=self.name,
                        body=body,
                        visible_at=_utcnow() + timedelta(seconds=delay_seconds),
                        dequeue_count=0,
                    )
                )
        return message_id

    async def receive_messages(
        self, max_messages: int = 16, visibility_timeout: float = 300
    ) -> List[QueueMessage]:
        """Claim up to max_messages visible messages and hide them for visibility_timeout."""
        now = _utcnow()
        hidden_until = now + timedelta(seconds=visibility_timeout)
        received: List[QueueMessage] = []

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(QueueMessageRecord)
                    .where(
                        QueueMessageRecord.queue_name == self.name,
                        QueueMessageRecord.visible_at <= now,
                    )
                    .order_by(QueueMessageRecord.visible_at, QueueMessageRecord.id)
                    .limit(max_messages)
                )
                candidates = list(result.scalars().all())

                for record in candidates:
                    pop_receipt = str(uuid.uuid4())
                    claimed = await session.execute(
                        update(QueueMessageRecord)
                        .where(
                            QueueMessageRecord.id == record.id,
                            QueueMessageRecord.dequeue_count == record.dequeue_count,
                        )
                        .values(
                            visible_at=hidden_until,
                            dequeue_count=record.dequeue_count + 1,
                            pop_receipt=pop_receipt,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    # Another receiver claimed it first
                    if claimed.rowcount == 0:
                        continue
                    received.append(
                        QueueMessage(
                            id=record.id,
                            body=record.body,
                            dequeue_count=record.dequeue_count + 1,
                            pop_receipt=pop_receipt,
                        )
                    )

        return received

    async def delete_message(self, message_id: str, pop_receipt: str):
        """Delete a received message.

        Raises:
            QueueError: The message is gone or was received again since.
        """
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(QueueMessageRecord)
                    .where(
                        QueueMessageRecord.id == message_id,
                        QueueMessageRecord.pop_receipt == pop_receipt,
                    )
                    .execution_options(synchronize_session=False)
                )
        if result.rowcount == 0:
            raise QueueError(f"Message {message_id} not found or receipt expired")

    async def move_to_poison(self, message: QueueMessage):
        """Copy a message to the poison queue and delete it here."""
        poison = SqlWorkQueue(self._session_factory, self.poison_name)
        await poison.create_if_not_exists()
        await poison.send_message(message.body)
        await self.delete_message(message.id, message.pop_receipt)
        record_queue_message("poisoned")
        logger.warning(
            "Moved message %s to %s after %d deliveries",
            message.id,
            self.poison_name,
            message.dequeue_count,
        )

    async def approximate_message_count(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(QueueMessageRecord)
                .where(QueueMessageRecord.queue_name == self.name)
            )
            return int(result.scalar_one())


class AggregationQueueDispatcher:
    """Fans out one aggregation work item per user."""

    def __init__(self, queue: SqlWorkQueue):
        self._queue = queue

    async def queue_user_aggregations(
        self, encrypted_upns: Sequence[str], report_refresh_date: str
    ) -> int:
        """Send one message per identifier. Returns the number sent.

        Raises:
            ValueError: report_refresh_date is empty or not yyyy-MM-dd.
        """
        if not report_refresh_date:
            raise ValueError("report_refresh_date is required")
        parse_date(report_refresh_date)

        await self._queue.create_if_not_exists()

        sent = 0
        for encrypted_upn in encrypted_upns:
            if not encrypted_upn:
                logger.warning("Skipping empty identifier for %s", report_refresh_date)
                continue

            message = UserAggregationMessage(
                encrypted_upn=encrypted_upn, report_refresh_date=report_refresh_date
            )
            await self._queue.send_message(message.to_json())
            sent += 1

            if sent % PROGRESS_LOG_INTERVAL == 0:
                logger.info("Queued %d user aggregations so far", sent)

        record_queue_message("sent", sent)
        logger.info(
            "Queued %d user aggregations for %s on %s", sent, report_refresh_date, self._queue.name
        )
        return sent


class AggregationWorker:
    """Consumes user aggregation messages and applies them."""

    def __init__(
        self,
        queue: SqlWorkQueue,
        engine: AggregationEngine,
        pause_state: PauseState,
        settings: Settings,
    ):
        self._queue = queue
        self._engine = engine
        self._pause_state = pause_state
        self.batch_size = settings.queue_batch_size
        self.visibility_timeout = settings.queue_visibility_timeout_seconds
        self.max_dequeue_count = settings.queue_max_dequeue_count
        self.poll_interval = settings.queue_poll_interval_seconds

    async def run_once(self) -> int:
        """Receive and handle one batch. Returns the number of messages completed."""
        if await self._pause_state.is_paused():
            logger.debug("Ingestion paused, not receiving")
            return 0

        messages = await self._queue.receive_messages(self.batch_size, self.visibility_timeout)
        completed = 0

        for message in messages:
            with log_context(message_id=message.id):
                try:
                    if await self._handle(message):
                        completed += 1
                except IngestionPausedError:
                    # Left hidden, it reappears after the visibility timeout
                    logger.info("Ingestion paused mid-batch, leaving remaining messages")
                    break

        return completed

    async def _handle(self, message: QueueMessage) -> bool:
        """Process one delivery. True when the work item completed and was deleted."""
        record_queue_message("received")

        if message.dequeue_count > self.max_dequeue_count:
            await self._queue.move_to_poison(message)
            return False

        try:
            work = UserAggregationMessage.from_json(message.body)
        except ValueError:
            logger.error("Undecodable aggregation message %s", message.id)
            await self._queue.move_to_poison(message)
            return False

        try:
            with log_context(report_date=work.report_refresh_date):
                await self._engine.process_single_user(
                    work.encrypted_upn, work.report_refresh_date
                )
        except IngestionPausedError:
            raise
        except Exception:
            logger.exception("Aggregation message %s failed", message.id)
            record_queue_message("failed")
            if message.dequeue_count >= self.max_dequeue_count:
                await self._queue.move_to_poison(message)
            return False

        await self._queue.delete_message(message.id, message.pop_receipt)
        record_queue_message("completed")
        return True

    async def run(self, stop_event: asyncio.Event):
        """Poll until stop_event is set. Sleeps only when a poll finds nothing."""
        logger.info("Aggregation worker started on %s", self._queue.name)
        while not stop_event.is_set():
            try:
                completed = await self.run_once()
            except Exception:
                logger.exception("Aggregation worker poll failed")
                completed = 0

            if completed:
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Aggregation worker stopped")
