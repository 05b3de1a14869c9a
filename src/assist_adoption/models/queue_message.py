"""Durable work queue message model."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class QueueMessageRecord(Base, TimestampMixin):
    """A message on a named queue.

    A message is invisible to receivers until visible_at. Receiving bumps
    dequeue_count and hands out a fresh pop_receipt that delete must present.
    """

    __tablename__ = "queue_messages"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    queue_name: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    body: Mapped[str] = mapped_column(Text, nullable=False)

    # Naive UTC
    visible_at: Mapped[datetime] = mapped_column(
        DateTime(), nullable=False, index=True
    )
    dequeue_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pop_receipt: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<QueueMessageRecord(id='{self.id}', queue='{self.queue_name}', "
            f"dequeue_count={self.dequeue_count})>"
        )


class QueueRecord(Base, TimestampMixin):
    """Registry of created queues."""

    __tablename__ = "queues"

    name: Mapped[str] = mapped_column(String(128), primary_key=True)
