"""Database models for Assist Adoption."""

from .base import Base
from .queue_message import QueueMessageRecord, QueueRecord
from .table_entity import TableEntityRecord

__all__ = [
    "Base",
    "QueueMessageRecord",
    "QueueRecord",
    "TableEntityRecord",
]
