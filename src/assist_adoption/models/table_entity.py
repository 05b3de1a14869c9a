"""Storage row backing every logical table of the SQL table store."""

from typing import Any, Dict

from sqlalchemy import JSON, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class TableEntityRecord(Base, TimestampMixin):
    """One (table, partition key, row key) entity.

    version is the optimistic concurrency token, exposed as the etag.
    """

    __tablename__ = "table_entities"

    table_name: Mapped[str] = mapped_column(String(128), primary_key=True)
    partition_key: Mapped[str] = mapped_column(String(512), primary_key=True)
    row_key: Mapped[str] = mapped_column(String(512), primary_key=True)

    properties: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    def __repr__(self) -> str:
        return (
            f"<TableEntityRecord(table='{self.table_name}', "
            f"version={self.version})>"
        )
