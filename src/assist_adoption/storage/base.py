"""Partitioned key-value store interface and data models."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .exceptions import InvalidBatchError

# Same-partition batch limit
MAX_BATCH_SIZE = 100


class UpdateMode(str, Enum):
    """How an update combines with the stored properties."""
    MERGE = "merge"
    REPLACE = "replace"


class TransactionActionType(str, Enum):
    """Kinds of action allowed inside a batch."""
    ADD = "add"
    UPDATE_MERGE = "update_merge"
    UPDATE_REPLACE = "update_replace"
    UPSERT = "upsert"
    DELETE = "delete"


@dataclass
class TableEntity:
    """A row addressed by (partition_key, row_key) with free-form properties."""

    partition_key: str
    row_key: str
    properties: Dict[str, Any] = field(default_factory=dict)
    etag: Optional[str] = None

    def get(self, name: str, default: Any = None) -> Any:
        return self.properties.get(name, default)

    def __getitem__(self, name: str) -> Any:
        return self.properties[name]

    def __setitem__(self, name: str, value: Any):
        self.properties[name] = value

    def __contains__(self, name: str) -> bool:
        return name in self.properties

    def with_keys(self, partition_key: str, row_key: str) -> "TableEntity":
        """Copy every non-key property under new keys. The copy has no etag."""
        return TableEntity(
            partition_key=partition_key,
            row_key=row_key,
            properties=dict(self.properties),
        )


@dataclass
class TransactionAction:
    """One action of a same-partition batch."""

    action: TransactionActionType
    entity: TableEntity
    etag: Optional[str] = None


@dataclass
class EntityFilter:
    """Exact or range filter on the partition key, optionally pinned to a row key.

    Range bounds are compared as strings, so "{day}" <= pk < "{day+1}"
    selects every partition key that starts with the date.
    """

    partition_key: Optional[str] = None
    partition_key_ge: Optional[str] = None
    partition_key_lt: Optional[str] = None
    row_key: Optional[str] = None

    @classmethod
    def partition(cls, partition_key: str) -> "EntityFilter":
        return cls(partition_key=partition_key)

    @classmethod
    def partition_range(cls, start: str, end: str) -> "EntityFilter":
        return cls(partition_key_ge=start, partition_key_lt=end)

    def matches(self, entity: TableEntity) -> bool:
        pk = entity.partition_key
        if self.partition_key is not None and pk != self.partition_key:
            return False
        if self.partition_key_ge is not None and pk < self.partition_key_ge:
            return False
        if self.partition_key_lt is not None and pk >= self.partition_key_lt:
            return False
        if self.row_key is not None and entity.row_key != self.row_key:
            return False
        return True


@dataclass
class QueryPage:
    """One page of query results. continuation is None on the last page."""

    entities: List[TableEntity]
    continuation: Optional[str] = None

    def __len__(self) -> int:
        return len(self.entities)


class TableStore(ABC):
    """Abstract partitioned key-value store.

    Every entity carries a version token (etag). Conditional writes fail
    with ConflictError when the token is stale. Batches are atomic only
    within a single partition.
    """

    @abstractmethod
    async def get_entity(
        self, table: str, partition_key: str, row_key: str
    ) -> Optional[TableEntity]:
        """Point lookup.

        Returns:
            The entity with its current etag, or None when absent.
        """
        pass

    @abstractmethod
    async def add_entity(self, table: str, entity: TableEntity) -> TableEntity:
        """Insert a new entity.

        Raises:
            AlreadyExistsError: An entity with the same keys exists.
        """
        pass

    @abstractmethod
    async def update_entity(
        self,
        table: str,
        entity: TableEntity,
        mode: UpdateMode = UpdateMode.MERGE,
        etag: Optional[str] = None,
    ) -> TableEntity:
        """Update an existing entity.

        Args:
            table: Table name
            entity: Entity carrying the keys and the properties to write
            mode: MERGE keeps stored properties not present on entity, REPLACE drops them
            etag: Expected version token. None means unconditional.

        Raises:
            NotFoundError: The entity does not exist.
            ConflictError: etag is stale.
        """
        pass

    @abstractmethod
    async def upsert_entity(
        self,
        table: str,
        entity: TableEntity,
        mode: UpdateMode = UpdateMode.MERGE,
    ) -> TableEntity:
        """Insert or unconditionally update."""
        pass

    @abstractmethod
    async def delete_entity(
        self,
        table: str,
        partition_key: str,
        row_key: str,
        etag: Optional[str] = None,
    ) -> None:
        """Delete an entity.

        Raises:
            NotFoundError: The entity does not exist.
            ConflictError: etag is stale.
        """
        pass

    @abstractmethod
    async def query_page(
        self,
        table: str,
        entity_filter: Optional[EntityFilter] = None,
        page_size: int = 1000,
        continuation: Optional[str] = None,
    ) -> QueryPage:
        """Fetch one page of entities ordered by (partition_key, row_key).

        Pass the returned continuation back in to resume after the last
        entity of the previous page.
        """
        pass

    @abstractmethod
    async def submit_transaction(
        self, table: str, actions: Sequence[TransactionAction]
    ) -> None:
        """Apply a batch atomically.

        Raises:
            InvalidBatchError: Empty batch, more than MAX_BATCH_SIZE actions,
                more than one partition, or a row key repeated.
            TransactionError: An action failed. Nothing was applied.
        """
        pass

    @staticmethod
    def validate_batch(table: str, actions: Sequence[TransactionAction]) -> str:
        """Check batch shape and return its partition key."""
        if not actions:
            raise InvalidBatchError("Batch is empty", table)
        if len(actions) > MAX_BATCH_SIZE:
            raise InvalidBatchError(
                f"Batch has {len(actions)} actions, limit is {MAX_BATCH_SIZE}", table
            )

        partition_keys = {a.entity.partition_key for a in actions}
        if len(partition_keys) != 1:
            raise InvalidBatchError("Batch spans more than one partition", table)

        row_keys = [a.entity.row_key for a in actions]
        if len(set(row_keys)) != len(row_keys):
            raise InvalidBatchError("Batch touches the same row more than once", table)

        return partition_keys.pop()
