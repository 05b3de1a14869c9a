"""SQLAlchemy implementation of the partitioned key-value store.

Every logical table lives in the single ``table_entities`` table, keyed by
(table_name, partition_key, row_key). The integer ``version`` column is the
etag: conditional writes compare it in the WHERE clause so a concurrent
writer that bumped it makes the write affect zero rows.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Optional, Sequence, Tuple

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models.table_entity import TableEntityRecord
from .base import (
    EntityFilter,
    QueryPage,
    TableEntity,
    TableStore,
    TransactionAction,
    TransactionActionType,
    UpdateMode,
)
from .exceptions import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    StoreError,
    StoreUnavailableError,
    TransactionError,
)

logger = logging.getLogger(__name__)


def _to_entity(record: TableEntityRecord) -> TableEntity:
    return TableEntity(
        partition_key=record.partition_key,
        row_key=record.row_key,
        properties=dict(record.properties or {}),
        etag=str(record.version),
    )


def encode_continuation(partition_key: str, row_key: str) -> str:
    return json.dumps([partition_key, row_key])


def decode_continuation(token: str) -> Tuple[str, str]:
    try:
        partition_key, row_key = json.loads(token)
    except (ValueError, TypeError) as e:
        raise StoreError(f"Malformed continuation token: {e}") from e
    return partition_key, row_key


def _unavailable(table: str, error: SQLAlchemyError) -> StoreUnavailableError:
    logger.error("Database failure on %s: %s", table, error)
    return StoreUnavailableError(f"Database operation failed: {error}", table)


class SqlTableStore(TableStore):
    """TableStore over an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, table: str, transactional: bool = True):
        """Session for one store call. Driver failures surface as StoreUnavailableError."""
        try:
            async with self._session_factory() as session:
                if transactional:
                    async with session.begin():
                        yield session
                else:
                    yield session
        except SQLAlchemyError as e:
            raise _unavailable(table, e) from e

    # --- Single-entity operations ---

    async def get_entity(
        self, table: str, partition_key: str, row_key: str
    ) -> Optional[TableEntity]:
        async with self._session(table, transactional=False) as session:
            record = await self._load(session, table, partition_key, row_key)
            return _to_entity(record) if record else None

    async def add_entity(self, table: str, entity: TableEntity) -> TableEntity:
        async with self._session(table) as session:
            return await self._add(session, table, entity)

    async def update_entity(
        self,
        table: str,
        entity: TableEntity,
        mode: UpdateMode = UpdateMode.MERGE,
        etag: Optional[str] = None,
    ) -> TableEntity:
        async with self._session(table) as session:
            return await self._update(session, table, entity, mode, etag)

    async def upsert_entity(
        self,
        table: str,
        entity: TableEntity,
        mode: UpdateMode = UpdateMode.MERGE,
    ) -> TableEntity:
        try:
            return await self.add_entity(table, entity)
        except AlreadyExistsError:
            return await self.update_entity(table, entity, mode=mode)

    async def delete_entity(
        self,
        table: str,
        partition_key: str,
        row_key: str,
        etag: Optional[str] = None,
    ) -> None:
        async with self._session(table) as session:
            await self._delete(session, table, partition_key, row_key, etag)

    # --- Queries ---

    async def query_page(
        self,
        table: str,
        entity_filter: Optional[EntityFilter] = None,
        page_size: int = 1000,
        continuation: Optional[str] = None,
    ) -> QueryPage:
        if page_size < 1:
            raise ValueError("page_size must be positive")

        stmt = select(TableEntityRecord).where(TableEntityRecord.table_name == table)

        if entity_filter is not None:
            if entity_filter.partition_key is not None:
                stmt = stmt.where(TableEntityRecord.partition_key == entity_filter.partition_key)
            if entity_filter.partition_key_ge is not None:
                stmt = stmt.where(TableEntityRecord.partition_key >= entity_filter.partition_key_ge)
            if entity_filter.partition_key_lt is not None:
                stmt = stmt.where(TableEntityRecord.partition_key < entity_filter.partition_key_lt)
            if entity_filter.row_key is not None:
                stmt = stmt.where(TableEntityRecord.row_key == entity_filter.row_key)

        if continuation:
            last_pk, last_rk = decode_continuation(continuation)
            stmt = stmt.where(
                or_(
                    TableEntityRecord.partition_key > last_pk,
                    and_(
                        TableEntityRecord.partition_key == last_pk,
                        TableEntityRecord.row_key > last_rk,
                    ),
                )
            )

        # One extra row tells us whether another page exists
        stmt = stmt.order_by(
            TableEntityRecord.partition_key, TableEntityRecord.row_key
        ).limit(page_size + 1)

        async with self._session(table, transactional=False) as session:
            result = await session.execute(stmt)
            records = list(result.scalars().all())

        has_more = len(records) > page_size
        records = records[:page_size]
        entities = [_to_entity(r) for r in records]

        next_token = None
        if has_more and entities:
            last = entities[-1]
            next_token = encode_continuation(last.partition_key, last.row_key)

        return QueryPage(entities=entities, continuation=next_token)

    # --- Batches ---

    async def submit_transaction(
        self, table: str, actions: Sequence[TransactionAction]
    ) -> None:
        self.validate_batch(table, actions)

        async with self._session(table) as session:
            for index, action in enumerate(actions):
                try:
                    await self._apply_action(session, table, action)
                except (StoreError, SQLAlchemyError) as e:
                    logger.debug(
                        "Rolling back %d-action batch on %s at action %d",
                        len(actions), table, index,
                    )
                    cause = e if isinstance(e, StoreError) else _unavailable(table, e)
                    raise TransactionError(
                        f"Batch action {index} ({action.action.value}) failed: {cause}",
                        table=table,
                        failed_index=index,
                        cause=cause,
                    ) from e

    async def _apply_action(
        self, session: AsyncSession, table: str, action: TransactionAction
    ):
        entity = action.entity
        kind = action.action

        if kind == TransactionActionType.ADD:
            await self._add(session, table, entity)
        elif kind == TransactionActionType.UPDATE_MERGE:
            await self._update(session, table, entity, UpdateMode.MERGE, action.etag)
        elif kind == TransactionActionType.UPDATE_REPLACE:
            await self._update(session, table, entity, UpdateMode.REPLACE, action.etag)
        elif kind == TransactionActionType.UPSERT:
            existing = await self._load(session, table, entity.partition_key, entity.row_key)
            if existing is None:
                await self._add(session, table, entity)
            else:
                await self._update(session, table, entity, UpdateMode.MERGE, None)
        elif kind == TransactionActionType.DELETE:
            await self._delete(
                session, table, entity.partition_key, entity.row_key, action.etag
            )
        else:
            raise StoreError(f"Unknown batch action: {kind}", table)

    # --- Session-scoped primitives (no commit) ---

    async def _load(
        self, session: AsyncSession, table: str, partition_key: str, row_key: str
    ) -> Optional[TableEntityRecord]:
        result = await session.execute(
            select(TableEntityRecord).where(
                TableEntityRecord.table_name == table,
                TableEntityRecord.partition_key == partition_key,
                TableEntityRecord.row_key == row_key,
            )
        )
        return result.scalar_one_or_none()

    async def _add(
        self, session: AsyncSession, table: str, entity: TableEntity
    ) -> TableEntity:
        existing = await self._load(session, table, entity.partition_key, entity.row_key)
        if existing is not None:
            raise AlreadyExistsError("Entity already exists", table)

        record = TableEntityRecord(
            table_name=table,
            partition_key=entity.partition_key,
            row_key=entity.row_key,
            properties=dict(entity.properties),
            version=1,
        )
        session.add(record)
        try:
            await session.flush()
        except IntegrityError as e:
            # Lost an insert race with another writer
            raise AlreadyExistsError("Entity already exists", table) from e

        return TableEntity(
            partition_key=entity.partition_key,
            row_key=entity.row_key,
            properties=dict(entity.properties),
            etag="1",
        )

    async def _update(
        self,
        session: AsyncSession,
        table: str,
        entity: TableEntity,
        mode: UpdateMode,
        etag: Optional[str],
    ) -> TableEntity:
        record = await self._load(session, table, entity.partition_key, entity.row_key)
        if record is None:
            raise NotFoundError("Entity not found", table)

        current_version = record.version
        if etag is not None and etag != str(current_version):
            raise ConflictError(
                "Entity was modified by another writer",
                table,
                expected_etag=etag,
                actual_etag=str(current_version),
            )

        if mode == UpdateMode.MERGE:
            properties = {**(record.properties or {}), **entity.properties}
        else:
            properties = dict(entity.properties)

        new_version = current_version + 1
        result = await session.execute(
            update(TableEntityRecord)
            .where(
                TableEntityRecord.table_name == table,
                TableEntityRecord.partition_key == entity.partition_key,
                TableEntityRecord.row_key == entity.row_key,
                TableEntityRecord.version == current_version,
            )
            .values(properties=properties, version=new_version)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConflictError(
                "Entity was modified by another writer",
                table,
                expected_etag=str(current_version),
            )

        return TableEntity(
            partition_key=entity.partition_key,
            row_key=entity.row_key,
            properties=properties,
            etag=str(new_version),
        )

    async def _delete(
        self,
        session: AsyncSession,
        table: str,
        partition_key: str,
        row_key: str,
        etag: Optional[str],
    ):
        stmt = delete(TableEntityRecord).where(
            TableEntityRecord.table_name == table,
            TableEntityRecord.partition_key == partition_key,
            TableEntityRecord.row_key == row_key,
        )
        if etag is not None:
            try:
                expected_version = int(etag)
            except ValueError:
                raise ConflictError("Malformed etag", table, expected_etag=etag)
            stmt = stmt.where(TableEntityRecord.version == expected_version)

        result = await session.execute(stmt.execution_options(synchronize_session=False))
        if result.rowcount == 0:
            if etag is not None and await self._load(session, table, partition_key, row_key):
                raise ConflictError("Entity was modified by another writer", table, expected_etag=etag)
            raise NotFoundError("Entity not found", table)
