"""Tests for the SQL table store, pagination helpers and write_with_retry."""

import pytest
from sqlalchemy.exc import OperationalError

from assist_adoption.storage.base import (
    MAX_BATCH_SIZE,
    EntityFilter,
    TableEntity,
    TransactionAction,
    TransactionActionType,
    UpdateMode,
)
from assist_adoption.storage.exceptions import (
    AlreadyExistsError,
    ConflictError,
    InvalidBatchError,
    NotFoundError,
    StoreError,
    StoreUnavailableError,
    TransactionError,
)
from assist_adoption.storage.pagination import iter_pages, list_entities
from assist_adoption.storage.retry import write_with_retry
from assist_adoption.storage.sql import SqlTableStore

TABLE = "TestTable"


def _add(entity):
    return TransactionAction(TransactionActionType.ADD, entity)


class TestSingleEntity:
    async def test_add_and_get(self, store):
        created = await store.add_entity(TABLE, TableEntity("p", "r", {"Count": 1}))
        assert created.etag == "1"

        loaded = await store.get_entity(TABLE, "p", "r")
        assert loaded.properties == {"Count": 1}
        assert loaded.etag == "1"

    async def test_get_missing_returns_none(self, store):
        assert await store.get_entity(TABLE, "p", "missing") is None

    async def test_tables_are_isolated(self, store):
        await store.add_entity(TABLE, TableEntity("p", "r", {"Count": 1}))
        assert await store.get_entity("OtherTable", "p", "r") is None

    async def test_add_duplicate_raises(self, store):
        await store.add_entity(TABLE, TableEntity("p", "r"))
        with pytest.raises(AlreadyExistsError):
            await store.add_entity(TABLE, TableEntity("p", "r"))

    async def test_update_bumps_etag(self, store):
        await store.add_entity(TABLE, TableEntity("p", "r", {"Count": 1}))
        updated = await store.update_entity(TABLE, TableEntity("p", "r", {"Count": 2}), etag="1")
        assert updated.etag == "2"
        assert (await store.get_entity(TABLE, "p", "r"))["Count"] == 2

    async def test_update_with_stale_etag_conflicts(self, store):
        await store.add_entity(TABLE, TableEntity("p", "r", {"Count": 1}))
        await store.update_entity(TABLE, TableEntity("p", "r", {"Count": 2}))

        with pytest.raises(ConflictError) as exc_info:
            await store.update_entity(TABLE, TableEntity("p", "r", {"Count": 3}), etag="1")
        assert exc_info.value.expected_etag == "1"
        assert (await store.get_entity(TABLE, "p", "r"))["Count"] == 2

    async def test_update_missing_raises_not_found(self, store):
        with pytest.raises(NotFoundError):
            await store.update_entity(TABLE, TableEntity("p", "r", {"Count": 1}))

    async def test_merge_keeps_other_properties(self, store):
        await store.add_entity(TABLE, TableEntity("p", "r", {"A": 1, "B": 2}))
        await store.update_entity(TABLE, TableEntity("p", "r", {"B": 3}), mode=UpdateMode.MERGE)
        assert (await store.get_entity(TABLE, "p", "r")).properties == {"A": 1, "B": 3}

    async def test_replace_drops_other_properties(self, store):
        await store.add_entity(TABLE, TableEntity("p", "r", {"A": 1, "B": 2}))
        await store.update_entity(TABLE, TableEntity("p", "r", {"B": 3}), mode=UpdateMode.REPLACE)
        assert (await store.get_entity(TABLE, "p", "r")).properties == {"B": 3}

    async def test_upsert_creates_then_merges(self, store):
        await store.upsert_entity(TABLE, TableEntity("p", "r", {"A": 1}))
        await store.upsert_entity(TABLE, TableEntity("p", "r", {"B": 2}))
        assert (await store.get_entity(TABLE, "p", "r")).properties == {"A": 1, "B": 2}

    async def test_delete(self, store):
        await store.add_entity(TABLE, TableEntity("p", "r"))
        await store.delete_entity(TABLE, "p", "r")
        assert await store.get_entity(TABLE, "p", "r") is None

    async def test_delete_missing_raises_not_found(self, store):
        with pytest.raises(NotFoundError):
            await store.delete_entity(TABLE, "p", "r")

    async def test_delete_with_stale_etag_conflicts(self, store):
        await store.add_entity(TABLE, TableEntity("p", "r"))
        await store.update_entity(TABLE, TableEntity("p", "r", {"A": 1}))
        with pytest.raises(ConflictError):
            await store.delete_entity(TABLE, "p", "r", etag="1")


class TestQueries:
    async def test_pages_follow_continuation(self, store):
        for i in range(5):
            await store.add_entity(TABLE, TableEntity("p", f"r{i}"))

        first = await store.query_page(TABLE, page_size=2)
        assert [e.row_key for e in first.entities] == ["r0", "r1"]
        assert first.continuation is not None

        second = await store.query_page(TABLE, page_size=2, continuation=first.continuation)
        assert [e.row_key for e in second.entities] == ["r2", "r3"]

        third = await store.query_page(TABLE, page_size=2, continuation=second.continuation)
        assert [e.row_key for e in third.entities] == ["r4"]
        assert third.continuation is None

    async def test_exact_page_has_no_continuation(self, store):
        for i in range(2):
            await store.add_entity(TABLE, TableEntity("p", f"r{i}"))
        page = await store.query_page(TABLE, page_size=2)
        assert len(page) == 2
        assert page.continuation is None

    async def test_partition_range_filter(self, store):
        for pk in ("2024-01-01-aaa", "2024-01-01-bbb", "2024-01-02-aaa", "2023-12-31-zzz"):
            await store.add_entity(TABLE, TableEntity(pk, "All"))

        entities = await list_entities(
            store, TABLE, EntityFilter.partition_range("2024-01-01", "2024-01-02")
        )
        assert [e.partition_key for e in entities] == ["2024-01-01-aaa", "2024-01-01-bbb"]

    async def test_partition_filter(self, store):
        await store.add_entity(TABLE, TableEntity("a", "1"))
        await store.add_entity(TABLE, TableEntity("b", "1"))
        entities = await list_entities(store, TABLE, EntityFilter.partition("b"))
        assert [e.partition_key for e in entities] == ["b"]

    async def test_iter_pages_sees_every_entity_across_partitions(self, store):
        for pk in ("a", "b", "c"):
            for rk in ("1", "2"):
                await store.add_entity(TABLE, TableEntity(pk, rk))

        seen = []
        async for page in iter_pages(store, TABLE, page_size=4):
            seen.extend((e.partition_key, e.row_key) for e in page.entities)
        assert len(seen) == 6
        assert seen == sorted(seen)

    async def test_deleting_behind_the_cursor_does_not_skip_rows(self, store):
        for i in range(6):
            await store.add_entity(TABLE, TableEntity("p", f"r{i}"))

        seen = []
        async for page in iter_pages(store, TABLE, page_size=2):
            for entity in page.entities:
                seen.append(entity.row_key)
                await store.delete_entity(TABLE, entity.partition_key, entity.row_key)
        assert seen == [f"r{i}" for i in range(6)]

    def test_entity_filter_matches(self):
        f = EntityFilter.partition_range("2024-01-01", "2024-01-02")
        assert f.matches(TableEntity("2024-01-01-x", "r"))
        assert not f.matches(TableEntity("2024-01-02-x", "r"))


class TestTransactions:
    async def test_batch_applies_atomically(self, store):
        await store.submit_transaction(
            TABLE, [_add(TableEntity("p", "a")), _add(TableEntity("p", "b"))]
        )
        assert len(await list_entities(store, TABLE)) == 2

    async def test_failed_action_rolls_back_batch(self, store):
        await store.add_entity(TABLE, TableEntity("p", "b"))

        with pytest.raises(TransactionError) as exc_info:
            await store.submit_transaction(
                TABLE, [_add(TableEntity("p", "a")), _add(TableEntity("p", "b"))]
            )
        assert exc_info.value.failed_index == 1
        assert isinstance(exc_info.value.cause, AlreadyExistsError)
        assert await store.get_entity(TABLE, "p", "a") is None

    async def test_delete_actions(self, store):
        await store.add_entity(TABLE, TableEntity("p", "a"))
        await store.add_entity(TABLE, TableEntity("p", "b"))
        await store.submit_transaction(
            TABLE,
            [
                TransactionAction(TransactionActionType.DELETE, TableEntity("p", "a")),
                TransactionAction(TransactionActionType.DELETE, TableEntity("p", "b")),
            ],
        )
        assert await list_entities(store, TABLE) == []

    async def test_empty_batch_rejected(self, store):
        with pytest.raises(InvalidBatchError):
            await store.submit_transaction(TABLE, [])

    async def test_oversized_batch_rejected(self, store):
        actions = [_add(TableEntity("p", str(i))) for i in range(MAX_BATCH_SIZE + 1)]
        with pytest.raises(InvalidBatchError):
            await store.submit_transaction(TABLE, actions)

    async def test_cross_partition_batch_rejected(self, store):
        with pytest.raises(InvalidBatchError):
            await store.submit_transaction(
                TABLE, [_add(TableEntity("p1", "a")), _add(TableEntity("p2", "a"))]
            )

    async def test_duplicate_row_rejected(self, store):
        with pytest.raises(InvalidBatchError):
            await store.submit_transaction(
                TABLE, [_add(TableEntity("p", "a")), _add(TableEntity("p", "a"))]
            )


def _increment(pk, rk):
    def mutate(current):
        if current is None:
            return TableEntity(pk, rk, {"Count": 1})
        updated = current.with_keys(pk, rk)
        updated["Count"] = current["Count"] + 1
        return updated

    return mutate


class TestWriteWithRetry:
    async def test_creates_then_updates(self, store):
        await write_with_retry(store, TABLE, "p", "r", _increment("p", "r"))
        await write_with_retry(store, TABLE, "p", "r", _increment("p", "r"))
        assert (await store.get_entity(TABLE, "p", "r"))["Count"] == 2

    async def test_none_means_no_write(self, store):
        result = await write_with_retry(store, TABLE, "p", "r", lambda current: None)
        assert result is None
        assert await store.get_entity(TABLE, "p", "r") is None

    async def test_conflict_is_refetched_and_reapplied(self, store):
        await store.add_entity(TABLE, TableEntity("p", "r", {"Count": 1}))
        calls = []
        increment = _increment("p", "r")

        def racing(current):
            calls.append(current["Count"])
            desired = increment(current)
            if len(calls) == 1:
                # Simulates another writer landing between our read and write
                store_write.append(True)
            return desired

        store_write = []
        original_update = store.update_entity

        async def update_with_race(table, entity, mode=UpdateMode.MERGE, etag=None):
            if store_write and len(calls) == 1:
                await original_update(table, TableEntity("p", "r", {"Count": 10}))
            return await original_update(table, entity, mode=mode, etag=etag)

        store.update_entity = update_with_race

        await write_with_retry(store, TABLE, "p", "r", racing)

        assert calls == [1, 10]
        assert (await store.get_entity(TABLE, "p", "r"))["Count"] == 11

    async def test_lost_create_race_is_retried(self, store):
        calls = []

        def racing(current):
            calls.append(current)
            return _increment("p", "r")(current)

        original_add = store.add_entity

        async def add_with_race(table, entity):
            if len(calls) == 1:
                await original_add(table, TableEntity("p", "r", {"Count": 5}))
            return await original_add(table, entity)

        store.add_entity = add_with_race

        await write_with_retry(store, TABLE, "p", "r", racing)

        assert calls[0] is None
        assert calls[1]["Count"] == 5
        assert (await store.get_entity(TABLE, "p", "r"))["Count"] == 6

    async def test_gives_up_after_max_retries(self, store):
        await store.add_entity(TABLE, TableEntity("p", "r", {"Count": 1}))
        original_update = store.update_entity

        async def always_race(table, entity, mode=UpdateMode.MERGE, etag=None):
            await original_update(table, TableEntity("p", "r", {"Other": 1}))
            return await original_update(table, entity, mode=mode, etag=etag)

        store.update_entity = always_race

        with pytest.raises(ConflictError):
            await write_with_retry(store, TABLE, "p", "r", _increment("p", "r"), max_retries=1)


class LockedStore(SqlTableStore):
    """Every delete fails inside the driver."""

    async def _delete(self, session, table, partition_key, row_key, etag):
        raise OperationalError("DELETE FROM table_entities", {}, Exception("database is locked"))


class TestDatabaseFailures:
    async def test_driver_error_surfaces_as_store_error(self, session_factory):
        store = LockedStore(session_factory)
        await store.add_entity(TABLE, TableEntity("p", "a"))

        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.delete_entity(TABLE, "p", "a")

        assert isinstance(exc_info.value, StoreError)
        assert exc_info.value.table == TABLE
        assert isinstance(exc_info.value.__cause__, OperationalError)
        assert await store.get_entity(TABLE, "p", "a") is not None

    async def test_driver_error_in_batch_rolls_back(self, session_factory):
        store = LockedStore(session_factory)
        await store.add_entity(TABLE, TableEntity("p", "b"))

        with pytest.raises(TransactionError) as exc_info:
            await store.submit_transaction(
                TABLE,
                [
                    _add(TableEntity("p", "a")),
                    TransactionAction(TransactionActionType.DELETE, TableEntity("p", "b")),
                ],
            )

        assert exc_info.value.failed_index == 1
        assert isinstance(exc_info.value.cause, StoreUnavailableError)
        assert await store.get_entity(TABLE, "p", "a") is None
