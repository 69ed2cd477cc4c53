# tests/engine/test_merger.py
"""Tests for append and upsert commits."""

from collections.abc import Sequence

import pytest

from cdcmerge.contracts import (
    ChangeEvent,
    CommitConflictError,
    DedupedBatch,
    KeyTuple,
    Row,
    TableHandle,
    TableLookup,
    TableStore,
    WriteMode,
)
from cdcmerge.engine.dedup import Deduplicator
from cdcmerge.engine.keys import KeyExtractor
from cdcmerge.engine.merger import TableMerger
from cdcmerge.engine.retry import RetryConfig, RetryManager
from cdcmerge.engine.schema_reconciler import SchemaReconciler, infer_schema
from cdcmerge.storage import InMemoryTableStore, RetryingTableStore
from tests.helpers.events import DESTINATION, customer, delete
from tests.helpers.stores import ConflictingStore, InterleavingStore, LostAckStore, SpyStore

TABLE = "default.customers"


def _batch(events: Sequence[ChangeEvent], *, upsert: bool = True) -> DedupedBatch:
    extracted = KeyExtractor().extract_all(events, require_scalar_keys=upsert)
    return Deduplicator().dedupe(DESTINATION, extracted, upsert=upsert)


def _prepare(store: TableStore, batch: DedupedBatch, *, identifier: bool = True) -> TableHandle:
    handle = store.load_or_create_table(TABLE, infer_schema(batch.entries[0].event, identifier=identifier))
    SchemaReconciler(store).reconcile(handle, batch)
    return handle


def _merger(store: TableStore, attempts: int = 5, **kwargs: bool) -> TableMerger:
    return TableMerger(store, RetryManager(RetryConfig.immediate(attempts)), **kwargs)


def _upsert(store: TableStore, events: Sequence[ChangeEvent], **kwargs: bool) -> None:
    batch = _batch(events)
    handle = _prepare(store, batch)
    _merger(store, **kwargs).apply(handle, batch, WriteMode.UPSERT)


def _names(rows: Sequence[Row]) -> dict[int, str | None]:
    return {row["id"]: row.get("user_name") for row in rows}


class TestPlanUpsert:
    """Pure per-key planning against a lookup."""

    def _lookup(self, batch: DedupedBatch, rows: dict[int, list[Row]]) -> TableLookup:
        schema = infer_schema(batch.entries[0].event, identifier=True)
        return TableLookup(
            schema=schema,
            version=4,
            rows={entry.key: rows.get(entry.key.values[0], []) for entry in batch},
        )

    def test_new_key_inserted(self) -> None:
        batch = _batch([customer(1, "Alice")])

        plan = _merger(InMemoryTableStore()).plan_upsert(self._lookup(batch, {}), batch)

        assert plan.deletes == []
        assert plan.inserts == [{"id": 1, "user_name": "Alice", "__op": "c"}]

    def test_existing_key_replaced(self) -> None:
        batch = _batch([customer(1, "Alice-Updated", op="u")])
        lookup = self._lookup(batch, {1: [{"id": 1, "user_name": "Alice", "__op": "c"}]})

        plan = _merger(InMemoryTableStore()).plan_upsert(lookup, batch)

        assert plan.deletes == [KeyTuple(("id",), (1,))]
        assert plan.inserts == [{"id": 1, "user_name": "Alice-Updated", "__op": "u"}]

    def test_identical_row_is_noop(self) -> None:
        batch = _batch([customer(1, "Alice")])
        lookup = self._lookup(batch, {1: [{"id": 1, "user_name": "Alice", "__op": "c"}]})

        plan = _merger(InMemoryTableStore()).plan_upsert(lookup, batch)

        assert plan.is_empty
        assert plan.noop_keys == 1

    def test_duplicate_stored_rows_are_collapsed(self) -> None:
        batch = _batch([customer(1, "Alice")])
        stored = {"id": 1, "user_name": "Alice", "__op": "c"}
        lookup = self._lookup(batch, {1: [stored, dict(stored)]})

        plan = _merger(InMemoryTableStore()).plan_upsert(lookup, batch)

        assert plan.deletes == [KeyTuple(("id",), (1,))]
        assert len(plan.inserts) == 1

    def test_delete_of_existing_key(self) -> None:
        batch = _batch([delete({"id": 1})])
        lookup = self._lookup(batch, {1: [{"id": 1, "user_name": "Alice"}]})

        plan = _merger(InMemoryTableStore()).plan_upsert(lookup, batch)

        assert plan.deletes == [KeyTuple(("id",), (1,))]
        assert plan.inserts == []

    def test_delete_of_absent_key_is_noop(self) -> None:
        batch = _batch([delete({"id": 1})])

        plan = _merger(InMemoryTableStore()).plan_upsert(self._lookup(batch, {}), batch)

        assert plan.is_empty
        assert plan.noop_keys == 1

    def test_keep_deletes_inserts_tombstone(self) -> None:
        batch = _batch([delete({"id": 1})])
        lookup = self._lookup(batch, {1: [{"id": 1, "user_name": "Alice"}]})

        plan = _merger(InMemoryTableStore(), keep_deletes=True).plan_upsert(lookup, batch)

        assert plan.deletes == [KeyTuple(("id",), (1,))]
        assert plan.inserts == [{"__op": "d", "id": 1}]


class TestAppend:
    def test_every_event_becomes_a_row(self, store: TableStore) -> None:
        batch = _batch([customer(1, "a"), customer(1, "b"), customer(2, "c")], upsert=False)
        handle = _prepare(store, batch, identifier=False)

        result = _merger(store).apply(handle, batch, WriteMode.APPEND)

        assert result.committed
        assert result.rows_inserted == 3
        assert result.rows_deleted == 0
        assert sorted(row["user_name"] for row in store.scan(handle)) == ["a", "b", "c"]

    def test_append_never_reads_rows(self, store: TableStore) -> None:
        spy = SpyStore(store)
        batch = _batch([customer(1, "a")], upsert=False)
        handle = _prepare(spy, batch, identifier=False)

        _merger(spy).apply(handle, batch, WriteMode.APPEND)

        assert spy.calls["lookup"] == 0
        assert spy.calls["commit"] == 1

    def test_empty_batch_commits_nothing(self, store: TableStore) -> None:
        handle = store.load_or_create_table(TABLE, infer_schema(customer(1, "a"), identifier=False))
        empty = DedupedBatch(destination=DESTINATION, entries=(), deduplicated=False, received=0)

        result = _merger(store).apply(handle, empty, WriteMode.APPEND)

        assert not result.committed
        assert store.current_schema(handle)[1] == 0


class TestUpsert:
    """Delete-then-insert per key."""

    def test_update_replaces_row(self, store: TableStore) -> None:
        _upsert(store, [customer(1, "Alice"), customer(2, "Bob")])
        _upsert(store, [customer(1, "Alice-Updated", op="u")])

        rows = store.scan(TableHandle(TABLE))
        assert len(rows) == 2
        assert _names(rows) == {1: "Alice-Updated", 2: "Bob"}

    def test_delete_removes_row(self, store: TableStore) -> None:
        _upsert(store, [customer(1, "Alice"), customer(2, "Bob")])
        _upsert(store, [delete({"id": 1})])

        assert _names(store.scan(TableHandle(TABLE))) == {2: "Bob"}

    def test_keep_deletes_leaves_tombstone(self, store: TableStore) -> None:
        _upsert(store, [customer(1, "Alice")])
        _upsert(store, [delete({"id": 1})], keep_deletes=True)

        rows = store.scan(TableHandle(TABLE))
        assert len(rows) == 1
        assert rows[0]["__op"] == "d"
        assert rows[0].get("user_name") is None

    def test_keys_outside_batch_untouched(self, store: TableStore) -> None:
        _upsert(store, [customer(i, f"user{i}") for i in range(5)])
        _upsert(store, [customer(2, "changed", op="u")])

        assert _names(store.scan(TableHandle(TABLE))) == {0: "user0", 1: "user1", 2: "changed", 3: "user3", 4: "user4"}

    def test_projection_drops_columns_table_lacks(self, store: TableStore) -> None:
        batch = _batch([customer(1, "Alice", email="a@x")])
        handle = store.load_or_create_table(TABLE, infer_schema(customer(1, "Alice"), identifier=True))

        _merger(store).apply(handle, batch, WriteMode.UPSERT)

        assert "email" not in store.scan(handle)[0]

    def test_replay_is_idempotent(self, store: TableStore) -> None:
        batch = _batch([customer(1, "Alice"), customer(2, "Bob", op="u"), delete({"id": 3})])
        handle = _prepare(store, batch)
        merger = _merger(store)

        first = merger.apply(handle, batch, WriteMode.UPSERT)
        rows_after_first = store.scan(handle)
        second = merger.apply(handle, batch, WriteMode.UPSERT)

        assert first.committed
        assert not second.committed
        assert second.noop_keys == 3
        assert second.version == first.version
        assert store.scan(handle) == rows_after_first

    def test_requires_deduplicated_batch(self, store: TableStore) -> None:
        batch = _batch([customer(1, "a")], upsert=False)
        handle = _prepare(store, batch)

        with pytest.raises(ValueError, match="deduplicated"):
            _merger(store).apply(handle, batch, WriteMode.UPSERT)


class TestCommitConflicts:
    """Version races on the data commit."""

    def test_conflicts_replayed(self, store: TableStore) -> None:
        conflicting = ConflictingStore(store, commit_conflicts=2)
        batch = _batch([customer(1, "Alice")])
        handle = _prepare(conflicting, batch)

        result = _merger(conflicting, attempts=3).apply(handle, batch, WriteMode.UPSERT)

        assert result.attempts == 3
        assert conflicting.calls["lookup"] == 3
        assert len(store.scan(handle)) == 1

    def test_exhausted_retries_raise_commit_conflict(self, store: TableStore) -> None:
        conflicting = ConflictingStore(store, commit_conflicts=10)
        batch = _batch([customer(1, "Alice")])
        handle = _prepare(conflicting, batch)

        with pytest.raises(CommitConflictError) as exc_info:
            _merger(conflicting, attempts=2).apply(handle, batch, WriteMode.UPSERT)

        assert exc_info.value.attempts == 2
        assert exc_info.value.destination == DESTINATION
        assert store.scan(handle) == []

    def test_concurrent_writer_on_other_key(self, store: TableStore) -> None:
        """Both writers' keys survive: the loser re-reads and replans."""
        batch = _batch([customer(1, "Alice")])

        def rival(inner: TableStore, handle: TableHandle) -> None:
            _, version = inner.current_schema(handle)
            inner.commit(handle, [], [{"id": 2, "user_name": "Bob", "__op": "c"}], version)

        racing = InterleavingStore(store, before_commit=rival)
        handle = _prepare(racing, batch)

        result = _merger(racing).apply(handle, batch, WriteMode.UPSERT)

        assert result.attempts == 2
        assert _names(store.scan(handle)) == {1: "Alice", 2: "Bob"}

    def test_concurrent_writer_applied_same_batch(self, store: TableStore) -> None:
        """Racing the same batch converges: the loser finds nothing left to do."""
        batch = _batch([customer(1, "Alice"), customer(2, "Bob")])

        def rival(inner: TableStore, handle: TableHandle) -> None:
            _merger(inner).apply(handle, batch, WriteMode.UPSERT)

        racing = InterleavingStore(store, before_commit=rival)
        handle = _prepare(racing, batch)

        result = _merger(racing).apply(handle, batch, WriteMode.UPSERT)

        assert not result.committed
        assert result.noop_keys == 2
        assert len(store.scan(handle)) == 2

    def test_lost_commit_acknowledgement(self, store: TableStore) -> None:
        """A commit that landed but reported failure is not applied twice."""
        lossy = LostAckStore(store)
        retrying = RetryingTableStore(lossy, RetryManager(RetryConfig.immediate(3)))
        batch = _batch([customer(1, "Alice"), customer(2, "Bob")])
        handle = _prepare(retrying, batch)

        result = _merger(retrying).apply(handle, batch, WriteMode.UPSERT)

        assert not result.committed
        assert result.noop_keys == 2
        assert len(store.scan(handle)) == 2

    def test_lost_acknowledgement_on_append_duplicates(self, store: TableStore) -> None:
        """Appends carry no key to replay against, so a lost ack is re-appended."""
        lossy = LostAckStore(store)
        retrying = RetryingTableStore(lossy, RetryManager(RetryConfig.immediate(3)))
        batch = _batch([customer(1, "Alice")], upsert=False)
        handle = _prepare(retrying, batch, identifier=False)

        _merger(retrying).apply(handle, batch, WriteMode.APPEND)

        assert len(store.scan(handle)) == 2
