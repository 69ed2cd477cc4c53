# src/cdcmerge/engine/merger.py
"""TableMerger: apply a deduplicated batch as one atomic commit.

Append: every entry becomes one inserted row. No data is read.

Upsert: per key, delete-then-insert. Existing rows under the key are removed
and the winning event's row inserted; a delete event only removes (unless
tombstones are kept). Keys the batch does not touch are left alone.

Each attempt reads the table at some version, plans its delta against what
it read, and commits conditioned on that version. A version conflict means
someone else committed in between: the attempt is replayed from a fresh read.
Replay is idempotent per key. A key whose single stored row already equals
the resolved row, or a delete whose key is already gone, contributes nothing,
so redelivering an applied batch (or racing a writer applying the same batch)
converges to the same row set.
"""

from dataclasses import dataclass, field

from cdcmerge.contracts import (
    OP_COLUMN,
    CommitConflictError,
    CommitResult,
    DedupedBatch,
    KeyTuple,
    Row,
    TableHandle,
    TableLookup,
    TableStore,
    VersionConflictError,
    WriteMode,
)
from cdcmerge.core.canonical import rows_equal
from cdcmerge.core.logging import get_logger
from cdcmerge.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager

logger = get_logger(__name__)


@dataclass
class UpsertPlan:
    """Delta one upsert attempt will commit."""

    deletes: list[KeyTuple] = field(default_factory=list)
    inserts: list[Row] = field(default_factory=list)
    noop_keys: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.deletes and not self.inserts


class TableMerger:
    """Commits deduplicated batches to a table store.

    Args:
        store: Table store
        retry: Bounds the re-read/replan/recommit loop on version conflicts
        op_column: Value column holding the change operation
        keep_deletes: Insert delete events as tombstone rows instead of
            only removing their key
    """

    def __init__(
        self,
        store: TableStore,
        retry: RetryManager | None = None,
        *,
        op_column: str = OP_COLUMN,
        keep_deletes: bool = False,
    ) -> None:
        self._store = store
        self._retry = retry or RetryManager(RetryConfig())
        self._op_column = op_column
        self._keep_deletes = keep_deletes

    def plan_upsert(self, lookup: TableLookup, deduped: DedupedBatch) -> UpsertPlan:
        """Per-key delete/insert decisions against one consistent read.

        Pure: the same lookup and batch always give the same plan.
        """
        plan = UpsertPlan()
        for entry in deduped:
            existing = lookup.rows.get(entry.key, [])
            if entry.event.is_delete(self._op_column) and not self._keep_deletes:
                if existing:
                    plan.deletes.append(entry.key)
                else:
                    plan.noop_keys += 1
                continue
            row = lookup.schema.project(entry.event.row())
            if len(existing) == 1 and rows_equal(existing[0], row):
                plan.noop_keys += 1
                continue
            if existing:
                plan.deletes.append(entry.key)
            plan.inserts.append(row)
        return plan

    def apply(self, handle: TableHandle, deduped: DedupedBatch, mode: WriteMode) -> CommitResult:
        """Commit the batch.

        Raises:
            ValueError: Upsert requested for a batch that was not deduplicated
            CommitConflictError: Version conflicts outlasted the retry bound;
                nothing from this call is visible
        """
        if mode is WriteMode.UPSERT and not deduped.deduplicated:
            raise ValueError("Upsert requires a deduplicated batch")

        log = logger.bind(destination=deduped.destination, table=handle.table_id, mode=mode.value)
        attempts = 0

        def attempt() -> CommitResult:
            nonlocal attempts
            attempts += 1
            if mode is WriteMode.APPEND:
                return self._append(handle, deduped, attempts)
            return self._upsert(handle, deduped, attempts)

        def on_retry(attempt_number: int, error: BaseException) -> None:
            log.info("Commit version conflict, replaying", attempt=attempt_number, error=str(error))

        try:
            result = self._retry.execute_with_retry(
                attempt,
                is_retryable=lambda e: isinstance(e, VersionConflictError),
                on_retry=on_retry,
            )
        except MaxRetriesExceeded as e:
            raise CommitConflictError(
                f"Commit to {handle.table_id} lost {e.attempts} version races: {e.last_error}",
                attempts=e.attempts,
                destination=deduped.destination,
            ) from e

        if result.committed:
            log.info(
                "Batch committed",
                version=result.version,
                inserted=result.rows_inserted,
                deleted=result.rows_deleted,
                noop_keys=result.noop_keys,
                attempts=result.attempts,
            )
        else:
            log.info("Batch already reflected in table, nothing to commit", version=result.version, noop_keys=result.noop_keys)
        return result

    def _append(self, handle: TableHandle, deduped: DedupedBatch, attempts: int) -> CommitResult:
        schema, version = self._store.current_schema(handle)
        rows = [schema.project(entry.event.row()) for entry in deduped]
        if not rows:
            return CommitResult(handle.table_id, version, 0, 0, attempts=attempts, committed=False)
        new_version = self._store.commit(handle, [], rows, version)
        return CommitResult(handle.table_id, new_version, rows_inserted=len(rows), rows_deleted=0, attempts=attempts)

    def _upsert(self, handle: TableHandle, deduped: DedupedBatch, attempts: int) -> CommitResult:
        lookup = self._store.lookup(handle, deduped.keys())
        plan = self.plan_upsert(lookup, deduped)
        if plan.is_empty:
            return CommitResult(
                handle.table_id,
                lookup.version,
                0,
                0,
                noop_keys=plan.noop_keys,
                attempts=attempts,
                committed=False,
            )
        new_version = self._store.commit(handle, plan.deletes, plan.inserts, lookup.version)
        return CommitResult(
            handle.table_id,
            new_version,
            rows_inserted=len(plan.inserts),
            rows_deleted=len(plan.deletes),
            noop_keys=plan.noop_keys,
            attempts=attempts,
        )
