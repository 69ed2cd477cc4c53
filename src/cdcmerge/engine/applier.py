# src/cdcmerge/engine/applier.py
"""BatchApplier: per-destination orchestration of the merge stages.

Each destination batch walks

    Received -> KeysExtracted -> Deduplicated -> SchemaReconciled -> Committing

and ends in exactly one of Committed or Aborted. No stage is skipped, and a
failure in any stage goes straight to Aborted; nothing after it runs.

Destinations are independent. apply() runs them in parallel and one
destination failing never affects another. Batches for the same destination
are serialized by a per-destination lock: this only keeps two local workers
from burning retries against each other, correctness comes from the store's
version-conditioned commits.

Cancellation (a threading.Event) is checked between stages. Once the commit
call has been issued it is always awaited, so an outcome never claims
"aborted" for a write that may have landed.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING

from cdcmerge.contracts import (
    BatchCancelledError,
    BatchReport,
    BatchStage,
    ChangeEvent,
    DestinationOutcome,
    MergeError,
    MissingKeyPolicy,
    TableStore,
    WriteMode,
)
from cdcmerge.core.config import CdcMergeSettings
from cdcmerge.core.logging import batch_context, configure_logging, get_logger
from cdcmerge.core.naming import TableNamer
from cdcmerge.engine.dedup import Deduplicator
from cdcmerge.engine.keys import KeyExtractor
from cdcmerge.engine.merger import TableMerger
from cdcmerge.engine.retry import RetryConfig, RetryManager
from cdcmerge.engine.schema_reconciler import SchemaReconciler, infer_schema

if TYPE_CHECKING:
    import structlog

logger = get_logger(__name__)

# Legal successor of every non-terminal stage (ABORTED is reachable from all of them)
_NEXT_STAGE: dict[BatchStage, BatchStage] = {
    BatchStage.RECEIVED: BatchStage.KEYS_EXTRACTED,
    BatchStage.KEYS_EXTRACTED: BatchStage.DEDUPLICATED,
    BatchStage.DEDUPLICATED: BatchStage.SCHEMA_RECONCILED,
    BatchStage.SCHEMA_RECONCILED: BatchStage.COMMITTING,
    BatchStage.COMMITTING: BatchStage.COMMITTED,
}


class _Lifecycle:
    """Records stage transitions on an outcome and refuses illegal ones."""

    def __init__(self, outcome: DestinationOutcome, log: structlog.stdlib.BoundLogger) -> None:
        self._outcome = outcome
        self._log = log
        outcome.stages.append(BatchStage.RECEIVED)

    @property
    def stage(self) -> BatchStage:
        return self._outcome.stage

    @property
    def next_stage(self) -> BatchStage:
        return _NEXT_STAGE[self.stage]

    def advance(self, stage: BatchStage) -> None:
        expected = _NEXT_STAGE.get(self.stage)
        if stage is not expected:
            raise RuntimeError(f"Illegal batch transition {self.stage.value} -> {stage.value}")
        self._outcome.stages.append(stage)
        self._log.debug("Batch stage", stage=stage.value)

    def abort(self, error: MergeError) -> None:
        failed_in = self.stage
        self._outcome.stages.append(BatchStage.ABORTED)
        self._outcome.error_kind = error.kind
        self._outcome.error_message = str(error)
        self._outcome.event_index = error.event_index
        self._log.warning(
            "Batch aborted",
            stage=failed_in.value,
            error_kind=error.kind.value,
            event_index=error.event_index,
            error=str(error),
        )


class BatchApplier:
    """Applies destination batches to their tables.

    Args:
        store: Table store (wrap it in RetryingTableStore for transport retries)
        settings: Merge behaviour, retry bounds, naming and worker count
        namer: Destination -> table mapping; built from settings when omitted
    """

    def __init__(
        self,
        store: TableStore,
        settings: CdcMergeSettings | None = None,
        *,
        namer: TableNamer | None = None,
    ) -> None:
        settings = settings or CdcMergeSettings()
        self._store = store
        self._merge = settings.merge
        self._namer = namer or TableNamer(settings.naming)
        self._max_workers = settings.concurrency.max_workers
        self._extractor = KeyExtractor()
        self._deduplicator = Deduplicator(settings.merge.source_ts_column)
        self._reconciler = SchemaReconciler(
            store,
            RetryManager(RetryConfig.from_settings(settings.schema_retry)),
            allow_field_addition=settings.merge.allow_field_addition,
        )
        self._merger = TableMerger(
            store,
            RetryManager(RetryConfig.from_settings(settings.commit_retry)),
            op_column=settings.merge.op_column,
            keep_deletes=settings.merge.upsert_keep_deletes,
        )
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def from_settings(cls, settings: CdcMergeSettings) -> BatchApplier:
        """Applier over the store the settings describe, with transport retries.

        Also configures logging from settings.logging, so this is the one
        call an embedding service needs.
        """
        from cdcmerge.storage import create_table_store

        configure_logging(settings.logging)
        return cls(create_table_store(settings), settings)

    @property
    def default_mode(self) -> WriteMode:
        return WriteMode.UPSERT if self._merge.upsert else WriteMode.APPEND

    def _destination_lock(self, destination: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(destination)
            if lock is None:
                lock = threading.Lock()
                self._locks[destination] = lock
            return lock

    def apply_batch(
        self,
        destination: str,
        events: Sequence[ChangeEvent],
        *,
        mode: WriteMode | None = None,
        cancel_event: threading.Event | None = None,
    ) -> DestinationOutcome:
        """Run one destination batch through every stage.

        Known failures (MergeError) are reported on the outcome; anything
        else is a bug and propagates.
        """
        requested = mode or self.default_mode
        outcome = DestinationOutcome(destination=destination, table_id=None, mode=requested, received=len(events))
        log = logger
        lifecycle = _Lifecycle(outcome, log)

        with batch_context(destination=destination), self._destination_lock(destination):
            try:
                self._run(destination, events, outcome, lifecycle, cancel_event, log)
            except MergeError as e:
                if e.destination is None:
                    e.destination = destination
                lifecycle.abort(e)
        return outcome

    def apply(
        self,
        batches: Mapping[str, Sequence[ChangeEvent]],
        *,
        mode: WriteMode | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BatchReport:
        """Apply a multi-destination delivery; destinations succeed or fail independently.

        Outcomes are reported in the order of the input mapping.
        """
        if not batches:
            return BatchReport(outcomes=())
        workers = min(self._max_workers, len(batches))
        if workers == 1:
            outcomes = tuple(
                self.apply_batch(destination, events, mode=mode, cancel_event=cancel_event) for destination, events in batches.items()
            )
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cdcmerge") as pool:
                futures = [
                    pool.submit(self.apply_batch, destination, events, mode=mode, cancel_event=cancel_event)
                    for destination, events in batches.items()
                ]
                outcomes = tuple(future.result() for future in futures)

        report = BatchReport(outcomes=outcomes)
        logger.info(
            "Delivery applied",
            destinations=len(outcomes),
            succeeded=len(report.succeeded),
            failed=[outcome.destination for outcome in report.failed],
        )
        return report

    def apply_events(
        self,
        events: Iterable[ChangeEvent],
        *,
        mode: WriteMode | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BatchReport:
        """Group a flat event stream by destination (order kept) and apply it."""
        return self.apply(group_by_destination(events), mode=mode, cancel_event=cancel_event)

    def _resolve_mode(self, destination: str, events: Sequence[ChangeEvent], requested: WriteMode, log: structlog.stdlib.BoundLogger) -> WriteMode:
        if requested is not WriteMode.UPSERT or self._merge.missing_key_policy is not MissingKeyPolicy.APPEND:
            return requested
        if events and not any(event.key_fields for event in events):
            log.warning("Upsert requested but no event carries key fields, appending instead")
            return WriteMode.APPEND
        return requested

    def _check_cancelled(self, cancel_event: threading.Event | None, lifecycle: _Lifecycle, destination: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise BatchCancelledError(
                f"Batch for {destination} cancelled before {lifecycle.next_stage.value}",
                destination=destination,
            )

    def _run(
        self,
        destination: str,
        events: Sequence[ChangeEvent],
        outcome: DestinationOutcome,
        lifecycle: _Lifecycle,
        cancel_event: threading.Event | None,
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        table_id = self._namer.table_id(destination)
        outcome.table_id = table_id
        mode = self._resolve_mode(destination, events, outcome.mode, log)
        outcome.mode = mode
        upsert = mode is WriteMode.UPSERT

        self._check_cancelled(cancel_event, lifecycle, destination)
        extracted = self._extractor.extract_all(events, require_scalar_keys=upsert)
        lifecycle.advance(BatchStage.KEYS_EXTRACTED)

        self._check_cancelled(cancel_event, lifecycle, destination)
        deduped = self._deduplicator.dedupe(destination, extracted, upsert=upsert)
        outcome.deduplicated = len(deduped)
        lifecycle.advance(BatchStage.DEDUPLICATED)

        self._check_cancelled(cancel_event, lifecycle, destination)
        if not deduped:
            # Empty delivery: no table is created or touched
            lifecycle.advance(BatchStage.SCHEMA_RECONCILED)
            lifecycle.advance(BatchStage.COMMITTING)
            lifecycle.advance(BatchStage.COMMITTED)
            return
        sample = deduped.entries[0]
        initial_schema = infer_schema(
            sample.event, identifier=upsert and self._merge.create_identifier_fields, index=sample.index
        )
        handle = self._store.load_or_create_table(table_id, initial_schema)
        self._reconciler.reconcile(handle, deduped)
        lifecycle.advance(BatchStage.SCHEMA_RECONCILED)

        self._check_cancelled(cancel_event, lifecycle, destination)
        lifecycle.advance(BatchStage.COMMITTING)
        outcome.commit = self._merger.apply(handle, deduped, mode)
        lifecycle.advance(BatchStage.COMMITTED)
        log.info(
            "Destination batch committed",
            table=table_id,
            mode=mode.value,
            received=len(events),
            deduplicated=len(deduped),
            version=outcome.commit.version,
        )


def group_by_destination(events: Iterable[ChangeEvent]) -> dict[str, list[ChangeEvent]]:
    """Split a stream into per-destination batches, keeping source order within each."""
    batches: dict[str, list[ChangeEvent]] = {}
    for event in events:
        batches.setdefault(event.destination, []).append(event)
    return batches
