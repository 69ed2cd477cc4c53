# src/cdcmerge/contracts/results.py
"""Operation outcomes reported upstream.

These types answer: "What happened to a destination batch?"
"""

from __future__ import annotations

from dataclasses import dataclass, field

from cdcmerge.contracts.enums import BatchStage, ErrorKind, WriteMode


@dataclass(frozen=True)
class CommitResult:
    """Outcome of one TableMerger.apply call.

    Attributes:
        table_id: Table written
        version: Table version after the commit (the version read when nothing was committed)
        rows_inserted: Rows added by the successful attempt
        rows_deleted: Keys whose existing rows were removed
        noop_keys: Keys whose stored row already reflected the batch
        attempts: Commit attempts made (1 = no conflict)
        committed: False when the delta was empty and no commit was issued
    """

    table_id: str
    version: int
    rows_inserted: int
    rows_deleted: int
    noop_keys: int = 0
    attempts: int = 1
    committed: bool = True


@dataclass
class DestinationOutcome:
    """Terminal report for one destination batch.

    stages records every stage the batch entered, in order, ending with
    COMMITTED or ABORTED.
    """

    destination: str
    table_id: str | None
    mode: WriteMode
    received: int
    stages: list[BatchStage] = field(default_factory=list)
    deduplicated: int | None = None
    commit: CommitResult | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    event_index: int | None = None

    @property
    def stage(self) -> BatchStage:
        return self.stages[-1] if self.stages else BatchStage.RECEIVED

    @property
    def succeeded(self) -> bool:
        return self.stage is BatchStage.COMMITTED

    @property
    def retriable(self) -> bool:
        return self.error_kind in (
            ErrorKind.SCHEMA_CONFLICT,
            ErrorKind.COMMIT_CONFLICT,
            ErrorKind.STORAGE_UNAVAILABLE,
            ErrorKind.CANCELLED,
        )


@dataclass(frozen=True)
class BatchReport:
    """Outcomes for every destination of a multi-table delivery."""

    outcomes: tuple[DestinationOutcome, ...]

    @property
    def succeeded(self) -> list[DestinationOutcome]:
        return [outcome for outcome in self.outcomes if outcome.succeeded]

    @property
    def failed(self) -> list[DestinationOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.succeeded]

    @property
    def all_succeeded(self) -> bool:
        return not self.failed

    def outcome_for(self, destination: str) -> DestinationOutcome:
        for outcome in self.outcomes:
            if outcome.destination == destination:
                return outcome
        raise KeyError(destination)
