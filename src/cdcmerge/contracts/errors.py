# src/cdcmerge/contracts/errors.py
"""Error contracts for the merge engine.

Every fatal batch failure derives from MergeError and carries an ErrorKind so
the applier can turn it into a failure report without inspecting messages.

VersionConflictError is NOT a MergeError: it is the storage layer's
compare-and-swap signal, consumed by the reconciler and merger retry loops.
It only escapes as SchemaConflictError or CommitConflictError.
"""

from __future__ import annotations

from typing import ClassVar

from cdcmerge.contracts.enums import ErrorKind


class MergeError(Exception):
    """Base class for fatal per-destination batch failures.

    Attributes:
        destination: Destination the failing batch was addressed to (if known)
        event_index: Position of the offending event in the received batch (if known)
    """

    kind: ClassVar[ErrorKind]

    def __init__(
        self,
        message: str,
        *,
        destination: str | None = None,
        event_index: int | None = None,
    ) -> None:
        self.destination = destination
        self.event_index = event_index
        super().__init__(message)

    @property
    def retriable(self) -> bool:
        """Whether redelivering the same batch may succeed."""
        return self.kind in (
            ErrorKind.SCHEMA_CONFLICT,
            ErrorKind.COMMIT_CONFLICT,
            ErrorKind.STORAGE_UNAVAILABLE,
            ErrorKind.CANCELLED,
        )


class InvalidKeyError(MergeError):
    """Upsert batch contains an event whose key is empty or has a null component."""

    kind = ErrorKind.INVALID_KEY


class InvalidDestinationError(MergeError):
    """A destination does not map to a usable table name."""

    kind = ErrorKind.INVALID_DESTINATION


class TypeMismatchError(MergeError):
    """A value cannot be stored in its column's type.

    Attributes:
        column: Dotted column path
        expected: Column type already assigned (None when the value has no supported type)
        actual: Type tag of the offending value
    """

    kind = ErrorKind.TYPE_MISMATCH

    def __init__(
        self,
        message: str,
        *,
        column: str,
        expected: str | None = None,
        actual: str | None = None,
        destination: str | None = None,
        event_index: int | None = None,
    ) -> None:
        self.column = column
        self.expected = expected
        self.actual = actual
        super().__init__(message, destination=destination, event_index=event_index)


class _ConflictExhaustedError(MergeError):
    def __init__(self, message: str, *, attempts: int, destination: str | None = None) -> None:
        self.attempts = attempts
        super().__init__(message, destination=destination)


class SchemaConflictError(_ConflictExhaustedError):
    """Schema evolution kept losing the version race until retries ran out."""

    kind = ErrorKind.SCHEMA_CONFLICT


class CommitConflictError(_ConflictExhaustedError):
    """Data commit kept losing the version race until retries ran out."""

    kind = ErrorKind.COMMIT_CONFLICT


class StorageUnavailableError(MergeError):
    """Transport or storage failure on a catalog/storage call."""

    kind = ErrorKind.STORAGE_UNAVAILABLE


class BatchCancelledError(MergeError):
    """Cancellation was observed between two stages of a batch."""

    kind = ErrorKind.CANCELLED


class VersionConflictError(Exception):
    """A version-conditioned storage call found a newer table version.

    Attributes:
        table_id: Table the call targeted
        expected_version: Version the caller read
        actual_version: Version the store holds now
    """

    def __init__(self, table_id: str, expected_version: int, actual_version: int) -> None:
        self.table_id = table_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(f"Table {table_id} is at version {actual_version}, expected {expected_version}")


class TableNotFoundError(Exception):
    """A handle refers to a table the store does not know."""
