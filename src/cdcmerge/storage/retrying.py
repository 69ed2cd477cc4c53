# src/cdcmerge/storage/retrying.py
"""Transport retries around any TableStore.

Every call is retried on StorageUnavailableError with exponential backoff
until the attempt bound, then the last StorageUnavailableError surfaces.
Version conflicts, missing tables and everything else pass straight through:
they are answers, not transport failures.

Retrying a commit whose outcome is unknown is safe. If the first attempt did
land, the version moved and the replay fails its version check, which sends
the merger back to re-read; the re-read then finds the keys already applied.
"""

from collections.abc import Callable, Sequence
from typing import TypeVar

from cdcmerge.contracts import (
    ColumnAddition,
    KeyTuple,
    Row,
    StorageUnavailableError,
    TableHandle,
    TableLookup,
    TableSchema,
    TableStore,
)
from cdcmerge.core.logging import get_logger
from cdcmerge.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager

logger = get_logger(__name__)

T = TypeVar("T")


def _is_transport_failure(error: BaseException) -> bool:
    return isinstance(error, StorageUnavailableError)


class RetryingTableStore:
    """TableStore decorator adding bounded transport retries."""

    def __init__(self, inner: TableStore, retry: RetryManager | None = None) -> None:
        self._inner = inner
        self._retry = retry or RetryManager(RetryConfig(max_attempts=3, base_delay=0.5, max_delay=30.0))

    @property
    def inner(self) -> TableStore:
        return self._inner

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        def on_retry(attempt: int, error: BaseException) -> None:
            logger.warning("Storage call failed, retrying", operation=operation, attempt=attempt, error=str(error))

        try:
            return self._retry.execute_with_retry(fn, is_retryable=_is_transport_failure, on_retry=on_retry)
        except MaxRetriesExceeded as e:
            logger.error("Storage unavailable, giving up", operation=operation, attempts=e.attempts)
            assert isinstance(e.last_error, StorageUnavailableError)
            raise e.last_error from e

    def load_or_create_table(self, table_id: str, initial_schema: TableSchema) -> TableHandle:
        return self._call("load_or_create_table", lambda: self._inner.load_or_create_table(table_id, initial_schema))

    def current_schema(self, handle: TableHandle) -> tuple[TableSchema, int]:
        return self._call("current_schema", lambda: self._inner.current_schema(handle))

    def evolve_schema(self, handle: TableHandle, additions: Sequence[ColumnAddition], expected_version: int) -> int:
        return self._call("evolve_schema", lambda: self._inner.evolve_schema(handle, additions, expected_version))

    def lookup(self, handle: TableHandle, keys: Sequence[KeyTuple]) -> TableLookup:
        return self._call("lookup", lambda: self._inner.lookup(handle, keys))

    def commit(
        self,
        handle: TableHandle,
        deletes_by_key: Sequence[KeyTuple],
        inserted_rows: Sequence[Row],
        expected_version: int,
    ) -> int:
        return self._call(
            "commit",
            lambda: self._inner.commit(handle, deletes_by_key, inserted_rows, expected_version),
        )

    def scan(self, handle: TableHandle) -> list[Row]:
        return self._call("scan", lambda: self._inner.scan(handle))
