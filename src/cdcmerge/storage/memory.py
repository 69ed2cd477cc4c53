# src/cdcmerge/storage/memory.py
"""In-process TableStore.

Keeps every table in a dict behind a single lock. Compare-and-swap semantics
are the same as the SQL store, so it is a faithful stand-in for tests and
for embedding the engine without a database. Rows handed out are deep
copies: callers can never mutate stored state.
"""

from __future__ import annotations

import copy
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field

from cdcmerge.contracts import (
    ColumnAddition,
    KeyTuple,
    Row,
    TableHandle,
    TableLookup,
    TableNotFoundError,
    TableSchema,
    VersionConflictError,
)
from cdcmerge.core.logging import get_logger
from cdcmerge.storage.rows import matches_key, rows_by_key

logger = get_logger(__name__)


@dataclass
class _TableState:
    schema: TableSchema
    version: int = 0
    rows: list[Row] = field(default_factory=list)


class InMemoryTableStore:
    """Thread-safe dict-backed table store."""

    def __init__(self) -> None:
        self._tables: dict[str, _TableState] = {}
        self._lock = threading.Lock()

    def _state(self, table_id: str) -> _TableState:
        try:
            return self._tables[table_id]
        except KeyError:
            raise TableNotFoundError(f"Table {table_id} does not exist") from None

    def _check_version(self, table_id: str, state: _TableState, expected_version: int) -> None:
        if state.version != expected_version:
            raise VersionConflictError(table_id, expected_version, state.version)

    def table_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._tables)

    def load_or_create_table(self, table_id: str, initial_schema: TableSchema) -> TableHandle:
        with self._lock:
            if table_id not in self._tables:
                self._tables[table_id] = _TableState(schema=initial_schema)
                logger.info("Table created", table=table_id, columns=initial_schema.names)
        return TableHandle(table_id=table_id)

    def current_schema(self, handle: TableHandle) -> tuple[TableSchema, int]:
        with self._lock:
            state = self._state(handle.table_id)
            return state.schema, state.version

    def evolve_schema(self, handle: TableHandle, additions: Sequence[ColumnAddition], expected_version: int) -> int:
        with self._lock:
            state = self._state(handle.table_id)
            self._check_version(handle.table_id, state, expected_version)
            state.schema = state.schema.evolve(additions)
            state.version += 1
            return state.version

    def lookup(self, handle: TableHandle, keys: Sequence[KeyTuple]) -> TableLookup:
        with self._lock:
            state = self._state(handle.table_id)
            grouped = rows_by_key(state.rows, keys)
            return TableLookup(schema=state.schema, version=state.version, rows=copy.deepcopy(grouped))

    def commit(
        self,
        handle: TableHandle,
        deletes_by_key: Sequence[KeyTuple],
        inserted_rows: Sequence[Row],
        expected_version: int,
    ) -> int:
        with self._lock:
            state = self._state(handle.table_id)
            self._check_version(handle.table_id, state, expected_version)
            kept = [row for row in state.rows if not any(matches_key(row, key) for key in deletes_by_key)]
            kept.extend(copy.deepcopy(list(inserted_rows)))
            state.rows = kept
            state.version += 1
            return state.version

    def scan(self, handle: TableHandle) -> list[Row]:
        with self._lock:
            return copy.deepcopy(self._state(handle.table_id).rows)
