# src/cdcmerge/contracts/storage.py
"""Catalog/storage collaborator protocol.

The merge engine never touches durable state directly. Everything goes
through a TableStore, and every mutating call is conditioned on the table
version the caller read (compare-and-swap). A stale version raises
VersionConflictError; transport failures raise StorageUnavailableError.

One version counter covers both schema and data: an evolve and a commit each
advance it by one.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from cdcmerge.contracts.events import KeyTuple
from cdcmerge.contracts.schema import ColumnAddition, TableSchema

Row = dict[str, Any]


@dataclass(frozen=True)
class TableIdentifier:
    """Namespace-qualified table name."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}.{self.name}" if self.namespace else self.name


@dataclass(frozen=True)
class TableHandle:
    """Session-scoped reference to a persistent table.

    Carries no mutable state: the current schema and version always come
    from the store, never from the handle.
    """

    table_id: str


@dataclass(frozen=True)
class TableLookup:
    """Consistent read of the rows matching a set of keys.

    rows maps every requested key to the rows currently stored under it
    (an empty list when the key is absent).
    """

    schema: TableSchema
    version: int
    rows: Mapping[KeyTuple, list[Row]] = field(default_factory=dict)


@runtime_checkable
class TableStore(Protocol):
    """Narrow interface to the versioned table store."""

    def load_or_create_table(self, table_id: str, initial_schema: TableSchema) -> TableHandle:
        """Open a table, creating it with initial_schema if it does not exist."""
        ...

    def current_schema(self, handle: TableHandle) -> tuple[TableSchema, int]:
        """Current schema and the version it belongs to."""
        ...

    def evolve_schema(self, handle: TableHandle, additions: Sequence[ColumnAddition], expected_version: int) -> int:
        """Apply additive column changes; returns the new version."""
        ...

    def lookup(self, handle: TableHandle, keys: Sequence[KeyTuple]) -> TableLookup:
        """Rows stored under each key, with the schema and version they were read at."""
        ...

    def commit(
        self,
        handle: TableHandle,
        deletes_by_key: Sequence[KeyTuple],
        inserted_rows: Sequence[Row],
        expected_version: int,
    ) -> int:
        """Atomically delete rows matching the keys and insert new rows; returns the new version."""
        ...

    def scan(self, handle: TableHandle) -> list[Row]:
        """All rows of the table at its current version."""
        ...
