# src/cdcmerge/engine/schema_reconciler.py
"""SchemaReconciler: additive schema evolution for a batch.

Computes which columns a deduplicated batch needs that the table lacks and
adds them, as nullable columns typed from the first non-null value seen in
batch order. Struct values are reconciled recursively, so a new field inside
an existing struct is added under that struct.

Existing columns are never altered: a value that does not fit its column's
type is a TypeMismatchError, never a widening.

Evolution is optimistic. Read (schema, version), compute the delta, submit it
tagged with that version; on a version conflict re-read and recompute. The
recomputation is idempotent: if a concurrent writer already added the needed
columns the delta is empty and nothing is submitted.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from cdcmerge.contracts import (
    ChangeEvent,
    Column,
    ColumnAddition,
    ColumnType,
    DedupedBatch,
    SchemaConflictError,
    TableHandle,
    TableSchema,
    TableStore,
    TypeMismatchError,
    VersionConflictError,
    accepts,
    type_of,
)
from cdcmerge.core.logging import get_logger
from cdcmerge.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager

logger = get_logger(__name__)


@dataclass(frozen=True)
class SchemaDelta:
    """Additions a batch needs, plus columns dropped because additions are disabled."""

    additions: tuple[ColumnAddition, ...] = ()
    dropped: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.additions


@dataclass
class _Node:
    """Working copy of one column while a batch is walked."""

    type: ColumnType
    nullable: bool
    existing: bool
    children: dict[str, _Node] = field(default_factory=dict)


def _tree(columns: Iterable[Column]) -> dict[str, _Node]:
    return {
        column.name: _Node(type=column.type, nullable=column.nullable, existing=True, children=_tree(column.fields))
        for column in columns
    }


def _non_finite(value: Any) -> bool:
    if isinstance(value, float):
        return not math.isfinite(value)
    if isinstance(value, list | tuple):
        return any(_non_finite(item) for item in value)
    return False


def _tag(value: Any) -> str:
    try:
        tag = type_of(value)
    except TypeError:
        return type(value).__name__
    return tag.value if tag is not None else "null"


class _Walker:
    """Accumulates the column tree a set of rows requires."""

    def __init__(self, tree: dict[str, _Node], *, allow_additions: bool, destination: str | None) -> None:
        self.tree = tree
        self.allow_additions = allow_additions
        self.destination = destination
        self.dropped: list[str] = []

    def walk(self, row: Mapping[str, Any], index: int) -> None:
        self._walk(self.tree, (), row, index)

    def _walk(self, children: dict[str, _Node], parent: tuple[str, ...], row: Mapping[str, Any], index: int) -> None:
        for name, value in row.items():
            path = (*parent, name)
            dotted = ".".join(path)
            node = children.get(name)
            if value is None:
                if node is not None and not node.nullable:
                    raise TypeMismatchError(
                        f"Event {index}: column {dotted} is required but the value is null",
                        column=dotted,
                        expected=node.type.value,
                        actual="null",
                        destination=self.destination,
                        event_index=index,
                    )
                continue
            if _non_finite(value):
                raise TypeMismatchError(
                    f"Event {index}: column {dotted} holds NaN or Infinity",
                    column=dotted,
                    expected=node.type.value if node is not None else None,
                    actual="float",
                    destination=self.destination,
                    event_index=index,
                )
            if node is None:
                if not self.allow_additions:
                    if dotted not in self.dropped:
                        self.dropped.append(dotted)
                    continue
                try:
                    tag = type_of(value)
                except TypeError:
                    raise TypeMismatchError(
                        f"Event {index}: column {dotted} holds a {type(value).__name__}, which has no column type",
                        column=dotted,
                        actual=type(value).__name__,
                        destination=self.destination,
                        event_index=index,
                    ) from None
                # value is not None, so tag is not None
                assert tag is not None
                node = _Node(type=tag, nullable=True, existing=False)
                children[name] = node
            elif not accepts(node.type, value):
                raise TypeMismatchError(
                    f"Event {index}: column {dotted} is {node.type.value} but the value is {_tag(value)}",
                    column=dotted,
                    expected=node.type.value,
                    actual=_tag(value),
                    destination=self.destination,
                    event_index=index,
                )
            if node.type is ColumnType.STRUCT:
                self._walk(node.children, path, value, index)

    def additions(self) -> tuple[ColumnAddition, ...]:
        return tuple(_collect(self.tree, ()))


def _collect(children: dict[str, _Node], parent: tuple[str, ...]) -> list[ColumnAddition]:
    additions: list[ColumnAddition] = []
    for name, node in children.items():
        if node.existing:
            additions.extend(_collect(node.children, (*parent, name)))
        else:
            additions.append(_as_addition(parent, name, node))
    return additions


def _as_addition(parent: tuple[str, ...], name: str, node: _Node) -> ColumnAddition:
    path = (*parent, name)
    return ColumnAddition(
        parent=parent,
        name=name,
        type=node.type,
        fields=tuple(_as_addition(path, child_name, child) for child_name, child in node.children.items()),
    )


def compute_delta(
    schema: TableSchema,
    deduped: DedupedBatch,
    *,
    allow_field_addition: bool = True,
) -> SchemaDelta:
    """Columns the batch needs that schema lacks.

    Pure and CPU-only. Every winning event's row is checked against the
    existing columns (and against columns added earlier in the same batch).

    Raises:
        TypeMismatchError: A value does not fit its column, a required column
            is null, or a value has no column type at all.
    """
    walker = _Walker(_tree(schema.columns), allow_additions=allow_field_addition, destination=deduped.destination)
    for entry in deduped:
        walker.walk(entry.event.row(), entry.index)
    return SchemaDelta(additions=walker.additions(), dropped=tuple(walker.dropped))


def infer_schema(event: ChangeEvent, *, identifier: bool, index: int = 0) -> TableSchema:
    """Schema description of a single event, used to create its table.

    Columns come from the event's row (values plus key). With identifier set,
    the key columns become required identifier fields.

    Raises:
        TypeMismatchError: A value has no column type.
    """
    walker = _Walker({}, allow_additions=True, destination=event.destination)
    walker.walk(event.row(), index)
    schema = TableSchema().evolve(walker.additions())
    if not identifier or not event.key_fields:
        return schema
    key_names = set(event.key_fields)
    columns = tuple(
        Column(id=column.id, name=column.name, type=column.type, nullable=False, fields=column.fields)
        if column.name in key_names
        else column
        for column in schema.columns
    )
    identifier_ids = frozenset(column.id for column in columns if column.name in key_names)
    return TableSchema(columns=columns, identifier_field_ids=identifier_ids, last_column_id=schema.last_column_id)


class SchemaReconciler:
    """Evolves a table's schema so a batch fits, under optimistic concurrency.

    Args:
        store: Table store
        retry: Bounds the re-read/recompute/resubmit loop on version conflicts
        allow_field_addition: When False, unknown columns are never added
            (writes drop them) but existing columns are still type-checked
    """

    def __init__(
        self,
        store: TableStore,
        retry: RetryManager | None = None,
        *,
        allow_field_addition: bool = True,
    ) -> None:
        self._store = store
        self._retry = retry or RetryManager(RetryConfig())
        self._allow_field_addition = allow_field_addition

    def compute_delta(self, schema: TableSchema, deduped: DedupedBatch) -> SchemaDelta:
        return compute_delta(schema, deduped, allow_field_addition=self._allow_field_addition)

    def reconcile(self, handle: TableHandle, deduped: DedupedBatch) -> TableSchema:
        """Make the table schema accommodate the batch.

        Returns:
            The schema the batch was reconciled against, additions included.

        Raises:
            TypeMismatchError: Batch values do not fit existing columns
            SchemaConflictError: Version conflicts outlasted the retry bound
        """
        log = logger.bind(destination=deduped.destination, table=handle.table_id)

        def attempt() -> TableSchema:
            schema, version = self._store.current_schema(handle)
            delta = self.compute_delta(schema, deduped)
            if delta.dropped:
                log.warning("Dropping columns unknown to the table", columns=list(delta.dropped))
            if delta.is_empty:
                return schema
            new_version = self._store.evolve_schema(handle, delta.additions, version)
            log.info(
                "Schema evolved",
                added=[addition.dotted for addition in delta.additions],
                from_version=version,
                to_version=new_version,
            )
            return schema.evolve(delta.additions)

        def on_retry(attempt_number: int, error: BaseException) -> None:
            log.info("Schema version conflict, re-reading", attempt=attempt_number, error=str(error))

        try:
            return self._retry.execute_with_retry(
                attempt,
                is_retryable=lambda e: isinstance(e, VersionConflictError),
                on_retry=on_retry,
            )
        except MaxRetriesExceeded as e:
            raise SchemaConflictError(
                f"Schema evolution of {handle.table_id} lost {e.attempts} version races: {e.last_error}",
                attempts=e.attempts,
                destination=deduped.destination,
            ) from e
