# src/cdcmerge/contracts/schema.py
"""Table schema contracts.

A TableSchema is an ordered set of typed columns. Each column keeps a stable
numeric id for its whole life; evolution only ever appends nullable columns
(at the top level or inside an existing struct), so a schema version read
earlier is always a prefix-compatible view of a later one.

Value typing is a tagged union (ColumnType). type_of() is the single place a
Python value is mapped to a tag, so inference and mismatch checks cannot
disagree about what a value is.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from cdcmerge.contracts.enums import ColumnType


def type_of(value: Any) -> ColumnType | None:
    """Tag a value with its column type.

    Returns:
        The ColumnType for the value, or None for null.

    Raises:
        TypeError: If the value has no column type (not JSON-shaped).
    """
    if value is None:
        return None
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return ColumnType.BOOLEAN
    if isinstance(value, int):
        return ColumnType.INTEGER
    if isinstance(value, float):
        return ColumnType.FLOAT
    if isinstance(value, str):
        return ColumnType.STRING
    if isinstance(value, Mapping):
        return ColumnType.STRUCT
    if isinstance(value, list | tuple):
        return ColumnType.LIST
    raise TypeError(f"Unsupported value type: {type(value).__name__}")


def accepts(column_type: ColumnType, value: Any) -> bool:
    """Whether a column of column_type can store value.

    Null is always accepted here; nullability is a column property checked by
    the caller. Integers are accepted by float columns (value promotion; the
    column itself is never widened).
    """
    try:
        actual = type_of(value)
    except TypeError:
        return False
    if actual is None or actual is column_type:
        return True
    return column_type is ColumnType.FLOAT and actual is ColumnType.INTEGER


@dataclass(frozen=True)
class Column:
    """A named, typed column with a stable identity.

    fields is only populated for STRUCT columns.
    """

    id: int
    name: str
    type: ColumnType
    nullable: bool = True
    fields: tuple[Column, ...] = ()

    def field(self, name: str) -> Column | None:
        for child in self.fields:
            if child.name == name:
                return child
        return None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "name": self.name, "type": self.type.value, "nullable": self.nullable}
        if self.fields:
            data["fields"] = [child.to_dict() for child in self.fields]
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Column:
        return cls(
            id=data["id"],
            name=data["name"],
            type=ColumnType(data["type"]),
            nullable=data["nullable"],
            fields=tuple(cls.from_dict(child) for child in data.get("fields", ())),
        )


@dataclass(frozen=True)
class ColumnAddition:
    """One additive schema change.

    parent is the path of the struct the column is added to; () for a
    top-level column. For a new STRUCT column, fields describes its nested
    columns (all new as well).
    """

    parent: tuple[str, ...]
    name: str
    type: ColumnType
    fields: tuple[ColumnAddition, ...] = ()

    @property
    def path(self) -> tuple[str, ...]:
        return (*self.parent, self.name)

    @property
    def dotted(self) -> str:
        return ".".join(self.path)


def _max_id(columns: Iterable[Column]) -> int:
    highest = 0
    for column in columns:
        highest = max(highest, column.id, _max_id(column.fields))
    return highest


@dataclass(frozen=True)
class TableSchema:
    """Ordered columns plus the identifier (primary key) set."""

    columns: tuple[Column, ...] = ()
    identifier_field_ids: frozenset[int] = frozenset()
    last_column_id: int = field(default=-1)

    def __post_init__(self) -> None:
        highest = _max_id(self.columns)
        if self.last_column_id < highest:
            object.__setattr__(self, "last_column_id", highest)
        known = {column.id for column in self.columns}
        missing = self.identifier_field_ids - known
        if missing:
            raise ValueError(f"Identifier field ids {sorted(missing)} are not top-level columns")

    def __iter__(self) -> Iterator[Column]:
        return iter(self.columns)

    def __len__(self) -> int:
        return len(self.columns)

    @property
    def names(self) -> list[str]:
        return [column.name for column in self.columns]

    @property
    def identifier_names(self) -> tuple[str, ...]:
        return tuple(column.name for column in self.columns if column.id in self.identifier_field_ids)

    def column(self, name: str) -> Column | None:
        for column in self.columns:
            if column.name == name:
                return column
        return None

    def find(self, path: Sequence[str]) -> Column | None:
        """Resolve a column path such as ("preferences", "feature1")."""
        if not path:
            return None
        current = self.column(path[0])
        for name in path[1:]:
            if current is None:
                return None
            current = current.field(name)
        return current

    def evolve(self, additions: Sequence[ColumnAddition]) -> TableSchema:
        """Return a new schema with additions applied and fresh ids assigned.

        Raises:
            ValueError: If an addition names an existing column or a parent
                that is missing or not a struct. Existing columns are never
                touched.
        """
        next_id = self.last_column_id + 1
        columns = list(self.columns)
        for addition in additions:
            new_column, next_id = _materialize(addition, next_id)
            columns = _insert(columns, addition.parent, new_column, addition.dotted)
        return TableSchema(
            columns=tuple(columns),
            identifier_field_ids=self.identifier_field_ids,
            last_column_id=next_id - 1,
        )

    def project(self, row: Mapping[str, Any]) -> dict[str, Any]:
        """Keep only the values this schema has columns for (recursing into structs)."""
        return _project(self.columns, row)

    def to_dict(self) -> dict[str, Any]:
        return {
            "columns": [column.to_dict() for column in self.columns],
            "identifier_field_ids": sorted(self.identifier_field_ids),
            "last_column_id": self.last_column_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TableSchema:
        return cls(
            columns=tuple(Column.from_dict(column) for column in data["columns"]),
            identifier_field_ids=frozenset(data["identifier_field_ids"]),
            last_column_id=data["last_column_id"],
        )


def _materialize(addition: ColumnAddition, next_id: int) -> tuple[Column, int]:
    column_id = next_id
    next_id += 1
    children: list[Column] = []
    for child in addition.fields:
        built, next_id = _materialize(child, next_id)
        children.append(built)
    return Column(id=column_id, name=addition.name, type=addition.type, nullable=True, fields=tuple(children)), next_id


def _insert(columns: list[Column], parent: tuple[str, ...], new_column: Column, dotted: str) -> list[Column]:
    if not parent:
        if any(column.name == new_column.name for column in columns):
            raise ValueError(f"Column {dotted} already exists")
        return [*columns, new_column]
    head, rest = parent[0], parent[1:]
    for position, column in enumerate(columns):
        if column.name != head:
            continue
        if column.type is not ColumnType.STRUCT:
            raise ValueError(f"Cannot add {dotted}: {head} is not a struct")
        updated = replace(column, fields=tuple(_insert(list(column.fields), rest, new_column, dotted)))
        return [*columns[:position], updated, *columns[position + 1 :]]
    raise ValueError(f"Cannot add {dotted}: parent {head} does not exist")


def _project(columns: Sequence[Column], row: Mapping[str, Any]) -> dict[str, Any]:
    projected: dict[str, Any] = {}
    for column in columns:
        if column.name not in row:
            continue
        value = row[column.name]
        if column.type is ColumnType.STRUCT and isinstance(value, Mapping):
            value = _project(column.fields, value)
        projected[column.name] = value
    return projected
