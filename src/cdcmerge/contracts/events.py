# src/cdcmerge/contracts/events.py
"""Change events and the key identities derived from them.

A ChangeEvent is produced by the capture collaborator and consumed by exactly
one batch cycle. Its mappings are exposed through read-only views so nothing
downstream can edit an event in place.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from cdcmerge.contracts.enums import Operation

# Reserved metadata columns written by the capture side into value_fields.
OP_COLUMN = "__op"
SOURCE_TS_COLUMN = "__source_ts_ms"


@dataclass(frozen=True)
class ChangeEvent:
    """One captured insert/update/delete/snapshot-read record.

    Attributes:
        destination: Logical target table identifier
        key_fields: Ordered key column -> scalar value (may be empty)
        value_fields: Column -> value, including __op and __source_ts_ms
    """

    destination: str
    key_fields: Mapping[str, Any] = field(default_factory=dict)
    value_fields: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "key_fields", MappingProxyType(dict(self.key_fields)))
        object.__setattr__(self, "value_fields", MappingProxyType(dict(self.value_fields)))

    def operation(self, column: str = OP_COLUMN) -> Operation | None:
        """Parsed operation, or None when the column is absent or unrecognised."""
        raw = self.value_fields.get(column)
        if raw is None:
            return None
        try:
            return Operation(raw)
        except ValueError:
            return None

    @property
    def op(self) -> Operation | None:
        return self.operation()

    def is_delete(self, column: str = OP_COLUMN) -> bool:
        return self.operation(column) is Operation.DELETE

    def timestamp(self, column: str = SOURCE_TS_COLUMN) -> int | None:
        """Source commit timestamp in milliseconds, None when absent or not integral."""
        raw = self.value_fields.get(column)
        # bool is an int subclass but never a timestamp
        if isinstance(raw, bool) or not isinstance(raw, int):
            return None
        return raw

    @property
    def source_ts_ms(self) -> int | None:
        return self.timestamp()

    def row(self) -> dict[str, Any]:
        """Value mapping as a table row.

        Key columns missing from the value mapping (delete tombstones often
        carry only the key) are filled in from key_fields.
        """
        row = dict(self.value_fields)
        for name, value in self.key_fields.items():
            row.setdefault(name, value)
        return row


@dataclass(frozen=True)
class KeyTuple:
    """Ordered key identity of an event.

    Two events collide iff their KeyTuples are equal. Column names are part of
    the identity so keys from differently keyed events never alias.
    """

    columns: tuple[str, ...]
    values: tuple[Any, ...]

    @property
    def is_valid(self) -> bool:
        """False for the no-key marker and for keys with a null component."""
        return bool(self.columns) and all(value is not None for value in self.values)

    def as_dict(self) -> dict[str, Any]:
        return dict(zip(self.columns, self.values, strict=True))

    def __str__(self) -> str:
        if not self.columns:
            return "<no key>"
        return ", ".join(f"{name}={value!r}" for name, value in zip(self.columns, self.values, strict=True))


NO_KEY = KeyTuple(columns=(), values=())


@dataclass(frozen=True)
class ExtractedEvent:
    """An event paired with its key; values are the event's own, unchanged."""

    key: KeyTuple
    values: Mapping[str, Any]
    event: ChangeEvent
    index: int


@dataclass(frozen=True)
class DedupEntry:
    """Winning event for one key (or one appended event).

    index is the winner's position in the batch as received, which is what
    failure reports point at.
    """

    key: KeyTuple
    event: ChangeEvent
    index: int


@dataclass(frozen=True)
class DedupedBatch:
    """Result of deduplicating one destination batch.

    When deduplicated is True there is exactly one entry per distinct valid
    key and the batch can be indexed by KeyTuple. Append batches keep one
    entry per received event, in order, and are not indexable.
    """

    destination: str
    entries: tuple[DedupEntry, ...]
    deduplicated: bool
    received: int
    _by_key: Mapping[KeyTuple, DedupEntry] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        by_key = {entry.key: entry for entry in self.entries} if self.deduplicated else {}
        object.__setattr__(self, "_by_key", MappingProxyType(by_key))

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[DedupEntry]:
        return iter(self.entries)

    def __getitem__(self, key: KeyTuple) -> ChangeEvent:
        if not self.deduplicated:
            raise TypeError("Append batches are not indexed by key")
        return self._by_key[key].event

    def __contains__(self, key: object) -> bool:
        return self.deduplicated and key in self._by_key

    def keys(self) -> list[KeyTuple]:
        return [entry.key for entry in self.entries]

    def events(self) -> list[ChangeEvent]:
        return [entry.event for entry in self.entries]
