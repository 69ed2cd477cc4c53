# src/cdcmerge/storage/rows.py
"""Row/key matching shared by the table store implementations."""

from collections.abc import Iterable, Sequence
from typing import Any

from cdcmerge.contracts import KeyTuple, Row


def _same_value(stored: Any, wanted: Any) -> bool:
    # True == 1 in Python; a boolean key never matches an integer one
    return isinstance(stored, bool) == isinstance(wanted, bool) and stored == wanted


def matches_key(row: Row, key: KeyTuple) -> bool:
    """Whether every key column of the row holds the key's value."""
    return all(
        name in row and _same_value(row[name], value) for name, value in zip(key.columns, key.values, strict=True)
    )


def rows_by_key(rows: Iterable[Row], keys: Sequence[KeyTuple]) -> dict[KeyTuple, list[Row]]:
    """Group rows under every requested key (empty list for absent keys)."""
    grouped: dict[KeyTuple, list[Row]] = {key: [] for key in keys}
    for row in rows:
        for key in grouped:
            if matches_key(row, key):
                grouped[key].append(row)
    return grouped
