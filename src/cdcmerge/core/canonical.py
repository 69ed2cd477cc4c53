# src/cdcmerge/core/canonical.py
"""
Canonical JSON for schema fingerprints, plus row normalization for comparison.

Two-phase approach:
1. Normalize: Convert mapping views and tuples to JSON-safe primitives (our code)
2. Serialize: Produce deterministic JSON per RFC 8785/JCS (rfc8785 package)

NaN and Infinity are strictly REJECTED, not silently converted.
"""

from __future__ import annotations

import hashlib
import math
from collections.abc import Mapping
from typing import Any

import rfc8785


def _normalize_value(obj: Any) -> Any:
    """Convert a single value to a JSON-safe primitive.

    Raises:
        ValueError: If value is NaN or Infinity
    """
    if isinstance(obj, float) and (math.isnan(obj) or math.isinf(obj)):
        raise ValueError(f"Cannot canonicalize non-finite float: {obj}. Use None for missing values, not NaN.")
    return obj


def _normalize_for_canonical(data: Any) -> Any:
    """Recursively normalize a data structure for canonical JSON.

    Mappings (including read-only mapping views) become dicts, tuples become
    lists.
    """
    if isinstance(data, Mapping):
        return {k: _normalize_for_canonical(v) for k, v in data.items()}
    if isinstance(data, list | tuple):
        return [_normalize_for_canonical(v) for v in data]
    return _normalize_value(data)


def canonical_json(obj: Any) -> str:
    """Produce canonical JSON (no whitespace, sorted keys).

    Raises:
        ValueError: If data contains NaN or Infinity
        TypeError: If data contains types that cannot be serialized
    """
    normalized = _normalize_for_canonical(obj)
    result: bytes = rfc8785.dumps(normalized)
    return result.decode("utf-8")


def stable_hash(obj: Any) -> str:
    """SHA-256 hex digest of canonical JSON."""
    canonical = canonical_json(obj)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def strip_nulls(row: Mapping[str, Any]) -> dict[str, Any]:
    """Drop null values, recursing into nested mappings.

    A null column and an absent column read back identically, so rows are
    compared with nulls removed.
    """
    stripped: dict[str, Any] = {}
    for key, value in row.items():
        if value is None:
            continue
        if isinstance(value, Mapping):
            value = strip_nulls(value)
        stripped[key] = value
    return stripped


def rows_equal(left: Mapping[str, Any], right: Mapping[str, Any]) -> bool:
    """Whether two rows hold the same values, ignoring null-vs-absent.

    Compared on the normalized structure rather than the serialized form:
    row values may be integers outside the range RFC 8785 can encode.
    """
    return _normalize_for_canonical(strip_nulls(left)) == _normalize_for_canonical(strip_nulls(right))
