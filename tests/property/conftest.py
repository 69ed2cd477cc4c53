# tests/property/conftest.py
"""Shared Hypothesis strategies for property-based tests.

Strategy Categories:
- JSON-safe values (what a column can hold)
- Change events over a deliberately small key space, so batches collide
- Reference model of the upsert semantics

Usage:
    from tests.property.conftest import upsert_batches, model_upsert

    @given(batch=upsert_batches)
    def test_matches_model(batch: list[ChangeEvent]) -> None:
        ...
"""

# =============================================================================
# Hypothesis Settings
# =============================================================================
#
# For standardized @settings decorators, import from tests.property.settings:
#   from tests.property.settings import STANDARD_SETTINGS, DETERMINISM_SETTINGS
#
# Tiers: DETERMINISM (500), STATE_MACHINE (200), STANDARD (100), SLOW (50), QUICK (20)
# =============================================================================

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from hypothesis import strategies as st

from cdcmerge.contracts import ChangeEvent
from tests.helpers.events import customer, delete

# =============================================================================
# Core JSON Strategies
# =============================================================================

# Non-null primitives; NaN/Infinity are rejected by the engine
json_primitives = (
    st.booleans()
    | st.integers(min_value=-(2**63), max_value=2**63 - 1)
    | st.floats(allow_nan=False, allow_infinity=False)
    | st.text(max_size=20)
)

json_values = st.recursive(
    st.none() | json_primitives,
    lambda children: st.lists(children, max_size=5) | st.dictionaries(st.text(min_size=1, max_size=8), children, max_size=5),
    max_leaves=20,
)

row_data = st.dictionaries(keys=st.text(min_size=1, max_size=10), values=json_values, max_size=8)

# =============================================================================
# Change Events
# =============================================================================

# Few keys and few timestamps: duplicates and timestamp ties are the interesting cases
key_ids = st.integers(min_value=0, max_value=5)
timestamps = st.none() | st.integers(min_value=0, max_value=6)
user_names = st.text(alphabet="abcdefgh", min_size=1, max_size=4)


@st.composite
def change_events(draw: st.DrawFn) -> ChangeEvent:
    customer_id = draw(key_ids)
    ts = draw(timestamps)
    op = draw(st.sampled_from(["c", "u", "r", "d"]))
    if op == "d":
        return delete({"id": customer_id}, ts=ts)
    return customer(customer_id, draw(user_names), op=op, ts=ts)


upsert_batches = st.lists(change_events(), max_size=20)
delivery_sequences = st.lists(upsert_batches, min_size=1, max_size=5)

# =============================================================================
# Reference Model
# =============================================================================


def model_winners(batch: Sequence[ChangeEvent]) -> dict[int, tuple[int, ChangeEvent]]:
    """Winning (index, event) per id: newest timestamp, later position on ties, missing ts lowest."""
    winners: dict[int, tuple[int, ChangeEvent]] = {}
    for index, event in enumerate(batch):
        customer_id = event.key_fields["id"]
        current = winners.get(customer_id)
        if current is None:
            winners[customer_id] = (index, event)
            continue
        ts = -1 if event.source_ts_ms is None else event.source_ts_ms
        current_ts = -1 if current[1].source_ts_ms is None else current[1].source_ts_ms
        if ts >= current_ts:
            winners[customer_id] = (index, event)
    return winners


def model_upsert(table: dict[int, dict[str, Any]], batch: Sequence[ChangeEvent]) -> dict[int, dict[str, Any]]:
    """Table contents after upserting batch into table (returns a new mapping)."""
    result = dict(table)
    for customer_id, (_, event) in model_winners(batch).items():
        if event.is_delete():
            result.pop(customer_id, None)
        else:
            result[customer_id] = event.row()
    return result
