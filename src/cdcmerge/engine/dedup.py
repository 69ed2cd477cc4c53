# src/cdcmerge/engine/dedup.py
"""Deduplicator: one winning event per key.

Within a batch the same row can change several times. Only the last state
matters for an upsert, and "last" is decided by the source commit timestamp,
with batch position breaking exact ties (later wins). Winning events are kept
verbatim: competing events are never merged field by field.
"""

from collections.abc import Sequence

from cdcmerge.contracts import SOURCE_TS_COLUMN, DedupedBatch, DedupEntry, ExtractedEvent, InvalidKeyError, KeyTuple
from cdcmerge.core.logging import get_logger

logger = get_logger(__name__)


class Deduplicator:
    """Collapses a destination batch to one event per key.

    Args:
        ts_column: Value column holding the source commit timestamp (ms)
    """

    def __init__(self, ts_column: str = SOURCE_TS_COLUMN) -> None:
        self._ts_column = ts_column

    def dedupe(self, destination: str, extracted: Sequence[ExtractedEvent], *, upsert: bool) -> DedupedBatch:
        """Reduce extracted events to their winners.

        With upsert disabled nothing is collapsed and key validity is not
        checked: every event becomes its own append entry.

        Raises:
            InvalidKeyError: Upsert requested and an event has an empty key
                or a null key component. Fatal for the whole batch.
        """
        if not upsert:
            entries = tuple(DedupEntry(key=item.key, event=item.event, index=item.index) for item in extracted)
            return DedupedBatch(destination=destination, entries=entries, deduplicated=False, received=len(extracted))

        winners: dict[KeyTuple, DedupEntry] = {}
        for item in extracted:
            if not item.key.is_valid:
                raise InvalidKeyError(
                    f"Event {item.index} for {destination}: cannot deduplicate data with null key! (key: {item.key})",
                    destination=destination,
                    event_index=item.index,
                )
            current = winners.get(item.key)
            if current is None or self._wins(item, current):
                winners[item.key] = DedupEntry(key=item.key, event=item.event, index=item.index)

        collapsed = len(extracted) - len(winners)
        if collapsed:
            logger.debug("Collapsed duplicate keys", destination=destination, received=len(extracted), collapsed=collapsed)
        return DedupedBatch(destination=destination, entries=tuple(winners.values()), deduplicated=True, received=len(extracted))

    def _wins(self, challenger: ExtractedEvent, current: DedupEntry) -> bool:
        """Strictly newer timestamp wins; equal timestamps go to the later event.

        Batches are iterated in order, so the challenger is always later and
        wins every tie. A missing timestamp sorts below any present one.
        """
        challenger_ts = challenger.event.timestamp(self._ts_column)
        current_ts = current.event.timestamp(self._ts_column)
        if challenger_ts is None:
            return current_ts is None
        if current_ts is None:
            return True
        return challenger_ts >= current_ts
