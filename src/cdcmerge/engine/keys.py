# src/cdcmerge/engine/keys.py
"""KeyExtractor: ChangeEvent -> (KeyTuple, values)."""

from collections.abc import Mapping, Sequence

from cdcmerge.contracts import NO_KEY, ChangeEvent, ExtractedEvent, InvalidKeyError, KeyTuple


class KeyExtractor:
    """Derives the key identity of change events.

    Pure: no side effects, values are passed through untouched. An event with
    no key fields gets the NO_KEY marker, which the deduplicator rejects for
    upserts and ignores for appends.
    """

    def key_of(self, event: ChangeEvent) -> KeyTuple:
        if not event.key_fields:
            return NO_KEY
        return KeyTuple(columns=tuple(event.key_fields.keys()), values=tuple(event.key_fields.values()))

    def extract(self, event: ChangeEvent, index: int) -> ExtractedEvent:
        return ExtractedEvent(key=self.key_of(event), values=event.value_fields, event=event, index=index)

    def extract_all(self, events: Sequence[ChangeEvent], *, require_scalar_keys: bool) -> list[ExtractedEvent]:
        """Extract every event of a batch, in order.

        Args:
            events: Batch as received
            require_scalar_keys: Reject struct/list key components (needed
                whenever keys will be hashed for deduplication)

        Raises:
            InvalidKeyError: A key component is a struct or list
        """
        extracted = []
        for index, event in enumerate(events):
            item = self.extract(event, index)
            if require_scalar_keys:
                _check_scalar(item)
            extracted.append(item)
        return extracted


def _check_scalar(item: ExtractedEvent) -> None:
    for column, value in zip(item.key.columns, item.key.values, strict=True):
        if isinstance(value, Mapping | list | tuple | set):
            raise InvalidKeyError(
                f"Event {item.index} for {item.event.destination}: key column {column} holds a "
                f"{type(value).__name__}, keys must be scalar",
                destination=item.event.destination,
                event_index=item.index,
            )
