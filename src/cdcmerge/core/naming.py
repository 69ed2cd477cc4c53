# src/cdcmerge/core/naming.py
"""Destination -> table identifier mapping."""

import re

from cdcmerge.contracts.errors import InvalidDestinationError
from cdcmerge.contracts.storage import TableIdentifier
from cdcmerge.core.config import TableNamingSettings


class TableNamer:
    """Maps capture destinations (e.g. "server.inventory.customers") to tables.

    The destination is rewritten with the configured regexp, dots become
    underscores and the prefix is prepended. Mapping is pure, so the same
    destination always lands in the same table.
    """

    def __init__(self, settings: TableNamingSettings | None = None) -> None:
        self._settings = settings or TableNamingSettings()
        self._pattern = re.compile(self._settings.destination_regexp) if self._settings.destination_regexp else None

    def table_identifier(self, destination: str) -> TableIdentifier:
        name = destination
        if self._pattern is not None:
            name = self._pattern.sub(self._settings.destination_regexp_replace, name)
        name = name.replace(".", "_")
        if not name:
            raise InvalidDestinationError(f"Destination {destination!r} maps to an empty table name", destination=destination)
        return TableIdentifier(namespace=self._settings.namespace, name=f"{self._settings.table_prefix}{name}")

    def table_id(self, destination: str) -> str:
        return str(self.table_identifier(destination))
