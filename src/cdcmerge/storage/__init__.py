# src/cdcmerge/storage/__init__.py
"""Table store implementations.

Example:
    from cdcmerge.storage import create_table_store

    store = create_table_store(settings)
"""

from cdcmerge.contracts import TableStore
from cdcmerge.core.config import CdcMergeSettings
from cdcmerge.engine.retry import RetryConfig, RetryManager
from cdcmerge.storage.memory import InMemoryTableStore
from cdcmerge.storage.retrying import RetryingTableStore
from cdcmerge.storage.sql import SQLTableStore

__all__ = [
    "InMemoryTableStore",
    "RetryingTableStore",
    "SQLTableStore",
    "create_table_store",
]


def create_table_store(settings: CdcMergeSettings) -> RetryingTableStore:
    """Build the configured store, wrapped with transport retries."""
    inner: TableStore
    if settings.storage.backend == "memory":
        inner = InMemoryTableStore()
    else:
        inner = SQLTableStore(settings.storage.url, echo=settings.storage.echo)
    return RetryingTableStore(inner, RetryManager(RetryConfig.from_settings(settings.storage_retry)))
