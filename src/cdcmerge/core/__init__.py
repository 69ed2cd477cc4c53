# src/cdcmerge/core/__init__.py
"""Core infrastructure: configuration, logging, canonical JSON, table naming."""

from cdcmerge.core.canonical import canonical_json, rows_equal, stable_hash
from cdcmerge.core.config import CdcMergeSettings, load_settings, resolve_config
from cdcmerge.core.logging import batch_context, configure_logging, get_logger
from cdcmerge.core.naming import TableNamer

__all__ = [
    "CdcMergeSettings",
    "TableNamer",
    "batch_context",
    "canonical_json",
    "configure_logging",
    "get_logger",
    "load_settings",
    "resolve_config",
    "rows_equal",
    "stable_hash",
]
