# src/cdcmerge/engine/__init__.py
"""Merge engine: key extraction, deduplication, schema reconciliation, commits.

Example:
    from cdcmerge.engine import BatchApplier

    applier = BatchApplier.from_settings(settings)
    report = applier.apply_events(events)
"""

from cdcmerge.engine.applier import BatchApplier, group_by_destination
from cdcmerge.engine.dedup import Deduplicator
from cdcmerge.engine.keys import KeyExtractor
from cdcmerge.engine.merger import TableMerger, UpsertPlan
from cdcmerge.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager
from cdcmerge.engine.schema_reconciler import SchemaDelta, SchemaReconciler, compute_delta, infer_schema

__all__ = [
    "BatchApplier",
    "Deduplicator",
    "KeyExtractor",
    "MaxRetriesExceeded",
    "RetryConfig",
    "RetryManager",
    "SchemaDelta",
    "SchemaReconciler",
    "TableMerger",
    "UpsertPlan",
    "compute_delta",
    "group_by_destination",
    "infer_schema",
]
