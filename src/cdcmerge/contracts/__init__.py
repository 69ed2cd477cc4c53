"""Shared contracts for cross-boundary data types.

This package is a LEAF MODULE with no outbound dependencies to core, engine
or storage. Settings classes are NOT re-exported here; import them from
cdcmerge.core.config.

Import patterns:
    from cdcmerge.contracts import ChangeEvent, KeyTuple, TableSchema
    from cdcmerge.core.config import CdcMergeSettings
"""

from cdcmerge.contracts.enums import (
    BatchStage,
    ColumnType,
    ErrorKind,
    MissingKeyPolicy,
    Operation,
    WriteMode,
)
from cdcmerge.contracts.errors import (
    BatchCancelledError,
    CommitConflictError,
    InvalidDestinationError,
    InvalidKeyError,
    MergeError,
    SchemaConflictError,
    StorageUnavailableError,
    TableNotFoundError,
    TypeMismatchError,
    VersionConflictError,
)
from cdcmerge.contracts.events import (
    NO_KEY,
    OP_COLUMN,
    SOURCE_TS_COLUMN,
    ChangeEvent,
    DedupedBatch,
    DedupEntry,
    ExtractedEvent,
    KeyTuple,
)
from cdcmerge.contracts.results import BatchReport, CommitResult, DestinationOutcome
from cdcmerge.contracts.schema import Column, ColumnAddition, TableSchema, accepts, type_of
from cdcmerge.contracts.storage import Row, TableHandle, TableIdentifier, TableLookup, TableStore

__all__ = [
    "NO_KEY",
    "OP_COLUMN",
    "SOURCE_TS_COLUMN",
    "BatchCancelledError",
    "BatchReport",
    "BatchStage",
    "ChangeEvent",
    "Column",
    "ColumnAddition",
    "ColumnType",
    "CommitConflictError",
    "CommitResult",
    "DedupEntry",
    "DedupedBatch",
    "DestinationOutcome",
    "ErrorKind",
    "ExtractedEvent",
    "InvalidDestinationError",
    "InvalidKeyError",
    "KeyTuple",
    "MergeError",
    "MissingKeyPolicy",
    "Operation",
    "Row",
    "SchemaConflictError",
    "StorageUnavailableError",
    "TableHandle",
    "TableIdentifier",
    "TableLookup",
    "TableNotFoundError",
    "TableSchema",
    "TableStore",
    "TypeMismatchError",
    "VersionConflictError",
    "WriteMode",
    "accepts",
    "type_of",
]
