# src/cdcmerge/contracts/enums.py
"""Status codes, modes and kinds shared across subsystem boundaries."""

from enum import StrEnum


class Operation(StrEnum):
    """Change-event operation, as carried in the ``__op`` column.

    Values:
        CREATE: Row inserted at the source
        READ: Row read during an initial snapshot
        UPDATE: Row updated at the source
        DELETE: Row deleted at the source
    """

    CREATE = "c"
    READ = "r"
    UPDATE = "u"
    DELETE = "d"


class WriteMode(StrEnum):
    """How a deduplicated batch is applied to its table."""

    APPEND = "append"
    UPSERT = "upsert"


class BatchStage(StrEnum):
    """Lifecycle stage of one destination batch.

    Received -> KeysExtracted -> Deduplicated -> SchemaReconciled -> Committing,
    then exactly one of Committed or Aborted.
    """

    RECEIVED = "received"
    KEYS_EXTRACTED = "keys_extracted"
    DEDUPLICATED = "deduplicated"
    SCHEMA_RECONCILED = "schema_reconciled"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ABORTED = "aborted"


class ErrorKind(StrEnum):
    """Failure classification reported upstream for an aborted batch."""

    INVALID_KEY = "invalid_key"
    INVALID_DESTINATION = "invalid_destination"
    TYPE_MISMATCH = "type_mismatch"
    SCHEMA_CONFLICT = "schema_conflict"
    COMMIT_CONFLICT = "commit_conflict"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    CANCELLED = "cancelled"


class ColumnType(StrEnum):
    """Tagged union of the value types a column can hold.

    Null carries no tag: a None value is compatible with every nullable column
    and never drives inference.
    """

    BOOLEAN = "boolean"
    INTEGER = "integer"
    FLOAT = "float"
    STRING = "string"
    STRUCT = "struct"
    LIST = "list"


class MissingKeyPolicy(StrEnum):
    """What an upsert does when the destination carries no key fields at all."""

    FAIL = "fail"
    APPEND = "append"
