# src/cdcmerge/storage/schema.py
"""SQLAlchemy table definitions for the SQL table store.

Uses SQLAlchemy Core (not ORM) for explicit control over the
version-conditioned statements and compatibility with multiple backends.
"""

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

metadata = MetaData()

# === Catalog ===

# One row per logical table. version is the single counter covering both
# schema evolution and data commits.
tables_table = Table(
    "cdc_tables",
    metadata,
    Column("table_id", String(255), primary_key=True),
    Column("version", Integer, nullable=False),
    Column("schema_json", Text, nullable=False),
    Column("schema_hash", String(64), nullable=False),  # stable_hash of schema_json
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

# === Rows ===

rows_table = Table(
    "cdc_rows",
    metadata,
    Column("row_id", Integer, primary_key=True, autoincrement=True),
    Column("table_id", String(255), ForeignKey("cdc_tables.table_id"), nullable=False),
    # JSON object of the identifier column values; NULL when the table has no
    # identifier fields or the row lacks one of them
    Column("key_json", Text),
    Column("payload_json", Text, nullable=False),
)

Index("ix_cdc_rows_table_key", rows_table.c.table_id, rows_table.c.key_json)
