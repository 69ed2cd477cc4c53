"""cdcmerge: apply change-data-capture batches to versioned tables.

Upserts are deduplicated per key, schemas evolve additively, and every
write is a version-conditioned commit, so concurrent writers and
redelivered batches converge on the same table state.
"""

__version__ = "0.1.0"
