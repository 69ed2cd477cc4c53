# tests/conftest.py
"""Shared test fixtures.

Store fixtures:
- memory_store: InMemoryTableStore
- sql_store: SQLTableStore over a SQLite file in tmp_path
- store: parametrized over both, for behaviour every backend must share

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

import os
from collections.abc import Iterator
from pathlib import Path

import pytest
from hypothesis import Phase, Verbosity, settings

from cdcmerge.contracts import TableStore
from cdcmerge.core.config import CdcMergeSettings
from cdcmerge.storage import InMemoryTableStore, SQLTableStore
from tests.helpers.config import fast_settings

# =============================================================================
# Hypothesis Configuration
# =============================================================================

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture
def merge_settings() -> CdcMergeSettings:
    return fast_settings()


# =============================================================================
# Stores
# =============================================================================


@pytest.fixture
def memory_store() -> InMemoryTableStore:
    return InMemoryTableStore()


@pytest.fixture
def sql_store(tmp_path: Path) -> Iterator[SQLTableStore]:
    store = SQLTableStore(f"sqlite:///{tmp_path / 'tables.db'}")
    yield store
    store.close()


@pytest.fixture(params=["memory", "sql"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> Iterator[TableStore]:
    if request.param == "memory":
        yield InMemoryTableStore()
        return
    sql = SQLTableStore(f"sqlite:///{tmp_path / 'tables.db'}")
    yield sql
    sql.close()
