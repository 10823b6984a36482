"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.

Shared content hierarchy:

    C1 (course)
    ├── L1 (lesson)
    │   ├── S1 (section, OBJ-1, difficulty 3)
    │   └── S2 (section, OBJ-2, difficulty 3)
    └── L2 (lesson, requires L1)
        ├── S3 (section, OBJ-3, difficulty 2)
        └── S4 (section, OBJ-1, difficulty 4)
"""
import itertools
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from progress_engine.adaptive.session_tracker import SessionTracker  # noqa: E402
from progress_engine.config import Settings  # noqa: E402
from progress_engine.core.hierarchy import HierarchyHolder, UnitHierarchy  # noqa: E402
from progress_engine.core.models import (  # noqa: E402
    ContentUnit,
    InteractionEvent,
    UnitKind,
)
from progress_engine.db.store import InMemoryProgressStore  # noqa: E402

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (SQLite-backed store)")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        elif "smoke" in str(item.fspath):
            item.add_marker(pytest.mark.smoke)


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def t0():
    """Fixed reference time for deterministic timestamps."""
    return T0


@pytest.fixture
def units():
    """Course with two lessons; L2 is gated on L1."""
    return [
        ContentUnit("C1", UnitKind.COURSE, children=("L1", "L2"), title="Networking Basics"),
        ContentUnit("L1", UnitKind.LESSON, children=("S1", "S2")),
        ContentUnit("L2", UnitKind.LESSON, children=("S3", "S4"), prerequisites=("L1",)),
        ContentUnit("S1", UnitKind.SECTION, objective_ids=("OBJ-1",), difficulty=3),
        ContentUnit("S2", UnitKind.SECTION, objective_ids=("OBJ-2",), difficulty=3),
        ContentUnit("S3", UnitKind.SECTION, objective_ids=("OBJ-3",), difficulty=2),
        ContentUnit("S4", UnitKind.SECTION, objective_ids=("OBJ-1",), difficulty=4),
    ]


@pytest.fixture
def hierarchy(units):
    return UnitHierarchy(units)


@pytest.fixture
def holder(hierarchy):
    return HierarchyHolder(hierarchy)


@pytest.fixture
def store():
    return InMemoryProgressStore()


@pytest.fixture
def tracker(store):
    return SessionTracker(store=store)


@pytest.fixture
def settings():
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        worker_count=2,
        commit_backoff_base_seconds=0.0,
        commit_backoff_max_seconds=0.0,
    )


@pytest.fixture
def make_event(t0):
    """Factory for interaction events with unique ids and increasing timestamps."""
    counter = itertools.count(1)

    def _make(unit_id="S1", learner_id="learner-1", seconds=None, **fields):
        n = next(counter)
        occurred_at = fields.pop("occurred_at", None)
        if occurred_at is None:
            offset = seconds if seconds is not None else n * 10
            occurred_at = t0 + timedelta(seconds=offset)
        return InteractionEvent(
            event_id=fields.pop("event_id", f"evt-{n}"),
            learner_id=learner_id,
            unit_id=unit_id,
            occurred_at=occurred_at,
            **fields,
        )

    return _make