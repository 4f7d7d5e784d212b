"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from drillqueue.delivery.errors import PersistenceError  # noqa: E402
from drillqueue.delivery.memory_model import CardState, MemoryState  # noqa: E402
from drillqueue.delivery.question_bank import Question  # noqa: E402

FIXED_NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (SQLite memory store)")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        # Mark based on test file location
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        elif "smoke" in str(item.fspath):
            item.add_marker(pytest.mark.smoke)


# =============================================================================
# Test Doubles
# =============================================================================


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class InMemoryStore:
    """Dict-backed MemoryStore; set fail_writes to simulate an outage."""

    def __init__(self):
        self.states: dict[tuple[str, str], MemoryState] = {}
        self.reviews: list[tuple[str, str, object]] = []
        self.fail_writes = False
        self.write_attempts = 0

    def read_many(self, user_id, question_ids):
        return {
            qid: self.states[(user_id, qid)]
            for qid in question_ids
            if (user_id, qid) in self.states
        }

    def upsert(self, user_id, question_id, state, review=None):
        self.write_attempts += 1
        if self.fail_writes:
            raise PersistenceError("database is locked")
        self.states[(user_id, question_id)] = state
        if review is not None:
            self.reviews.append((user_id, question_id, review))

    def put(self, question_id, state, user_id="u1"):
        self.states[(user_id, question_id)] = state


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def clock():
    """A clock frozen at FIXED_NOW."""
    return FakeClock()


@pytest.fixture
def make_question():
    """Factory for questions in topic t1 / subject s1 / space sp1."""

    def _make(qid, kind="single_select_mcq", topic_id="t1", subject_id="s1", space_id="sp1", **kw):
        return Question(
            id=qid,
            kind=kind,
            prompt=kw.pop("prompt", f"Prompt for {qid}"),
            topic_id=topic_id,
            subject_id=subject_id,
            space_id=space_id,
            **kw,
        )

    return _make


@pytest.fixture
def learning_state():
    """Factory for a Learning record due at the given time."""

    def _make(due=FIXED_NOW, step=0, stability=1.0, difficulty=5.0):
        return MemoryState(
            state=CardState.LEARNING,
            stability=stability,
            difficulty=difficulty,
            repetitions=1,
            step=step,
            scheduled_days=10 / 1440,
            last_reviewed_at=due - timedelta(minutes=10),
            next_review_at=due,
        )

    return _make


@pytest.fixture
def review_state():
    """Factory for a Review record due at the given time."""

    def _make(due=FIXED_NOW - timedelta(hours=1), stability=5.0, difficulty=5.0, lapses=0):
        return MemoryState(
            state=CardState.REVIEW,
            stability=stability,
            difficulty=difficulty,
            elapsed_days=3.0,
            scheduled_days=5.0,
            lapses=lapses,
            repetitions=4,
            last_reviewed_at=due - timedelta(days=5),
            next_review_at=due,
        )

    return _make


@pytest.fixture
def memory_store():
    """In-memory fake store."""
    return InMemoryStore()


@pytest.fixture
def sql_store(tmp_path):
    """SQLite-backed store in a temp directory."""
    from drillqueue.delivery.memory_store import SqlMemoryStore

    store = SqlMemoryStore(f"sqlite:///{tmp_path / 'state.db'}")
    yield store
    store.close()
