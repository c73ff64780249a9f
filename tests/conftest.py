"""
Shared fixtures: every test gets its own SQLite file database under tmp_path,
so flag rows, diff records and system events never leak between tests.
"""

import pytest

from dualwrite.core.background import BackgroundTasks
from dualwrite.core.classifier import DiffClassifier, EndpointRules
from dualwrite.core.feature_flags import FeatureFlagStore
from dualwrite.core.flag_cache import FlagCache
from dualwrite.core.orchestrator import DualWriteOrchestrator
from dualwrite.core.recorder import DiffRecorder
from dualwrite.database.engine import make_session_factory

FLAG_KEY = "test_flags"


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def session_factory(tmp_path):
    return make_session_factory(f"sqlite:///{tmp_path / 'dualwrite.sqlite3'}")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def flag_store(session_factory, clock) -> FeatureFlagStore:
    return FeatureFlagStore(
        session_factory=session_factory,
        cache=FlagCache(ttl_sec=10.0, clock=clock),
        max_stale_sec=60.0,
        default_key=FLAG_KEY,
    )


@pytest.fixture
def recorder(session_factory) -> DiffRecorder:
    return DiffRecorder(session_factory=session_factory, store_payload=True)


@pytest.fixture
def classifier() -> DiffClassifier:
    return DiffClassifier(
        rules={
            "budget": EndpointRules.build(
                critical=["id", "amount"],
                volatile=["updatedAt", "updated_at"],
                required=["status"],
            ),
        },
        default=EndpointRules.build(volatile=["updatedAt"]),
    )


@pytest.fixture
def orchestrator(flag_store, recorder, classifier) -> DualWriteOrchestrator:
    return DualWriteOrchestrator(
        flag_store,
        recorder,
        classifier=classifier,
        background=BackgroundTasks(max_lifetime_sec=5.0, max_pending=100),
        secondary_only={"recordSpending"},
        call_timeout_sec=2.0,
        flag_key=FLAG_KEY,
    )


@pytest.fixture
def dual_write_on(flag_store):
    return flag_store.set(FLAG_KEY, {"enableDualWrite": True, "enableSupabasePrimary": False})


@pytest.fixture
def dual_write_on_new_primary(flag_store):
    return flag_store.set(FLAG_KEY, {"enableDualWrite": True, "enableSupabasePrimary": True})
