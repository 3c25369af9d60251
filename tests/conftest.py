"""Test configuration for DRMS offline sync.

Every test gets its own file-backed SQLite database under ``tmp_path`` and a
frozen clock, so queue ordering and backoff windows are deterministic.
"""

import pytest

from drms_sync.config import Settings
from drms_sync.core.database import create_local_engine, create_session_factory, init_db
from drms_sync.sync.conflict_resolver import ConflictResolver
from drms_sync.sync.conflict_store import ConflictStore
from drms_sync.sync.engine import SyncEngine
from drms_sync.sync.network_monitor import NetworkMonitor
from drms_sync.sync.queue import SyncQueue
from tests.mocks.clock import FakeClock
from tests.mocks.fake_transport import FakeSyncTransport


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with fast timers and a throwaway database."""
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'sync.db'}",
        sync_batch_size=10,
        queue_capacity=100,
        max_attempts=3,
        retry_initial_delay_seconds=30.0,
        retry_exponential_base=2.0,
        retry_max_delay_seconds=900.0,
        retry_jitter=False,
        auto_sync_enabled=False,
        settle_delay_seconds=0.01,
        accelerated_retry_seconds=0.05,
        auto_sync_interval_minutes=60.0,
        conflict_strategy="last_write_wins",
    )


@pytest.fixture
def db_engine(settings):
    """Local database with all tables created."""
    engine = create_local_engine(settings.database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Session factory bound to the test database."""
    return create_session_factory(db_engine)


@pytest.fixture
def clock() -> FakeClock:
    """Frozen clock advanced explicitly by tests."""
    return FakeClock()


@pytest.fixture
def queue(session_factory, settings, clock) -> SyncQueue:
    """Sync queue over the test database."""
    return SyncQueue(session_factory, settings, clock=clock)


@pytest.fixture
def conflict_store(session_factory) -> ConflictStore:
    """Conflict store over the test database."""
    return ConflictStore(session_factory)


@pytest.fixture
def resolver(conflict_store, settings, clock) -> ConflictResolver:
    """Last-write-wins resolver."""
    return ConflictResolver(conflict_store, settings=settings, clock=clock)


@pytest.fixture
def transport() -> FakeSyncTransport:
    """Scriptable in-memory transport."""
    return FakeSyncTransport()


@pytest.fixture
def monitor() -> NetworkMonitor:
    """Monitor without a probe, starting offline."""
    return NetworkMonitor(initially_online=False)


@pytest.fixture
def engine(queue, transport, resolver, monitor, settings, clock) -> SyncEngine:
    """Engine wired to the fake transport."""
    return SyncEngine(queue, transport, resolver, monitor, settings=settings, clock=clock)
