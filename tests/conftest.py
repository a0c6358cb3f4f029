from __future__ import annotations

import sqlite3
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dishcourse.application.event_bus import EventBus
from dishcourse.application.sync_engine import SyncEngine
from dishcourse.core.metrics import metrics_registry
from dishcourse.infrastructure.migrations import run_migrations
from dishcourse.infrastructure.repos_cache_sqlite import SQLiteLocalStore
from dishcourse.infrastructure.repos_conflicts_sqlite import SQLiteConflictStore
from dishcourse.infrastructure.repos_queue_sqlite import SQLiteMutationQueue
from dishcourse.infrastructure.sync_meta_sqlite import SQLiteSyncMetaStore
from tests.e2e_sync.fakes import FakeClock, FakeRemoteStore, RecordingPublisher


@pytest.fixture
def connection() -> sqlite3.Connection:
    # El listener de tiempo real y el heartbeat tocan la caché desde otros hilos.
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.row_factory = sqlite3.Row
    run_migrations(conn)
    yield conn
    conn.close()


@pytest.fixture(autouse=True)
def _reset_metrics() -> None:
    metrics_registry.reset()
    yield
    metrics_registry.reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def local_store(connection: sqlite3.Connection, event_bus: EventBus, clock: FakeClock) -> SQLiteLocalStore:
    return SQLiteLocalStore(connection, event_bus, clock=clock)


@pytest.fixture
def queue(connection: sqlite3.Connection, clock: FakeClock) -> SQLiteMutationQueue:
    return SQLiteMutationQueue(connection, max_retries=3, clock=clock)


@pytest.fixture
def conflict_store(connection: sqlite3.Connection) -> SQLiteConflictStore:
    return SQLiteConflictStore(connection)


@pytest.fixture
def meta_store(connection: sqlite3.Connection) -> SQLiteSyncMetaStore:
    return SQLiteSyncMetaStore(connection)


@pytest.fixture
def remote() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def engine(local_store, queue, conflict_store, meta_store, remote, event_bus, clock) -> SyncEngine:
    sync_engine = SyncEngine(local_store, queue, conflict_store, meta_store, remote, event_bus=event_bus, clock=clock)
    yield sync_engine
    sync_engine.close()
