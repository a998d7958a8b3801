"""
Shared fixtures: an in-memory local store, a scripted remote backend and a
push-driven connectivity monitor with no debounce.
"""

from typing import Optional

import pytest
import pytest_asyncio

from fieldsync.core.config import SyncTuning
from fieldsync.core.database import build_engine, build_session_factory, init_db
from fieldsync.core.retry import BackoffPolicy, BackoffRetryExecutor
from fieldsync.services.connectivity import ConnectivityMonitor, PushNetworkStatusSource
from fieldsync.services.local_store import SqlAlchemyLocalStore
from fieldsync.services.sync.session import SyncKind, SyncSession

from tests.support import IN_MEMORY_DATABASE, ONLINE, FakeRemoteStore


@pytest_asyncio.fixture
async def engine():
    db_engine = build_engine(IN_MEMORY_DATABASE, echo=False)
    await init_db(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def local_store(engine):
    return SqlAlchemyLocalStore(build_session_factory(engine))


@pytest.fixture
def remote_store():
    return FakeRemoteStore()


@pytest.fixture
def network_source():
    return PushNetworkStatusSource(ONLINE)


@pytest_asyncio.fixture
async def monitor(network_source):
    connectivity = ConnectivityMonitor(network_source, debounce_interval=0)
    await connectivity.start()
    yield connectivity
    await connectivity.stop()


@pytest.fixture
def tuning():
    """Production batch sizes with delays shrunk to keep tests fast."""
    return SyncTuning(
        backoff=BackoffPolicy(max_retries=3, initial_delay=0.01, max_delay=0.05),
        session_deadline=5.0,
        down_request_timeout=1.0,
        up_request_timeout=1.0,
        down_batch_pause=0,
        residence_pause=0,
        up_batch_pause=0
    )


@pytest.fixture
def make_session(monitor, tuning):
    def factory(kind: SyncKind = SyncKind.UP, deadline: Optional[float] = None) -> SyncSession:
        return SyncSession(
            kind,
            BackoffRetryExecutor(),
            tuning.backoff,
            monitor,
            deadline_seconds=deadline or tuning.session_deadline
        )

    return factory
