from __future__ import annotations

import pytest

from pcstats_agent.storage.connection_state import ConnectionState
from pcstats_agent.storage.gateway import IngestionGateway
from pcstats_agent.storage.offline_queue import DurableQueue
from pcstats_agent.storage.sqlite_store import SqliteStore

from .helpers.fakes import FakeStore


@pytest.fixture
def queue(tmp_path):
    return DurableQueue(tmp_path / "offline", retention_days=7)


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def state():
    return ConnectionState()


@pytest.fixture
def gateway(fake_store, queue, state):
    return IngestionGateway(fake_store, queue, state, max_restore_attempts=3, retention_days=7)


@pytest.fixture
def sqlite_path(tmp_path):
    return tmp_path / "db" / "pcstats.db"


@pytest.fixture
def sqlite_store(sqlite_path):
    return SqliteStore(sqlite_path)
