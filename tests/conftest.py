"""Shared test fixtures and utilities for all tests.

This conftest.py provides reusable fixtures that can be used across
unit, contract, and integration tests: an in-memory SQLite database, an
in-memory key-value store, a hand-driven clock, pipeline settings and a
TestClient wired to all of them.
"""

import sys
from pathlib import Path

# CRITICAL: Ensure the correct project root is first in sys.path
# This prevents importing from other projects with similar module names
project_root = str(Path(__file__).parent.parent.absolute())
if project_root not in sys.path:
    sys.path.insert(0, project_root)
elif sys.path[0] != project_root:
    sys.path.remove(project_root)
    sys.path.insert(0, project_root)

from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import relay_metrics.models  # noqa: F401  (registers tables on Base.metadata)
from relay_metrics.lib.config import PipelineSettings, get_settings
from relay_metrics.lib.database import Base, get_optional_db_session
from relay_metrics.lib.distributed_tracing import reset_correlation_id
from relay_metrics.lib.kv_store import InMemoryKeyValueStore, get_kv_store


SAMPLE_EXPOSITION = """\
# HELP soketi_connected The number of currently connected sockets.
# TYPE soketi_connected gauge
soketi_connected{port="6001"} 42
# TYPE soketi_new_connections_total counter
soketi_new_connections_total{port="6001"} 100
soketi_new_disconnections_total{port="6001"} 58
soketi_socket_received_bytes{port="6001"} 2048
soketi_socket_transmitted_bytes{port="6001"} 8192
soketi_ws_messages_sent_total{port="6001"} 500
soketi_ws_messages_received_total{port="6001"} 300
soketi_nodejs_heap_size_used_bytes 52428800
soketi_process_cpu_seconds_total 12.5
soketi_process_start_time_seconds 1760000000
"""


# ============================================================================
# Clock and Store Fixtures
# ============================================================================

class FakeClock:
    """Naive-UTC clock that tests move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    """Clock frozen at 2026-10-19 12:30:00 UTC."""
    return FakeClock(datetime(2026, 10, 19, 12, 30, 0))


@pytest.fixture
def monotonic():
    """Controllable monotonic time source for TTL expiry."""
    state = {'now': 1000.0}

    def now() -> float:
        return state['now']

    now.state = state
    return now


@pytest.fixture
def store():
    return InMemoryKeyValueStore()


@pytest.fixture
def settings():
    """Settings pointing at a fake source with fast retries."""
    return PipelineSettings(
        source_host='soketi.test',
        scrape_backoff_seconds=0,
        scrape_max_attempts=3,
    )


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def db_engine():
    """In-memory SQLite engine shared across threads (TestClient runs in a worker thread)."""
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    Session = sessionmaker(bind=db_engine)
    session = Session()
    yield session
    session.close()


# ============================================================================
# FastAPI Application Fixtures
# ============================================================================

@pytest.fixture
def app(store, settings, db_session):
    """The real app with store, settings and database swapped for test doubles."""
    from relay_metrics.app import app as fastapi_app

    def override_db():
        yield db_session

    fastapi_app.dependency_overrides[get_kv_store] = lambda: store
    fastapi_app.dependency_overrides[get_settings] = lambda: settings
    fastapi_app.dependency_overrides[get_optional_db_session] = override_db
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """Fixture that provides a test client for the app."""
    return TestClient(app)


@pytest.fixture
def client_without_db(app):
    """Test client whose requests see no configured database."""
    def no_db():
        yield None

    app.dependency_overrides[get_optional_db_session] = no_db
    return TestClient(app)


# ============================================================================
# Utility Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def reset_context():
    """Clear the correlation ID between tests."""
    reset_correlation_id()
    yield
    reset_correlation_id()


@pytest.fixture
def correlation_id():
    """Generate a unique correlation ID for testing."""
    return str(uuid4())


@pytest.fixture
def sample_exposition():
    return SAMPLE_EXPOSITION
