from __future__ import annotations

import os

# The application engine is built at import time; keep it off PostgreSQL
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta, timezone
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from finjobs.common.db import build_engine
from finjobs.common.models import Base
from finjobs.core.config import Settings
from finjobs.jobs.queue import QueueManager
from finjobs.jobs.runtime import Services
from finjobs.main import app
from finjobs.notifications.adapters import SimulatedAdapter
from finjobs.notifications.websocket import WebSocketHub

# Use in-memory SQLite for tests (faster than Postgres for unit tests)
TEST_DB_URL = "sqlite:///:memory:"
engine = create_engine(
    TEST_DB_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeClock:
    """Controllable UTC clock for queue timing tests."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def test_settings() -> Settings:
    """Settings with fast polling and simulated providers."""
    return Settings(
        database_url="sqlite://",
        default_concurrency=2,
        worker_poll_interval_seconds=0.05,
        worker_max_poll_backoff_seconds=0.2,
        reclaim_interval_seconds=0.1,
        default_backoff_delay_ms=0,
        calculation_isolation="thread",
        smtp_host="",
        twilio_account_sid="",
        push_gateway_url="",
        enable_metrics=False,
        _env_file=None,
    )


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Create a fresh in-memory database for each test."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def file_session_factory(tmp_path) -> Generator[sessionmaker, None, None]:
    """File-backed SQLite for tests where several threads hit the store."""
    file_engine = build_engine(f"sqlite:///{tmp_path / 'queue.db'}")
    Base.metadata.create_all(bind=file_engine)
    yield sessionmaker(bind=file_engine, autoflush=False, autocommit=False)
    file_engine.dispose()


@pytest.fixture
def session_factory(db: Session) -> sessionmaker:
    """Session factory bound to the in-memory test database."""
    return TestingSessionLocal


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def manager(db: Session, test_settings: Settings) -> QueueManager:
    """Queue manager over the in-memory test database."""
    return QueueManager.from_settings(test_settings, TestingSessionLocal)


@pytest.fixture
def hub() -> WebSocketHub:
    return WebSocketHub()


@pytest.fixture
def simulated_adapters() -> dict:
    return {channel: SimulatedAdapter(channel) for channel in ("push", "email", "sms")}


@pytest.fixture
def services(manager, hub, simulated_adapters, test_settings) -> Services:
    return Services(
        manager=manager,
        session_factory=TestingSessionLocal,
        adapters=simulated_adapters,
        hub=hub,
        settings=test_settings,
    )


@pytest.fixture
def client(db: Session, services: Services) -> Generator[TestClient, None, None]:
    """Create a test client with dependency overrides."""

    def get_test_db():
        yield db

    from finjobs.common.db import get_db

    app.dependency_overrides[get_db] = get_test_db

    with TestClient(app) as test_client:
        app.state.services = services
        app.state.queue_manager = services.manager
        app.state.websocket_hub = services.hub
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def user_headers() -> dict[str, str]:
    return {"X-User-ID": "user-1"}
