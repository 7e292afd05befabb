"""
Pytest configuration and shared fixtures.

Test environment values are set before any chatrelay import so the cached
settings (and the engine built from them) pick them up.
"""

import os
from datetime import timedelta

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_chatrelay.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("SEED_ROOMS", '["general", "random"]')
os.environ.setdefault("DELIVERY_BACKOFF_SECONDS", "0")
os.environ.setdefault("DELIVERY_TIMEOUT_SECONDS", "1")
# Tests drive the change feed by hand
os.environ["FANOUT_WORKER_ENABLED"] = "false"

import pytest  # noqa: E402

from chatrelay.config import get_settings  # noqa: E402
get_settings.cache_clear()

from chatrelay import models  # noqa: E402,F401
from chatrelay.registry import ConnectionRegistry  # noqa: E402
from chatrelay.schemas import ConnectionInfo  # noqa: E402
from chatrelay.storage import Base, SessionLocal, engine, init_db  # noqa: E402
from chatrelay.utils import to_iso, utc_now  # noqa: E402


@pytest.fixture(scope="function")
def db_schema():
    """Fresh schema with seeded rooms for each test."""
    Base.metadata.drop_all(bind=engine)
    init_db()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(db_schema):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def registry(db_schema) -> ConnectionRegistry:
    return ConnectionRegistry()


@pytest.fixture
def client(db_schema):
    """Test client with the app lifespan running (feed consumer not started)."""
    from fastapi.testclient import TestClient
    from chatrelay.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def add_connection(registry):
    """Factory registering a connection row directly in the registry."""

    def _add(connection_id: str, room_id: str = "general", ttl_seconds: int = 3600, age_seconds: int = 0):
        connected_at = utc_now() - timedelta(seconds=age_seconds)
        connection = ConnectionInfo(
            connection_id=connection_id,
            room_id=room_id,
            user_id=f"user-{connection_id}",
            username=f"name-{connection_id}",
            connected_at=to_iso(connected_at),
            expires_at=to_iso(connected_at + timedelta(seconds=ttl_seconds)),
        )
        registry.put(connection)
        return connection

    return _add
