# server/tests/integration/conftest.py
from datetime import datetime, timedelta, timezone

import aiosqlite
import httpx
import pytest
import pytest_asyncio

from orderbean_realtime.config import Settings
from orderbean_realtime.db import queries
from orderbean_realtime.db.migrations import apply_migrations
from orderbean_realtime.events.sqlite_log import SQLiteEventLog


@pytest_asyncio.fixture
async def db():
    """Create an in-memory SQLite database with full schema."""
    conn = await aiosqlite.connect(":memory:")
    conn.row_factory = aiosqlite.Row
    await conn.execute("PRAGMA foreign_keys = ON")
    await apply_migrations(conn)
    yield conn
    await conn.close()


@pytest.fixture
def event_log(db):
    """A real SQLite event log sharing the test database."""
    return SQLiteEventLog(db, max_len=100)


@pytest.fixture
def server_config():
    """Settings tuned for fast tests: quick polls, no keepalive noise."""
    return Settings(
        stream={
            "poll_interval": 0.02,
            "keepalive_interval": 0,
            "batch_size": 10,
            "max_duration_seconds": 5,
            "retry_ms": 1000,
        },
    )


@pytest.fixture
def app(db, event_log, server_config):
    """Create a FastAPI app with dependency overrides for testing."""
    from orderbean_realtime.app import create_app
    from orderbean_realtime.api.deps import get_config, get_db, get_event_log

    application = create_app(server_config)

    async def override_db():
        return db

    async def override_event_log():
        return event_log

    async def override_config():
        return server_config

    application.dependency_overrides[get_db] = override_db
    application.dependency_overrides[get_event_log] = override_event_log
    application.dependency_overrides[get_config] = override_config

    return application


@pytest_asyncio.fixture
async def http(app):
    """In-process HTTP client for the app."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def make_session(db):
    """Return an async factory that stores a session and yields auth headers."""

    async def _make(user_id: str, role: str = "CUSTOMER", *, expired: bool = False) -> dict:
        token = f"tok-{user_id}-{role.lower()}"
        expires_at = None
        if expired:
            expires_at = (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat()
        await queries.insert_session(
            db, token=token, user_id=user_id, role=role, expires_at=expires_at
        )
        return {"Authorization": f"Bearer {token}"}

    return _make

