"""
Shared fixtures for agentobs unit tests.

Points the service at in-memory SQLite before anything imports database.py,
then rebinds SessionLocal to a single shared in-memory connection so the
store, the routes and the WebSocket backlog all see the same tables.
No server or docker required.
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from agentobs.services.shared.database import Base, SessionLocal, create_all_tables  # noqa: E402

test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
SessionLocal.configure(bind=test_engine)


@pytest.fixture(autouse=True)
def fresh_schema():
    create_all_tables(bind=test_engine)
    yield
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


class FakeBroadcaster:
    """Records broadcast messages instead of sending them."""

    def __init__(self):
        self.messages: list[dict] = []

    async def broadcast(self, message: dict) -> int:
        self.messages.append(message)
        return 1

    @property
    def types(self) -> list[str]:
        return [m["type"] for m in self.messages]


@pytest.fixture
def client():
    from agentobs.services.ingest.main import app
    from agentobs.services.ingest.broadcaster import Broadcaster

    app.state.broadcaster = Broadcaster()
    with TestClient(app) as c:
        yield c


@pytest.fixture
def fake_broadcaster(client):
    from agentobs.services.ingest.main import app
    from agentobs.services.ingest.broadcaster import get_broadcaster

    fake = FakeBroadcaster()
    app.dependency_overrides[get_broadcaster] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_broadcaster, None)
