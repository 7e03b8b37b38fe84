"""Shared test fixtures and configuration for backend tests."""
import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from relay.auth.service import TokenVerifier
from relay.chat.connection import Connection
from relay.chat.manager import ConnectionManager, set_manager
from relay.config import MEMORY_DB, AppSettings, StorageSettings, reset_config, set_config
from relay.main import app
from relay.storage.service import MessageStore

TEST_SECRET = "test-secret-key"


class FakeWebSocket:
    """Stand-in for a Starlette WebSocket that records what is sent to it.

    Args:
        fail: Raise on every send (simulates a dropped transport).
        delay: Seconds to sleep before each send (simulates a slow client).
    """

    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.sent = []
        self.accepted = False
        self.closed_with = None
        self.fail = fail
        self.delay = delay

    async def accept(self):
        self.accepted = True

    async def close(self, code: int = 1000, reason=None):
        self.closed_with = code

    async def send_json(self, data):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("socket is gone")
        self.sent.append(data)

    def frames(self, frame_type):
        return [f for f in self.sent if f.get("type") == frame_type]


def make_connection(identity=None, **socket_kwargs) -> Connection:
    """Build an ACTIVE-looking Connection over a FakeWebSocket."""
    conn = Connection(FakeWebSocket(**socket_kwargs))
    conn.identity = identity
    return conn


def wait_until(predicate, timeout: float = 2.0) -> bool:
    """Poll *predicate* until it is true or *timeout* elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def store():
    """Provide an in-memory MessageStore."""
    store = MessageStore(db_path=":memory:")
    yield store
    store.close()


@pytest.fixture
def verifier():
    return TokenVerifier(secret_key=TEST_SECRET)


@pytest.fixture
def relay_manager(store, verifier):
    """Install a ConnectionManager over the in-memory store for the app."""
    manager = ConnectionManager(store, verifier=verifier, push_timeout=2.0)
    set_manager(manager)
    yield manager
    set_manager(None)


@pytest.fixture
def api_client(relay_manager):
    """Provide a started TestClient for the main FastAPI app.

    Entering the client runs the lifespan once, so every WebSocket opened in
    a test shares one event loop. Startup is pointed at an in-memory store,
    then the relay_manager fixture replaces the manager it installs.
    """
    set_config(AppSettings(storage=StorageSettings(db_path=MEMORY_DB)))
    try:
        with TestClient(app) as client:
            set_manager(relay_manager)
            yield client
    finally:
        reset_config()
        MessageStore.reset_instance()
