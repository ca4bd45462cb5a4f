"""Shared pytest fixtures and configuration."""

import os
import tempfile

import pytest

from wabot.channels.base import ChatClient
from wabot.database import ResponseStore, SessionStore


class FakeChatClient(ChatClient):
    """In-memory chat client; tests drive it by emitting events."""

    def __init__(self, auth_dir, fail_connect=False, fail_logout=False):
        super().__init__("fake", auth_dir)
        self.fail_connect = fail_connect
        self.fail_logout = fail_logout
        self.connected = False
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.logout_calls = 0
        self.checkpoint_calls = 0
        self.sent = []
        # When set, connect() waits on it before finishing
        self.gate = None

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self):
        self.connect_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_connect:
            raise ConnectionError("connection setup failed")

    async def disconnect(self):
        self.disconnect_calls += 1
        self.connected = False

    async def logout(self):
        self.logout_calls += 1
        if self.fail_logout:
            raise RuntimeError("logout failed")
        self.connected = False

    async def checkpoint(self):
        self.checkpoint_calls += 1

    async def send_text(self, chat_id: str, text: str) -> bool:
        self.sent.append((chat_id, text))
        return True

    async def emit(self, event):
        await self._emit(event)


class FakeClientFactory:
    """Records every client the session manager builds."""

    def __init__(self, **client_kwargs):
        self.client_kwargs = client_kwargs
        self.clients = []
        self.fail_first = 0
        # Build index -> connect failure, and build index -> gate to hold connect open
        self.fail_at = set()
        self.gates = {}

    def __call__(self, auth_dir):
        index = len(self.clients)
        fail = index < self.fail_first or index in self.fail_at
        client = FakeChatClient(auth_dir, fail_connect=fail, **self.client_kwargs)
        client.gate = self.gates.get(index)
        self.clients.append(client)
        return client

    @property
    def latest(self) -> FakeChatClient:
        return self.clients[-1]


class BrokenStore:
    """Session store whose database is unreachable."""

    def load(self, session_id):
        raise ConnectionError("database unavailable")

    def save(self, session_id, files):
        raise ConnectionError("database unavailable")

    def clear(self, session_id):
        raise ConnectionError("database unavailable")


@pytest.fixture
def temp_store():
    """Create a SessionStore on a temporary SQLite database."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    store = SessionStore(f"sqlite:///{db_path}")
    yield store

    # Dispose engine to release file locks (Windows)
    store.engine.dispose()

    try:
        os.unlink(db_path)
    except PermissionError:
        pass


@pytest.fixture
def response_store(temp_store):
    """ResponseStore sharing the temporary database."""
    return ResponseStore(engine=temp_store.engine)


@pytest.fixture
def broken_store():
    return BrokenStore()


@pytest.fixture
def auth_dir(tmp_path):
    """Path of a not-yet-created auth directory."""
    return tmp_path / "auth_info"


@pytest.fixture
def client_factory():
    return FakeClientFactory()


@pytest.fixture
def fake_client(auth_dir):
    return FakeChatClient(auth_dir)
