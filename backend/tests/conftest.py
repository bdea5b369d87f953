"""Shared test fixtures and configuration for backend tests."""
import asyncio
import itertools
from typing import Any, List, Optional

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from mindease.auth.schemas import Identity
from mindease.auth.service import IdentityVerifier, UserDirectory, issue_token
from mindease.chat.broadcast import BroadcastRouter
from mindease.chat.protocol import RoomSessionProtocol, set_protocol
from mindease.chat.registry import SessionRegistry
from mindease.config import (
    AppConfig,
    ChatSettings,
    JWTSecrets,
    Secrets,
    StorageSettings,
    reset_config,
    set_config,
)
from mindease.main import app
from mindease.rooms.schemas import RoomCategory, RoomMetadata
from mindease.rooms.service import RoomDirectory

TEST_SECRET = "test-secret-key"


class RecordingSender:
    """Stands in for a WebSocket: records every frame it is asked to send."""

    def __init__(self) -> None:
        self.frames: List[dict] = []
        self.closed_with: Optional[int] = None

    async def send_json(self, data: Any) -> None:
        self.frames.append(data)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.closed_with = code

    def of_type(self, event_type: str) -> List[dict]:
        return [f for f in self.frames if f["type"] == event_type]

    def last(self, event_type: str) -> dict:
        matching = self.of_type(event_type)
        assert matching, f"no {event_type!r} frame received"
        return matching[-1]


class FailingSender(RecordingSender):
    """A sender whose socket breaks when a frame of ``fail_on`` type is sent."""

    def __init__(self, fail_on: str = "message") -> None:
        super().__init__()
        self.fail_on = fail_on

    async def send_json(self, data: Any) -> None:
        if data["type"] == self.fail_on:
            raise RuntimeError("socket closed")
        await super().send_json(data)


async def settle(protocol: RoomSessionProtocol) -> None:
    """Drain every outbox and let scheduled close tasks run."""
    await protocol.router.flush()
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def rooms():
    """In-memory room directory seeded with two rooms."""
    RoomDirectory.reset_instance()
    directory = RoomDirectory.get_instance(db_path=":memory:")
    directory.create_room(RoomMetadata(id="calm", name="Calm Corner", category=RoomCategory.SUPPORT))
    directory.create_room(RoomMetadata(id="garden", name="Mindful Garden", category=RoomCategory.MINDFULNESS))
    yield directory
    RoomDirectory.reset_instance()


@pytest.fixture
def users():
    """In-memory user directory with two active users."""
    UserDirectory.reset_instance()
    directory = UserDirectory.get_instance(db_path=":memory:")
    directory.create_user("Alice", user_id="user-alice")
    directory.create_user("Bob", user_id="user-bob")
    yield directory
    UserDirectory.reset_instance()


@pytest.fixture
def verifier(users):
    return IdentityVerifier(secret_key=TEST_SECRET, users=users)


@pytest.fixture
def app_config():
    """Install a config pointing at in-memory stores and the test secret."""
    config = AppConfig(
        storage=StorageSettings(rooms_db_path=":memory:", users_db_path=":memory:"),
        secrets=Secrets(jwt=JWTSecrets(secret_key=TEST_SECRET)),
    )
    set_config(config)
    yield config
    reset_config()
    set_protocol(None)


@pytest.fixture
def token_for():
    """Factory for signed bearer tokens."""
    def _token(user_id: str, **kwargs) -> str:
        return issue_token(user_id, TEST_SECRET, **kwargs)
    return _token


@pytest_asyncio.fixture
async def protocol(rooms, verifier):
    """A protocol wired to in-memory stores, torn down after the test."""
    registry = SessionRegistry()
    router = BroadcastRouter(registry, outbox_size=64)
    chat_protocol = RoomSessionProtocol(registry, router, rooms, verifier, ChatSettings())
    yield chat_protocol
    await router.close_all()


@pytest.fixture
def open_client(protocol):
    """Open an authenticated session; returns (connection_id, sender)."""
    counter = itertools.count(1)

    async def _open(name: str, identity_id: Optional[str] = None, sender=None):
        identity = Identity(id=identity_id or f"user-{name.lower()}", displayName=name)
        sender = sender or RecordingSender()
        connection_id = f"conn-{next(counter)}"
        await protocol.open_session(connection_id, identity, sender)
        return connection_id, sender

    return _open


@pytest.fixture
def api_client(app_config, rooms, users):
    """Provide a TestClient for the main FastAPI app with lifespan running."""
    with TestClient(app) as test_client:
        yield test_client
