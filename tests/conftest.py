"""Shared fixtures for the atrium-sync test suite."""

import asyncio
from datetime import datetime, timedelta

import pytest

from atrium_sync.errors import AuthError, NetworkError
from atrium_sync.models import Credentials, Message, OnlineStatus, Principal
from atrium_sync.storage import LocalStorage

BASE_TIME = datetime(2026, 1, 1, 12, 0, 0)


def make_message(message_id: int, sender: str = "alice") -> Message:
    return Message(
        id=message_id,
        content=f"message {message_id}",
        sender=sender,
        created_at=BASE_TIME + timedelta(seconds=message_id),
    )


class FakeAtrium:
    """In-memory stand-in for the Dialogue Atrium server."""

    def __init__(self, message_ids=(), password: str = "secret"):
        self.log: list[Message] = [make_message(i) for i in message_ids]
        self.users: dict[str, tuple[str, Principal]] = {
            "alice": (password, Principal(name="alice", bio="hi", unread_watermark=0)),
        }
        self.offline = False
        self.get_calls: list[tuple[int, int]] = []
        self.heartbeat_calls = 0

    def append(self, *message_ids: int) -> None:
        self.log.extend(make_message(i) for i in message_ids)

    def _check_online(self) -> None:
        if self.offline:
            raise NetworkError("Network error: connection refused")

    def _check_credentials(self, credentials: Credentials) -> None:
        user = self.users.get(credentials.username)
        if user is None or user[0] != credentials.password:
            raise AuthError("Invalid password")

    async def get_messages(self, limit: int, offset: int = 0, sender=None) -> list[Message]:
        self.get_calls.append((limit, offset))
        self._check_online()
        newest_first = sorted(self.log, key=lambda m: m.id, reverse=True)
        return newest_first[offset:offset + limit]

    async def heartbeat(self, credentials: Credentials, timeout=None) -> OnlineStatus:
        self.heartbeat_calls += 1
        self._check_online()
        self._check_credentials(credentials)
        return OnlineStatus(online=True, last_seen=BASE_TIME)

    async def get_user(self, username: str) -> Principal:
        self._check_online()
        return self.users[username][1]

    async def create_user(self, name: str, bio: str, password: str) -> Principal:
        self._check_online()
        principal = Principal(name=name, bio=bio)
        self.users[name] = (password, principal)
        return principal

    async def send_message(self, content: str, credentials: Credentials) -> Message:
        self._check_online()
        self._check_credentials(credentials)
        next_id = max((m.id for m in self.log), default=0) + 1
        message = Message(
            id=next_id,
            content=content,
            sender=credentials.username,
            created_at=BASE_TIME + timedelta(seconds=next_id),
        )
        self.log.append(message)
        return message

    async def close(self) -> None:
        pass


class GatedAtrium(FakeAtrium):
    """Server whose message fetches block until the gate opens."""

    def __init__(self, message_ids=()):
        super().__init__(message_ids)
        self.gate = asyncio.Event()

    async def get_messages(self, limit: int, offset: int = 0, sender=None) -> list[Message]:
        await self.gate.wait()
        return await super().get_messages(limit, offset, sender)


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Wait until ``predicate()`` is true or fail."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def storage():
    """Create an in-memory LocalStorage."""
    store = LocalStorage(":memory:")
    store.connect()
    yield store
    store.close()


@pytest.fixture
def fake_remote():
    """Server with messages 1..3."""
    return FakeAtrium(message_ids=range(1, 4))


@pytest.fixture
def credentials():
    return Credentials("alice", "secret")
