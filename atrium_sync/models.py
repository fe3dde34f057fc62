"""Wire models for the Dialogue Atrium API."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp as emitted by the server."""
    if not value:
        return None
    # The server emits UTC timestamps with a trailing "Z"
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def _format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Message:
    """A single entry in the remote message log. Ordered by id."""

    id: int
    content: str
    sender: str
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "content": self.content,
            "sender": self.sender,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        """Create from dictionary."""
        created_at = parse_timestamp(data["created_at"])
        if created_at is None:
            raise ValueError(f"Message {data['id']} has no created_at")
        return cls(
            id=int(data["id"]),
            content=data["content"],
            sender=data["sender"],
            created_at=created_at,
        )


@dataclass(frozen=True)
class OnlineStatus:
    """Heartbeat response."""

    online: bool
    last_seen: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OnlineStatus":
        return cls(
            online=bool(data.get("online", False)),
            last_seen=parse_timestamp(data.get("last_seen")),
        )


@dataclass(frozen=True)
class Principal:
    """A user profile as returned by the server.

    ``unread_watermark`` is the server's ``message_height``: the highest
    message id the user has acknowledged. Only the server advances it.
    """

    name: str
    bio: str = ""
    unread_watermark: int = 0
    created_at: datetime | None = None
    online: bool = False
    last_seen: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the server's user shape."""
        return {
            "name": self.name,
            "bio": self.bio,
            "status": {
                "online": self.online,
                "last_seen": _format_timestamp(self.last_seen),
            },
            "message_height": self.unread_watermark,
            "created_at": _format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Principal":
        """Create from the server's user shape."""
        status = data.get("status") or {}
        return cls(
            name=data["name"],
            bio=data.get("bio") or "",
            unread_watermark=int(data.get("message_height") or 0),
            created_at=parse_timestamp(data.get("created_at")),
            online=bool(status.get("online", False)),
            last_seen=parse_timestamp(status.get("last_seen")),
        )


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str

    def to_payload(self) -> dict[str, str]:
        return {"username": self.username, "password": self.password}

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='***')"


@dataclass(frozen=True)
class Identity:
    """The authenticated principal and the secret that proves it."""

    principal: Principal
    credentials: Credentials
