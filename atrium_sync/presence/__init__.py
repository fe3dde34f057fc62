"""Presence tracking for the local principal."""

from .heartbeat import PresenceHeartbeat, PresenceState, PresenceStatus

__all__ = ["PresenceHeartbeat", "PresenceState", "PresenceStatus"]
