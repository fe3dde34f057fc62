"""Session lifecycle: login, restore, logout and online/offline mode."""

from .coordinator import SessionCoordinator, SessionMode, SessionState

__all__ = ["SessionCoordinator", "SessionMode", "SessionState"]
