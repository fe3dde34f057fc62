"""Message log synchronization.

Keeps a persisted local view of the remote append-only message log using
backward pagination and incremental polling.
"""

from .message_sync import MessageSyncEngine, NotificationState, SyncState

__all__ = ["MessageSyncEngine", "NotificationState", "SyncState"]
