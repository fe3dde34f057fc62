"""Durable local storage for session and message state."""

from .local_storage import MESSAGES_KEY, PASSWORD_KEY, USER_KEY, LocalStorage
from .message_cache import MessageCache, merge_by_id

__all__ = [
    "LocalStorage",
    "MessageCache",
    "merge_by_id",
    "MESSAGES_KEY",
    "PASSWORD_KEY",
    "USER_KEY",
]
