"""Persisted, capped copy of the locally known message log."""

import json
import logging
from typing import Iterable

from ..errors import MalformedCacheError
from ..models import Message
from .local_storage import MESSAGES_KEY, LocalStorage

logger = logging.getLogger(__name__)


def merge_by_id(existing: Iterable[Message], incoming: Iterable[Message]) -> list[Message]:
    """Union of two message sets, unique by id and sorted ascending by id.

    Messages already present keep their stored instance.
    """
    merged = {m.id: m for m in incoming}
    merged.update({m.id: m for m in existing})
    return [merged[i] for i in sorted(merged)]


class MessageCache:
    """Serializes the message cache under a single storage key.

    Only the most recent ``max_entries`` messages are written. A blob that
    cannot be parsed is dropped and treated as an empty cache.
    """

    def __init__(self, storage: LocalStorage, max_entries: int = 1000):
        self._storage = storage
        self.max_entries = max_entries

    def _parse(self, raw: str) -> list[Message]:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedCacheError(MESSAGES_KEY, str(e)) from e

        if not isinstance(data, list):
            raise MalformedCacheError(MESSAGES_KEY, f"expected a list, got {type(data).__name__}")

        try:
            return [Message.from_dict(item) for item in data]
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedCacheError(MESSAGES_KEY, str(e)) from e

    def load(self) -> list[Message]:
        """Load cached messages, oldest first.

        Returns:
            Id-sorted, id-unique messages; empty if nothing valid is stored.
        """
        raw = self._storage.get(MESSAGES_KEY)
        if raw is None:
            return []

        try:
            messages = self._parse(raw)
        except MalformedCacheError as e:
            logger.warning(f"Discarding cached messages: {e}")
            self._storage.delete(MESSAGES_KEY)
            return []

        return merge_by_id([], messages)

    def save(self, messages: list[Message] | tuple[Message, ...]) -> int:
        """Persist the newest ``max_entries`` messages.

        Returns:
            Number of messages written.
        """
        limited = list(messages)[-self.max_entries:] if self.max_entries > 0 else []
        self._storage.set(MESSAGES_KEY, json.dumps([m.to_dict() for m in limited]))
        return len(limited)

    def clear(self) -> None:
        self._storage.delete(MESSAGES_KEY)
