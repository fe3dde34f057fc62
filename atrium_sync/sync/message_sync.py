"""Cache-backed view of the remote message log.

Keeps a local, persisted copy of the append-only log using backward
pagination for history and incremental polling for new messages. Public
operations never raise: outcomes are recorded in ``state`` and
``notifications``, and a previously good cache is kept whenever a fetch
fails.

Messages are ordered and deduplicated by id. ``created_at`` is only a
display attribute; clock skew on the server cannot reorder the cache.
"""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, replace
from datetime import datetime

from ..api_client import AtriumClient
from ..config import MessagesConfig
from ..errors import AtriumError
from ..models import Credentials, Message
from ..observable import Observable
from ..storage import LocalStorage, MessageCache, merge_by_id

logger = logging.getLogger(__name__)

CACHED_FALLBACK_ERROR = "Connection failed. Showing cached messages. Some messages may be missing."
INITIAL_LOAD_ERROR = "Failed to fetch messages"
OLDER_LOAD_ERROR = "Failed to load older messages"


@dataclass(frozen=True)
class SyncState:
    """Snapshot of the local message log."""

    messages: tuple[Message, ...] = ()
    loading: bool = False
    error: str | None = None
    degraded: bool = False  # error is set but cached messages are shown
    has_more: bool = True
    backward_offset: int = 0
    last_fetched_at: datetime | None = None


@dataclass(frozen=True)
class NotificationState:
    new_count: int = 0
    has_unloaded_unread: bool = False


class MessageSyncEngine:
    """Synchronizes the local message cache with the server.

    All cache-mutating operations are mutually exclusive. Overlapping
    ``poll_incremental`` and ``load_older`` calls are dropped rather than
    queued; ``load_initial`` waits its turn.
    """

    def __init__(
        self,
        client: AtriumClient,
        storage: LocalStorage,
        page_size: int = 50,
        poll_interval: float = 3.0,
        max_stored_messages: int = 1000,
        max_gap_pages: int = 4,
    ):
        """Initialize the engine and hydrate it from the persisted cache.

        Args:
            client: API client for the message log.
            storage: Durable storage holding the message cache.
            page_size: Messages per fetch.
            poll_interval: Seconds between background polls.
            max_stored_messages: Cap on persisted messages.
            max_gap_pages: Extra pages a poll may fetch to close a gap.
        """
        self._client = client
        self.page_size = page_size
        self.poll_interval = poll_interval
        self.max_gap_pages = max_gap_pages
        self._cache = MessageCache(storage, max_entries=max_stored_messages)

        cached = self._cache.load()
        self.state: Observable[SyncState] = Observable(
            SyncState(messages=tuple(cached), backward_offset=len(cached))
        )
        self.notifications: Observable[NotificationState] = Observable(NotificationState())

        self._lock = asyncio.Lock()
        self._generation = 0
        self._poll_task: asyncio.Task | None = None
        self._poll_watermark: int | None = None
        self._scheduled: set[asyncio.Task] = set()

        if cached:
            logger.info(f"Hydrated {len(cached)} cached messages")

    @classmethod
    def from_config(
        cls,
        client: AtriumClient,
        storage: LocalStorage,
        config: MessagesConfig,
    ) -> "MessageSyncEngine":
        return cls(
            client,
            storage,
            page_size=config.page_size,
            poll_interval=config.poll_interval_seconds,
            max_stored_messages=config.max_stored_messages,
            max_gap_pages=config.max_gap_pages,
        )

    @property
    def messages(self) -> tuple[Message, ...]:
        return self.state.value.messages

    @property
    def latest_id(self) -> int:
        """Highest cached message id, or 0 when the cache is empty."""
        return max((m.id for m in self.state.value.messages), default=0)

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def _persist(self) -> None:
        try:
            self._cache.save(self.state.value.messages)
        except sqlite3.Error as e:
            logger.error(f"Failed to persist message cache: {e}")

    async def load_initial(self) -> bool:
        """Replace the cache with the newest page.

        Returns:
            True on success.
        """
        async with self._lock:
            generation = self._generation
            self.state.update(lambda s: replace(s, loading=True, error=None, degraded=False))

            try:
                page = await self._client.get_messages(limit=self.page_size, offset=0)
            except AtriumError as e:
                if generation != self._generation:
                    return False
                if self.state.value.messages:
                    logger.warning(f"Initial load failed, keeping cached messages: {e}")
                    self.state.update(
                        lambda s: replace(
                            s, loading=False, error=CACHED_FALLBACK_ERROR, degraded=True
                        )
                    )
                else:
                    logger.warning(f"Initial load failed: {e}")
                    self.state.update(
                        lambda s: replace(s, loading=False, error=INITIAL_LOAD_ERROR)
                    )
                return False

            if generation != self._generation:
                return False

            messages = merge_by_id([], page)
            self.state.update(
                lambda s: replace(
                    s,
                    messages=tuple(messages),
                    loading=False,
                    error=None,
                    degraded=False,
                    has_more=len(page) == self.page_size,
                    backward_offset=len(page),
                    last_fetched_at=datetime.now(),
                )
            )
            self._persist()

        logger.info(f"Loaded {len(messages)} messages")
        return True

    async def load_older(self) -> bool:
        """Prepend the next page of history.

        Returns:
            True if older messages were added.
        """
        current = self.state.value
        if current.loading or not current.has_more or self._lock.locked():
            return False

        async with self._lock:
            generation = self._generation
            offset = self.state.value.backward_offset
            self.state.update(lambda s: replace(s, loading=True, error=None, degraded=False))

            try:
                page = await self._client.get_messages(limit=self.page_size, offset=offset)
            except AtriumError as e:
                if generation != self._generation:
                    return False
                logger.warning(f"Loading older messages failed: {e}")
                self.state.update(lambda s: replace(s, loading=False, error=OLDER_LOAD_ERROR))
                return False

            if generation != self._generation:
                return False

            if not page:
                self.state.update(lambda s: replace(s, loading=False, has_more=False))
                return False

            messages = merge_by_id(self.state.value.messages, page)
            self.state.update(
                lambda s: replace(
                    s,
                    messages=tuple(messages),
                    loading=False,
                    has_more=len(page) == self.page_size,
                    backward_offset=s.backward_offset + len(page),
                )
            )
            self._persist()

        logger.debug(f"Loaded {len(page)} older messages at offset {offset}")
        return True

    async def _fetch_newer_than(self, latest_id: int) -> list[Message]:
        """Fetch messages with id above ``latest_id``.

        When a whole page is new and the cache already had messages, the
        poll may have skipped some; up to ``max_gap_pages`` further pages
        are fetched until a known id is reached.
        """
        page = await self._client.get_messages(limit=self.page_size, offset=0)
        newer = [m for m in page if m.id > latest_id]
        if latest_id == 0:
            return newer

        offset = len(page)
        extra_pages = 0
        gap = len(page) == self.page_size and len(newer) == len(page)
        while gap and extra_pages < self.max_gap_pages:
            page = await self._client.get_messages(limit=self.page_size, offset=offset)
            fresh = [m for m in page if m.id > latest_id]
            newer.extend(fresh)
            offset += len(page)
            extra_pages += 1
            gap = len(page) == self.page_size and len(fresh) == len(page)

        if gap:
            logger.warning(
                f"More than {offset} new messages since id {latest_id}; "
                "some messages may be missing until the next full load"
            )
        elif extra_pages:
            logger.info(f"Closed polling gap with {extra_pages} extra page(s)")

        return newer

    async def poll_incremental(self, unread_watermark: int | None = None) -> int:
        """Append messages newer than the newest cached one.

        Args:
            unread_watermark: The principal's read watermark, used to flag
                unread messages that are older than the cache.

        A poll that finds nothing new leaves ``new_count`` alone, but may
        raise ``has_unloaded_unread`` the first time it runs with a
        watermark. The flag is never lowered here, so later empty polls are
        no-ops.

        Returns:
            Number of new messages appended.
        """
        if self._lock.locked():
            logger.debug("Poll skipped, another sync operation is running")
            return 0

        async with self._lock:
            generation = self._generation
            latest_id = self.latest_id

            try:
                newer = await self._fetch_newer_than(latest_id)
            except AtriumError as e:
                logger.warning(f"Polling for new messages failed: {e}")
                return 0

            if generation != self._generation:
                return 0

            if newer:
                messages = merge_by_id(self.state.value.messages, newer)
                added = len(messages) - len(self.state.value.messages)
                self.state.update(
                    lambda s: replace(
                        s,
                        messages=tuple(messages),
                        backward_offset=s.backward_offset + added,
                        last_fetched_at=datetime.now(),
                    )
                )
                self._persist()
                self.notifications.update(
                    lambda n: replace(n, new_count=n.new_count + added)
                )
                logger.debug(f"Poll found {added} new messages")
                return added

            if unread_watermark is not None:
                self._check_unloaded_unread(unread_watermark)
            return 0

    def _check_unloaded_unread(self, watermark: int) -> None:
        # Ids between the watermark and the oldest cached message are unread but not loaded
        messages = self.state.value.messages
        if not messages or self.notifications.value.has_unloaded_unread:
            return
        if messages[0].id > watermark + 1:
            self.notifications.update(lambda n: replace(n, has_unloaded_unread=True))

    async def mark_read(self, message_id: int, credentials: Credentials) -> bool:
        """Tell the server the principal has read up to ``message_id``.

        The server advances the watermark on heartbeat; the local cache is
        not touched.

        Returns:
            True if the server acknowledged.
        """
        try:
            await self._client.heartbeat(credentials)
        except AtriumError as e:
            logger.warning(f"Failed to mark messages as read: {e}")
            return False

        logger.debug(f"Marked messages up to {message_id} as read")
        return True

    @property
    def unread_watermark(self) -> int | None:
        return self._poll_watermark

    def set_unread_watermark(self, watermark: int) -> None:
        """Use a newer read watermark for subsequent background polls."""
        self._poll_watermark = watermark

    def clear_notifications(self) -> None:
        self.notifications.set(NotificationState())

    def start_polling(self, unread_watermark: int | None = None) -> None:
        """Start polling in the background. Replaces a running poller."""
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()

        self._poll_watermark = unread_watermark
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(f"Polling started (interval={self.poll_interval}s)")

    async def stop_polling(self) -> None:
        """Stop background polling."""
        task, self._poll_task = self._poll_task, None
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("Polling stopped")

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.poll_incremental(self._poll_watermark)
            except Exception as e:
                logger.error(f"Poll loop error: {e}", exc_info=True)

    def schedule_poll(self, delay: float) -> asyncio.Task:
        """Run one poll after ``delay`` seconds."""

        async def _delayed() -> None:
            await asyncio.sleep(delay)
            await self.poll_incremental(self._poll_watermark)

        task = asyncio.create_task(_delayed())
        self._scheduled.add(task)
        task.add_done_callback(self._scheduled.discard)
        return task

    async def reset(self) -> None:
        """Stop polling, drop all state and erase the persisted cache."""
        await self.stop_polling()
        for task in list(self._scheduled):
            task.cancel()

        self._generation += 1
        self._poll_watermark = None
        self.state.set(SyncState())
        self.notifications.set(NotificationState())
        self._cache.clear()
        logger.info("Message sync state reset")
