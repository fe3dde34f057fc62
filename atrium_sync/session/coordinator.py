"""Authentication lifecycle and online/offline mode.

The coordinator owns the identity, persists it across restarts and decides
whether the sync engine may poll. A restored session is usable offline
straight away; a background login flips it online when the server answers.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, replace
from enum import Enum

from ..api_client import AtriumClient
from ..config import Config
from ..errors import AtriumError, AuthError
from ..models import Credentials, Identity, Message, Principal
from ..observable import Observable
from ..presence import PresenceHeartbeat, PresenceState, PresenceStatus
from ..storage import PASSWORD_KEY, USER_KEY, LocalStorage
from ..sync import MessageSyncEngine

logger = logging.getLogger(__name__)


class SessionMode(Enum):
    UNKNOWN = "unknown"
    UNAUTHENTICATED = "unauthenticated"
    OFFLINE = "offline"  # Identity known, serving cached data
    ONLINE = "online"  # Authenticated and live-synced


@dataclass(frozen=True)
class SessionState:
    mode: SessionMode = SessionMode.UNKNOWN
    identity: Identity | None = None
    last_error: str | None = None


class SessionCoordinator:
    """Mediates between the heartbeat, the sync engine and stored identity.

    Only user-initiated actions (``login``, ``register``, ``send_message``)
    hand errors back to the caller. Background failures are recorded in
    ``state.last_error``.
    """

    def __init__(
        self,
        client: AtriumClient,
        storage: LocalStorage,
        heartbeat: PresenceHeartbeat,
        engine: MessageSyncEngine,
        send_poll_delay: float = 0.1,
    ):
        self.client = client
        self.storage = storage
        self.heartbeat = heartbeat
        self.engine = engine
        self.send_poll_delay = send_poll_delay

        self.state: Observable[SessionState] = Observable(SessionState())
        self.restore_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._generation = 0  # bumped by logout

        self._unsubscribe_presence = heartbeat.state.subscribe(self._on_presence_change)

    @classmethod
    def from_config(
        cls,
        config: Config,
        client: AtriumClient | None = None,
        storage: LocalStorage | None = None,
    ) -> "SessionCoordinator":
        """Build a coordinator and its collaborators from configuration."""
        if client is None:
            client = AtriumClient(config.server.base_url, timeout=config.server.timeout_seconds)
        if storage is None:
            storage = LocalStorage(config.storage.db_path)
            storage.connect()

        return cls(
            client,
            storage,
            PresenceHeartbeat.from_config(client, config.heartbeat),
            MessageSyncEngine.from_config(client, storage, config.messages),
            send_poll_delay=config.messages.send_poll_delay_seconds,
        )

    @property
    def mode(self) -> SessionMode:
        return self.state.value.mode

    @property
    def identity(self) -> Identity | None:
        return self.state.value.identity

    def _set_mode(self, mode: SessionMode, **changes) -> None:
        previous = self.mode
        self.state.update(lambda s: replace(s, mode=mode, **changes))
        if previous != mode:
            logger.info(f"Session mode: {previous.value} -> {mode.value}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _cancel_restore(self) -> None:
        task = self.restore_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self.restore_task = None

    # Identity persistence

    def _persist_identity(self, identity: Identity) -> None:
        self.storage.set(USER_KEY, json.dumps(identity.principal.to_dict()))
        self.storage.set(PASSWORD_KEY, identity.credentials.password)

    def _clear_identity(self) -> None:
        self.storage.delete(USER_KEY)
        self.storage.delete(PASSWORD_KEY)

    def _load_identity(self) -> Identity | None:
        raw_user = self.storage.get(USER_KEY)
        password = self.storage.get(PASSWORD_KEY)
        if raw_user is None or password is None:
            return None

        try:
            principal = Principal.from_dict(json.loads(raw_user))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Discarding stored identity: {e}")
            self._clear_identity()
            return None

        return Identity(principal, Credentials(principal.name, password))

    # Lifecycle

    async def _authenticate(self, credentials: Credentials) -> Principal:
        # A heartbeat doubles as the credential check
        await self.client.heartbeat(credentials)
        return await self.client.get_user(credentials.username)

    async def _drain_background(self) -> None:
        # A pending stop_polling must not cancel the poller started below
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def _still_online(self, generation: int) -> bool:
        return generation == self._generation and self.mode is SessionMode.ONLINE

    async def _go_online(self, identity: Identity, generation: int) -> bool:
        await self._drain_background()
        if generation != self._generation:
            return False

        self._persist_identity(identity)
        self._set_mode(SessionMode.ONLINE, identity=identity, last_error=None)

        await self.heartbeat.start(identity.credentials)
        if not self._still_online(generation):
            # Logged out, or the heartbeat gave up on its first attempts
            return False

        await self.engine.load_initial()
        if not self._still_online(generation):
            return False

        self.engine.start_polling(identity.principal.unread_watermark)
        return True

    async def login(self, username: str, password: str) -> AtriumError | None:
        """Verify credentials and go online.

        Returns:
            None on success, otherwise the error. Identity is untouched on
            failure.
        """
        credentials = Credentials(username, password)
        generation = self._generation
        try:
            principal = await self._authenticate(credentials)
        except AtriumError as e:
            logger.warning(f"Login failed for {username}: {e}")
            return e

        if generation == self._generation:
            self._cancel_restore()
            await self._go_online(Identity(principal, credentials), generation)

        if generation != self._generation:
            logger.info(f"Login for {username} abandoned by logout")
            return AtriumError("Logged out during login")

        logger.info(f"Logged in as {username}")
        return None

    async def register(self, name: str, bio: str, password: str) -> AtriumError | None:
        """Create an account. Does not log in."""
        try:
            await self.client.create_user(name, bio, password)
        except AtriumError as e:
            logger.warning(f"Registration failed for {name}: {e}")
            return e

        logger.info(f"Registered {name}")
        return None

    async def logout(self) -> None:
        """Stop presence, forget the identity and erase cached messages."""
        self._generation += 1
        self._cancel_restore()
        self.heartbeat.stop()
        self._clear_identity()
        await self.engine.reset()
        self.state.set(SessionState(mode=SessionMode.UNAUTHENTICATED))
        logger.info("Logged out")

    async def restore_session(self) -> bool:
        """Resume a persisted session.

        The session comes back in offline mode immediately, with cached
        messages available. Re-authentication runs in ``restore_task``.

        Returns:
            True if a stored identity was found.
        """
        identity = self._load_identity()
        if identity is None:
            self._set_mode(SessionMode.UNAUTHENTICATED, identity=None)
            return False

        self._set_mode(SessionMode.OFFLINE, identity=identity, last_error=None)
        logger.info(
            f"Restored session for {identity.principal.name} "
            f"with {len(self.engine.messages)} cached messages"
        )

        self._cancel_restore()
        self.restore_task = asyncio.create_task(self._reauthenticate(identity.credentials))
        return True

    async def reconnect(self) -> bool:
        """Retry going online with the stored credentials.

        Returns:
            True if the session is online afterwards.
        """
        identity = self.identity
        if identity is None:
            return False
        if self.mode is SessionMode.ONLINE and self.heartbeat.is_running:
            return True
        return await self._reauthenticate(identity.credentials)

    async def _reauthenticate(self, credentials: Credentials) -> bool:
        generation = self._generation
        try:
            principal = await self._authenticate(credentials)
        except AuthError as e:
            if generation != self._generation:
                return False
            logger.warning(f"Stored credentials rejected, logging out: {e}")
            await self.logout()
            self.state.update(lambda s: replace(s, last_error=str(e)))
            return False
        except AtriumError as e:
            # Stay logged in against cached data
            logger.warning(f"Could not reach server, staying offline: {e}")
            self.state.update(lambda s: replace(s, last_error=str(e)))
            return False

        if generation != self._generation or self.identity is None:
            # Logged out while the request was in flight
            return False

        return await self._go_online(Identity(principal, credentials), generation)

    def _on_presence_change(self, presence: PresenceState) -> None:
        if (
            presence.status is PresenceStatus.DISCONNECTED
            and presence.exhausted
            and self.mode is SessionMode.ONLINE
        ):
            logger.warning("Heartbeat gave up, switching to offline mode")
            self._set_mode(SessionMode.OFFLINE, last_error=str(presence.last_error))
            self._spawn(self.engine.stop_polling())

    # Actions

    async def send_message(self, content: str) -> tuple[Message | None, AtriumError | None]:
        """Post a message and poll shortly afterwards.

        Returns:
            Tuple of (message, error).
        """
        identity = self.identity
        if identity is None:
            return None, AuthError("Not logged in")

        try:
            message = await self.client.send_message(content, identity.credentials)
        except AtriumError as e:
            logger.warning(f"Sending message failed: {e}")
            return None, e

        self.engine.schedule_poll(self.send_poll_delay)
        return message, None

    async def mark_read(self, message_id: int) -> bool:
        """Acknowledge messages up to ``message_id``.

        On success the local watermark moves forward so unread detection
        does not work from the value fetched at login.
        """
        identity = self.identity
        if identity is None:
            return False
        if not await self.engine.mark_read(message_id, identity.credentials):
            return False

        watermark = max(identity.principal.unread_watermark, message_id)
        if self.identity is identity and watermark != identity.principal.unread_watermark:
            updated = Identity(
                replace(identity.principal, unread_watermark=watermark), identity.credentials
            )
            self.state.update(lambda s: replace(s, identity=updated))
            self._persist_identity(updated)
            self.engine.set_unread_watermark(watermark)
        return True

    async def close(self) -> None:
        """Stop background work without touching stored state."""
        self._cancel_restore()
        self.heartbeat.stop()
        await self.engine.stop_polling()
        for task in list(self._background):
            task.cancel()
