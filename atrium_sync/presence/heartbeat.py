"""Presence heartbeat with fail-stop retry backoff.

Periodically proves liveness to the server. All failures are absorbed;
the only observable signal is ``PresenceHeartbeat.state``.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from ..api_client import AtriumClient
from ..config import HeartbeatConfig
from ..errors import AtriumError, ExhaustedRetriesError
from ..models import Credentials
from ..observable import Observable

logger = logging.getLogger(__name__)


class PresenceStatus(Enum):
    """Connectivity of the local principal."""

    CONNECTED = "connected"
    CONNECTING = "connecting"
    DISCONNECTED = "disconnected"
    ERROR = "error"


@dataclass(frozen=True)
class PresenceState:
    status: PresenceStatus = PresenceStatus.DISCONNECTED
    consecutive_failures: int = 0
    current_backoff: float = 0.0  # seconds
    last_error: AtriumError | None = None

    @property
    def exhausted(self) -> bool:
        """True once the heartbeat gave up and awaits an explicit start."""
        return isinstance(self.last_error, ExhaustedRetriesError)


def _cancel(task: asyncio.Task | None) -> None:
    # A task stopping the heartbeat from inside itself exits via the generation check
    if task is not None and not task.done() and task is not asyncio.current_task():
        task.cancel()


class PresenceHeartbeat:
    """Sends a heartbeat every ``interval`` seconds while running.

    On failure a retry is scheduled from ``retry_delays`` (one entry per
    consecutive failure); past the end of the table the last delay doubles
    up to ``max_backoff``. After ``max_failures`` consecutive failures the
    heartbeat stops itself and stays disconnected until ``start`` is called
    again.
    """

    def __init__(
        self,
        client: AtriumClient,
        interval: float = 30.0,
        max_failures: int = 3,
        retry_delays: Sequence[float] = (1.0, 2.0, 5.0, 10.0, 30.0),
        max_backoff: float = 30.0,
        request_timeout: float | None = 5.0,
    ):
        """Initialize the heartbeat.

        Args:
            client: API client used for the liveness request.
            interval: Seconds between periodic heartbeats.
            max_failures: Consecutive failures before giving up.
            retry_delays: Per-attempt retry delays in seconds.
            max_backoff: Ceiling for doubled retry delays.
            request_timeout: Timeout for each heartbeat request.
        """
        self._client = client
        self.interval = interval
        self.max_failures = max_failures
        self.retry_delays = tuple(retry_delays)
        self.max_backoff = max_backoff
        self.request_timeout = request_timeout

        self.state: Observable[PresenceState] = Observable(PresenceState())

        self._credentials: Credentials | None = None
        self._interval_task: asyncio.Task | None = None
        self._retry_task: asyncio.Task | None = None
        self._generation = 0

    @classmethod
    def from_config(cls, client: AtriumClient, config: HeartbeatConfig) -> "PresenceHeartbeat":
        return cls(
            client,
            interval=config.interval_seconds,
            max_failures=config.max_failures,
            retry_delays=config.retry_delays_seconds,
            max_backoff=config.max_backoff_seconds,
            request_timeout=config.timeout_seconds,
        )

    @property
    def status(self) -> PresenceStatus:
        return self.state.value.status

    @property
    def consecutive_failures(self) -> int:
        return self.state.value.consecutive_failures

    @property
    def is_running(self) -> bool:
        return self._credentials is not None

    async def start(self, credentials: Credentials) -> None:
        """Start (or restart) the heartbeat.

        Sends one heartbeat immediately, then every ``interval`` seconds.
        """
        if self.is_running:
            self.stop()

        self._generation += 1
        generation = self._generation
        self._credentials = credentials
        self.state.set(PresenceState(status=PresenceStatus.CONNECTING))
        logger.info(f"Heartbeat started for {credentials.username} (interval={self.interval}s)")

        await self._send_once()

        # The first beat may have exhausted retries, or stop() ran meanwhile
        if generation != self._generation or not self.is_running:
            return

        self._interval_task = asyncio.create_task(self._run_loop(generation))

    def stop(self) -> None:
        """Stop the heartbeat and cancel pending timers."""
        was_running = self.is_running
        self._halt(PresenceState())
        if was_running:
            logger.info("Heartbeat stopped")

    async def send_now(self) -> bool:
        """Send one heartbeat outside the regular schedule.

        Returns:
            True if the server accepted it.
        """
        return await self._send_once()

    def _halt(self, final_state: PresenceState) -> None:
        self._generation += 1
        _cancel(self._interval_task)
        _cancel(self._retry_task)
        self._interval_task = None
        self._retry_task = None
        self._credentials = None
        self.state.set(final_state)

    async def _run_loop(self, generation: int) -> None:
        """Periodic heartbeat loop."""
        while generation == self._generation:
            await asyncio.sleep(self.interval)

            if generation != self._generation:
                break

            # A pending retry owns the next attempt
            if self._retry_task is not None and not self._retry_task.done():
                continue

            try:
                await self._send_once()
            except Exception as e:
                logger.error(f"Heartbeat loop error: {e}", exc_info=True)

    async def _send_once(self) -> bool:
        credentials = self._credentials
        if credentials is None:
            return False

        generation = self._generation
        try:
            await self._client.heartbeat(credentials, timeout=self.request_timeout)
        except AtriumError as e:
            if generation != self._generation:
                logger.debug("Discarding heartbeat failure from a stopped session")
                return False
            self._handle_failure(e)
            return False

        if generation != self._generation:
            logger.debug("Discarding heartbeat result from a stopped session")
            return False

        if self.status != PresenceStatus.CONNECTED:
            logger.info("Heartbeat connected")
        self.state.set(PresenceState(status=PresenceStatus.CONNECTED))
        return True

    def _handle_failure(self, error: AtriumError) -> None:
        previous = self.state.value
        failures = previous.consecutive_failures + 1
        logger.warning(f"Heartbeat failed ({failures}/{self.max_failures}): {error}")

        if failures >= self.max_failures:
            self.state.set(
                PresenceState(
                    status=PresenceStatus.ERROR,
                    consecutive_failures=failures,
                    current_backoff=previous.current_backoff,
                    last_error=error,
                )
            )
            logger.warning(f"Too many heartbeat failures ({failures}), stopping heartbeat")
            self._halt(
                PresenceState(
                    status=PresenceStatus.DISCONNECTED,
                    consecutive_failures=failures,
                    last_error=ExhaustedRetriesError(failures),
                )
            )
            return

        delay = self._next_backoff(failures, previous.current_backoff)
        self.state.set(
            PresenceState(
                status=PresenceStatus.ERROR,
                consecutive_failures=failures,
                current_backoff=delay,
                last_error=error,
            )
        )
        self._schedule_retry(delay)

    def _next_backoff(self, failures: int, current: float) -> float:
        if failures - 1 < len(self.retry_delays):
            return self.retry_delays[failures - 1]
        return min(current * 2, self.max_backoff)

    def _schedule_retry(self, delay: float) -> None:
        _cancel(self._retry_task)
        logger.debug(f"Scheduling heartbeat retry in {delay}s")
        self._retry_task = asyncio.create_task(self._retry_after(delay, self._generation))

    async def _retry_after(self, delay: float, generation: int) -> None:
        await asyncio.sleep(delay)
        if generation != self._generation:
            return
        await self._send_once()
