"""Broker link supervision.

One supervisor task owns every reconnect, so disconnect notices arriving
from the paho thread never start two reconnects at once. Outages of any
length are ridden out: when a round of attempts fails the supervisor starts
another round at the capped delay, until the link recovers or shutdown
begins.
"""

from __future__ import annotations

import asyncio
import logging
import random
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, List, Optional

if TYPE_CHECKING:
    from .adapters.mqtt import MQTTClient
    from .config import ResilienceConfig

LOGGER = logging.getLogger(__name__)

DisconnectedCallback = Callable[["ReconnectReason"], Awaitable[None] | None]
ReconnectedCallback = Callable[[], Awaitable[None] | None]


class ReconnectReason(str, Enum):
    CONNECTION_LOST = "connection_lost"
    AUTH_FAILURE = "auth_failure"
    BROKER_DISCONNECT = "broker_disconnect"

    @property
    def priority(self) -> int:
        # Refused credentials are reported over any plain link loss.
        return 1 if self is ReconnectReason.AUTH_FAILURE else 0


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class ConnectionCoordinator:
    """Keeps the simulator and relay attached to the broker.

    Requests made while a reconnect is pending collapse into a single round
    of up to ``max_attempts`` connects with exponential backoff and jitter.
    """

    def __init__(
        self,
        *,
        mqtt_client: MQTTClient,
        resilience_config: ResilienceConfig,
        max_attempts: int = 10,
    ) -> None:
        self._client = mqtt_client
        self._resilience = resilience_config
        self._round_size = max(1, max_attempts)

        self._state = ConnectionState.DISCONNECTED
        self._pending_reason: Optional[ReconnectReason] = None
        self._wakeup = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._supervisor_task: Optional[asyncio.Task[None]] = None

        self._lost_callbacks: List[DisconnectedCallback] = []
        self._restored_callbacks: List[ReconnectedCallback] = []
        self.failed_rounds = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def register_disconnected_callback(self, callback: DisconnectedCallback) -> None:
        self._lost_callbacks.append(callback)

    def register_reconnected_callback(self, callback: ReconnectedCallback) -> None:
        self._restored_callbacks.append(callback)

    def request_reconnect(self, reason: ReconnectReason) -> None:
        if self._stop_event.is_set():
            return

        # Tearing down the stale link mid-reconnect makes paho report a loss.
        if (
            reason is ReconnectReason.CONNECTION_LOST
            and self._state is ConnectionState.RECONNECTING
        ):
            return

        pending = self._pending_reason
        if pending is None or reason.priority > pending.priority:
            self._pending_reason = reason
        LOGGER.debug("Broker reconnect requested (%s)", reason.value)
        self._wakeup.set()

    async def connect(self) -> None:
        """Open the first broker connection; raises MQTTConnectionError."""

        self._state = ConnectionState.CONNECTING
        try:
            await self._client.connect()
        except Exception:
            self._state = ConnectionState.DISCONNECTED
            raise
        self._state = ConnectionState.CONNECTED
        LOGGER.info("Broker link up")

    async def disconnect(self) -> None:
        self._state = ConnectionState.DISCONNECTED
        try:
            await self._client.disconnect()
        except Exception:
            LOGGER.debug("Ignoring error while closing broker link", exc_info=True)

    def start_supervisor(self) -> None:
        if self._supervisor_task is not None and not self._supervisor_task.done():
            return
        self._stop_event.clear()
        self._supervisor_task = asyncio.create_task(
            self._supervise(), name="broker-supervisor"
        )

    async def stop_supervisor(self) -> None:
        self._stop_event.set()
        self._wakeup.set()

        task, self._supervisor_task = self._supervisor_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _supervise(self) -> None:
        while not self._stop_event.is_set():
            await self._wakeup.wait()
            self._wakeup.clear()

            reason, self._pending_reason = self._pending_reason, None
            if reason is None or self._stop_event.is_set():
                continue

            if await self._reconnect(reason):
                self.failed_rounds = 0
                continue

            self.failed_rounds += 1
            LOGGER.warning(
                "Broker still unreachable after round %d of %d attempt(s); retrying",
                self.failed_rounds,
                self._round_size,
            )
            self.request_reconnect(reason)

    async def _reconnect(self, reason: ReconnectReason) -> bool:
        self._state = ConnectionState.RECONNECTING
        if self.failed_rounds == 0:
            LOGGER.info("Reconnecting to broker (%s)", reason.value)
            await self._notify(self._lost_callbacks, reason)

        try:
            await self._client.disconnect()
        except Exception:
            LOGGER.debug("Ignoring error while dropping stale broker link", exc_info=True)

        if not await self._attempt_round():
            self._state = ConnectionState.DISCONNECTED
            return False

        self._state = ConnectionState.CONNECTED
        LOGGER.info("Broker link restored")
        await self._notify(self._restored_callbacks)
        return True

    async def _attempt_round(self) -> bool:
        """Try up to ``max_attempts`` connects; False if all of them failed."""

        ceiling = max(0.01, self._resilience.reconnect_max_seconds)
        jitter = max(0.0, min(1.0, self._resilience.reconnect_jitter_ratio))
        if self.failed_rounds:
            delay = ceiling
        else:
            delay = min(ceiling, max(0.01, self._resilience.reconnect_initial_seconds))

        for attempt in range(1, self._round_size + 1):
            if self._stop_event.is_set():
                return False
            try:
                await self._client.connect()
            except Exception as exc:
                wait = delay
                if jitter:
                    wait = random.uniform(max(0.01, delay * (1 - jitter)), delay * (1 + jitter))
                LOGGER.warning(
                    "Broker connect attempt %d/%d failed: %s; next in %.1fs",
                    attempt,
                    self._round_size,
                    exc,
                    wait,
                )
                if await self._stopped_within(wait):
                    return False
                delay = min(delay * 2, ceiling)
            else:
                return True
        return False

    async def _stopped_within(self, seconds: float) -> bool:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    @staticmethod
    async def _notify(callbacks: List[Callable[..., Any]], *args: Any) -> None:
        for callback in list(callbacks):
            try:
                result = callback(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                LOGGER.exception("Connection callback %r failed", callback)
