"""Fan-out of broker telemetry to observer sessions, and command forwarding.

Each observer session owns a bounded :class:`asyncio.Queue`. Broker messages
are offered to every session without awaiting, so a slow or stalled
observer only ever loses its own messages. Messages on one topic reach each
session in the order they were received from the broker.
"""

from __future__ import annotations

import asyncio
import hashlib
import itertools
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional

from .core.errors import TransientTransportError, ValidationError
from .core.protocols import BrokerClient
from .gateway import CommandGateway, decode_payload
from .topics import COMMAND_CHANNELS, OBSERVER_EVENTS, TopicNamespace

LOGGER = logging.getLogger(__name__)

_CLOSED = object()


@dataclass(frozen=True, slots=True)
class RelayEvent:
    """Event delivered to an observer session."""

    event: str
    topic: Optional[str] = None
    message: Optional[str] = None
    kind: Optional[str] = None
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        if self.event == "error":
            return {"event": "error", "kind": self.kind, "error": self.error}
        return {"event": self.event, "topic": self.topic, "message": self.message}


@dataclass
class ObserverSession:
    """One connected observer and its outgoing message channel."""

    session_id: str
    queue_size: int = 256
    delivered: int = 0
    dropped: int = 0
    _queue: asyncio.Queue = field(init=False, repr=False)
    _closed: bool = field(default=False, init=False)

    def __post_init__(self) -> None:
        # One slot is reserved for the close sentinel.
        self._queue = asyncio.Queue(maxsize=self.queue_size + 1)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    def offer(self, event: RelayEvent) -> bool:
        """Queue an event without blocking; returns False if it was dropped."""

        if self._closed or self._queue.qsize() >= self.queue_size:
            self.dropped += 1
            return False
        self._queue.put_nowait(event)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def next_event(self) -> Optional[RelayEvent]:
        """Wait for the next event; ``None`` once the session is closed."""

        item = await self._queue.get()
        if item is _CLOSED:
            return None
        self.delivered += 1
        return item

    async def events(self) -> AsyncIterator[RelayEvent]:
        while True:
            event = await self.next_event()
            if event is None:
                return
            yield event


class TelemetryRelay:
    """Bridges the broker namespace and any number of observer sessions."""

    def __init__(
        self,
        broker: BrokerClient,
        *,
        topics: TopicNamespace,
        gateway: Optional[CommandGateway] = None,
        session_queue_size: int = 256,
        dedup_window_seconds: float = 0.5,
        monotonic: Optional[Callable[[], float]] = None,
    ) -> None:
        self._broker = broker
        self._topics = topics
        self._gateway = gateway or CommandGateway()
        self._queue_size = max(1, session_queue_size)
        self._dedup_window = max(0.0, dedup_window_seconds)
        self._monotonic = monotonic or time.monotonic
        self._sessions: Dict[str, ObserverSession] = {}
        self._last_seen: Dict[str, tuple[str, float]] = {}
        self._ids = itertools.count(1)
        self._started = False
        self._connect_handler_registered = False
        self.forwarded = 0
        self.duplicates = 0

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def sessions(self) -> List[ObserverSession]:
        return list(self._sessions.values())

    async def start(self) -> None:
        if self._started:
            return
        self._broker.add_message_handler(self.handle_message)
        # The adapter replays this subscription after every reconnect.
        self._broker.subscribe(self._topics.wildcard)
        if not self._connect_handler_registered:
            self._broker.register_connect_handler(self._on_broker_connect)
            self._connect_handler_registered = True
        self._started = True
        LOGGER.info("Relay subscribed to %s", self._topics.wildcard)

    async def stop(self) -> None:
        if not self._started:
            return
        self._broker.remove_message_handler(self.handle_message)
        for session in list(self._sessions.values()):
            self.close_session(session.session_id)
        self._started = False

    def _on_broker_connect(self, rc: int) -> None:
        LOGGER.info(
            "Broker connection (re)established; %d observer session(s) retained",
            len(self._sessions),
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    def open_session(self, session_id: Optional[str] = None) -> ObserverSession:
        session_id = session_id or f"observer-{next(self._ids)}"
        if session_id in self._sessions:
            raise ValueError(f"session {session_id} already connected")
        session = ObserverSession(session_id=session_id, queue_size=self._queue_size)
        self._sessions[session_id] = session
        LOGGER.info("Observer connected: %s", session_id)
        return session

    def close_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        session.close()
        LOGGER.info(
            "Observer disconnected: %s (delivered=%d dropped=%d)",
            session_id,
            session.delivered,
            session.dropped,
        )

    # ------------------------------------------------------------------
    # Broker -> observers
    # ------------------------------------------------------------------
    def handle_message(
        self, topic: str, payload: bytes | str, redelivered: bool = False
    ) -> None:
        self.on_broker_message(topic, payload, redelivered=redelivered)

    def on_broker_message(
        self, topic: str, payload: bytes | str, *, redelivered: bool = False
    ) -> int:
        """Forward one broker message to every session; returns deliveries.

        Separate events with identical payloads are all forwarded. Only a
        broker redelivery (DUP flag) of the payload last seen on the same
        topic within the dedup window is suppressed.
        """

        if not self._topics.contains(topic):
            return 0

        message = self._normalise(topic, payload)
        if self._is_duplicate(topic, message, redelivered):
            self.duplicates += 1
            LOGGER.debug("Suppressed duplicate delivery on %s", topic)
            return 0

        event = RelayEvent(event="mqtt", topic=topic, message=message)
        delivered = 0
        for session in list(self._sessions.values()):
            if session.offer(event):
                delivered += 1
            else:
                LOGGER.debug("Session %s backlog full; dropped %s", session.session_id, topic)
        self.forwarded += 1
        return delivered

    @staticmethod
    def _normalise(topic: str, payload: bytes | str) -> str:
        if isinstance(payload, str):
            return payload
        try:
            return payload.decode("utf-8")
        except UnicodeDecodeError:
            LOGGER.warning("Non UTF-8 payload on %s; replacing invalid bytes", topic)
            return payload.decode("utf-8", errors="replace")

    def _is_duplicate(self, topic: str, message: str, redelivered: bool) -> bool:
        if self._dedup_window <= 0:
            return False
        digest = hashlib.md5(message.encode("utf-8")).hexdigest()
        now = self._monotonic()
        previous = self._last_seen.get(topic)
        self._last_seen[topic] = (digest, now)
        if previous is None or not redelivered:
            return False
        last_digest, seen_at = previous
        return last_digest == digest and now - seen_at < self._dedup_window

    # ------------------------------------------------------------------
    # Observers -> broker
    # ------------------------------------------------------------------
    def on_observer_command(
        self, session_id: str, kind: str, data: Mapping[str, Any] | str | bytes
    ) -> bool:
        """Publish an observer event to its broker topic.

        Validation and transport failures are reported to the originating
        session only; other observers never see them.
        """

        try:
            channel = OBSERVER_EVENTS.get(kind)
            if channel is None:
                raise ValidationError(f"unknown event {kind!r}")
            record = decode_payload(data)
            if channel in COMMAND_CHANNELS:
                self._gateway.parse(channel, record)
            blob = json.dumps(record, separators=(",", ":")).encode("utf-8")
            self._broker.publish(self._topics.topic(channel), blob)
        except ValidationError as exc:
            LOGGER.info("Rejected %s from %s: %s", kind, session_id, exc)
            self.report_error(session_id, kind, str(exc))
            return False
        except (TransientTransportError, RuntimeError) as exc:
            LOGGER.warning("Could not relay %s from %s: %s", kind, session_id, exc)
            self.report_error(session_id, kind, f"broker unavailable: {exc}")
            return False
        return True

    def report_error(self, session_id: str, kind: str, error: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        session.offer(RelayEvent(event="error", kind=kind, error=error))
