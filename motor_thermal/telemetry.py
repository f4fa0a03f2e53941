"""Publishing of process telemetry onto the broker namespace."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, List, Mapping, Optional

from .core.errors import TransientTransportError
from .core.models import TelemetryMessage
from .core.protocols import BrokerClient
from .topics import TopicNamespace

LOGGER = logging.getLogger(__name__)

TelemetryListener = Callable[[TelemetryMessage], None]


class TelemetryPublisher:
    """Serialises telemetry payloads and publishes them as UTF-8 JSON.

    Publishing never raises: when the broker is unreachable the message is
    dropped and counted, and the gap is tolerated by observers.
    """

    def __init__(
        self,
        broker: BrokerClient,
        topics: TopicNamespace,
        *,
        qos: int = 0,
    ) -> None:
        self._broker = broker
        self._topics = topics
        self._qos = qos
        self._listeners: List[TelemetryListener] = []
        self.published = 0
        self.dropped = 0
        self.last_message: Optional[TelemetryMessage] = None

    def register_listener(self, listener: TelemetryListener) -> None:
        self._listeners.append(listener)

    def unregister_listener(self, listener: TelemetryListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, channel: str, payload: Mapping[str, Any]) -> None:
        message = TelemetryMessage(topic=self._topics.topic(channel), payload=dict(payload))
        blob = json.dumps(message.payload, separators=(",", ":")).encode("utf-8")

        try:
            self._broker.publish(message.topic, blob, qos=self._qos)
        except (TransientTransportError, RuntimeError) as exc:
            self.dropped += 1
            LOGGER.warning("Dropped telemetry on %s: %s", message.topic, exc)
            return

        self.published += 1
        self.last_message = message
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:  # pragma: no cover - defensive logging
                LOGGER.debug("Telemetry listener failed", exc_info=True)
