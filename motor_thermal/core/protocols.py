"""Protocol definitions for broker clients and telemetry sinks."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping, Protocol

# Called with (topic, payload, redelivered); redelivered mirrors the MQTT DUP flag.
MessageHandler = Callable[[str, bytes, bool], Awaitable[None] | None]


class BrokerClient(Protocol):
    """Minimal contract for the pub/sub transport used by the core."""

    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None: ...

    def subscribe(self, topic: str, qos: int = 1) -> None: ...

    def add_message_handler(self, handler: MessageHandler) -> None: ...

    def remove_message_handler(self, handler: MessageHandler) -> None: ...

    def register_connect_handler(self, handler: Callable[[int], None]) -> None: ...


class TelemetrySink(Protocol):
    """Receives process telemetry keyed by channel name (temp, state, status)."""

    def emit(self, channel: str, payload: Mapping[str, Any]) -> None:
        """Publish one payload on the given channel."""
        ...
