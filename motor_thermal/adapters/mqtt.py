"""MQTT adapter encapsulating paho-mqtt client usage."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

import paho.mqtt.client as mqtt

from ..config import BrokerConfig
from ..core.errors import TransientTransportError
from ..core.protocols import MessageHandler

LOGGER = logging.getLogger(__name__)


class MQTTConnectionError(TransientTransportError):
    """Raised when the MQTT client fails to establish a connection or publish."""


def _rc_value(rc: Any) -> int:
    return int(getattr(rc, "value", rc))


class MQTTClient:
    """Async-friendly wrapper over the threaded paho-mqtt client.

    Subscriptions are remembered and re-applied on every successful
    (re)connect, so consumers subscribe once for the lifetime of the client.
    Incoming messages are handed to the event loop in arrival order.
    """

    def __init__(
        self,
        config: BrokerConfig,
        *,
        client_id: str,
        keepalive: Optional[int] = None,
    ) -> None:
        self.config = config
        self.client_id = client_id
        self.keepalive = keepalive if keepalive is not None else config.keepalive

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected_event: Optional[asyncio.Event] = None
        self._disconnect_event: Optional[asyncio.Event] = None
        self._message_handlers: List[MessageHandler] = []
        self._subscriptions: Dict[str, int] = {}
        self._pending: Set[asyncio.Future[Any]] = set()
        self._last_connect_rc: Optional[int] = None
        self._connected: bool = False
        self._disconnect_handlers: List[Callable[[int], None]] = []
        self._connect_handlers: List[Callable[[int], None]] = []

    async def connect(self, timeout: float = 30.0) -> None:
        """Connect to the MQTT broker and wait for acknowledgement."""

        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._disconnect_event = asyncio.Event()
        self._last_connect_rc = None

        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
        )
        client.enable_logger(LOGGER)

        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        self._client = client

        LOGGER.info(
            "Connecting to MQTT broker %s:%s",
            self.config.host,
            self.config.port,
        )

        client.connect_async(self.config.host, self.config.port, self.keepalive)
        client.loop_start()

        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
            if self._last_connect_rc is None or self._last_connect_rc != 0:
                raise MQTTConnectionError(
                    f"MQTT broker rejected connection (rc={self._last_connect_rc})"
                )
        except asyncio.TimeoutError as exc:
            client.loop_stop()
            self._client = None
            raise MQTTConnectionError("Timed out connecting to MQTT broker") from exc
        except MQTTConnectionError:
            client.loop_stop()
            self._client = None
            raise

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Gracefully disconnect from the broker."""

        if not self._client:
            return

        assert self._disconnect_event is not None

        self._client.disconnect()

        try:
            await asyncio.wait_for(self._disconnect_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.debug("Timed out waiting for MQTT disconnect acknowledgement")
        finally:
            self._client.loop_stop()
            self._client = None
        self._connected = False

    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None:
        if not self._client:
            raise MQTTConnectionError("MQTT client not connected")

        info = self._client.publish(topic, payload, qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Publish failed with rc={info.rc}")

    def subscribe(self, topic: str, qos: int = 1) -> None:
        """Subscribe now and on every future reconnect."""

        already_active = self._connected and self._subscriptions.get(topic) == qos
        self._subscriptions[topic] = qos
        if not self._client or not self._connected:
            LOGGER.debug("Deferring subscription to %s until connected", topic)
            return
        if already_active:
            return
        result, _ = self._client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Subscribe failed with rc={result}")

    def unsubscribe(self, topic: str) -> None:
        self._subscriptions.pop(topic, None)
        if not self._client or not self._connected:
            return

        result, _ = self._client.unsubscribe(topic)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Unsubscribe failed with rc={result}")

    @property
    def subscriptions(self) -> Dict[str, int]:
        return dict(self._subscriptions)

    def add_message_handler(self, handler: MessageHandler) -> None:
        if handler not in self._message_handlers:
            self._message_handlers.append(handler)

    def remove_message_handler(self, handler: MessageHandler) -> None:
        if handler in self._message_handlers:
            self._message_handlers.remove(handler)

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        self._disconnect_handlers.append(handler)

    def register_connect_handler(self, handler: Callable[[int], None]) -> None:
        self._connect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # Internal callbacks bridging the threaded paho callbacks into asyncio
    # ------------------------------------------------------------------
    def _on_connect(self, client: mqtt.Client, userdata, flags, rc, properties=None) -> None:
        code = _rc_value(rc)
        self._last_connect_rc = code
        if code == 0:
            LOGGER.info("Connected to MQTT broker")
            self._connected = True
            self._resubscribe(client)
            self._call_on_loop(self._set_event, self._connected_event)
            for handler in self._connect_handlers:
                self._call_on_loop(handler, code)
        else:
            LOGGER.error("MQTT connection failed with rc=%s", rc)
            self._connected = False
            self._call_on_loop(self._set_event, self._connected_event)

    def _on_disconnect(
        self, client: mqtt.Client, userdata, flags, rc, properties=None
    ) -> None:
        code = _rc_value(rc)
        LOGGER.info("Disconnected from MQTT broker (rc=%s)", rc)
        self._connected = False
        self._call_on_loop(self._set_event, self._disconnect_event)
        for handler in self._disconnect_handlers:
            self._call_on_loop(handler, code)

    def _on_message(
        self, client: mqtt.Client, userdata, message: mqtt.MQTTMessage
    ) -> None:
        if not self._message_handlers:
            return
        self._call_on_loop(
            self._dispatch_message,
            message.topic,
            bytes(message.payload),
            bool(getattr(message, "dup", False)),
        )

    def _resubscribe(self, client: mqtt.Client) -> None:
        for topic, qos in self._subscriptions.items():
            result, _ = client.subscribe(topic, qos=qos)
            if result != mqtt.MQTT_ERR_SUCCESS:
                LOGGER.error("Re-subscribe to %s failed with rc=%s", topic, result)
            else:
                LOGGER.debug("Subscribed to %s (qos=%s)", topic, qos)

    def _call_on_loop(self, callback: Callable[..., Any], *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:  # pragma: no cover - loop shutting down
            LOGGER.debug("Event loop closed; dropping MQTT callback")

    @staticmethod
    def _set_event(event: Optional[asyncio.Event]) -> None:
        if event is not None:
            event.set()

    def _dispatch_message(self, topic: str, payload: bytes, redelivered: bool) -> None:
        for handler in list(self._message_handlers):
            try:
                result = handler(topic, payload, redelivered)
            except Exception:
                LOGGER.exception("MQTT message handler raised an exception")
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._handler_done)

    def _handler_done(self, task: asyncio.Future[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("MQTT message handler failed", exc_info=exc)
