"""Tests for the MQTT adapter."""

import asyncio
from types import SimpleNamespace

import pytest
import pytest_asyncio

from motor_thermal.adapters import MQTTClient, MQTTConnectionError
from motor_thermal.config import BrokerConfig
from motor_thermal.core.errors import TransientTransportError

import paho.mqtt.client as mqtt


class FakeMqttClient:
    """Minimal fake paho-mqtt client speaking the VERSION2 callback API."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        events: dict,
        *,
        rc_connect: int = 0,
        rc_disconnect: int = 0,
        publish_rc: int = mqtt.MQTT_ERR_SUCCESS,
        subscribe_rc: int = mqtt.MQTT_ERR_SUCCESS,
        **kwargs,
    ):
        self._loop = loop
        self._events = events
        self._rc_connect = rc_connect
        self._rc_disconnect = rc_disconnect
        self._publish_rc = publish_rc
        self._subscribe_rc = subscribe_rc
        events["init_kwargs"] = kwargs

        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None

    # paho interface -------------------------------------------------
    def enable_logger(self, logger):
        self._events.setdefault("logger_enabled", True)

    def username_pw_set(self, username, password=None):
        self._events["auth"] = (username, password)

    def connect_async(self, host, port, keepalive):
        self._events["connect_args"] = (host, port, keepalive)
        self.fire_connect()

    def fire_connect(self):
        if self.on_connect:
            self._loop.call_soon(
                self.on_connect, self, None, None, self._rc_connect, None
            )

    def loop_start(self):
        self._events["loop_start"] = self._events.get("loop_start", 0) + 1

    def loop_stop(self):
        self._events["loop_stop"] = self._events.get("loop_stop", 0) + 1

    def disconnect(self):
        self._events["disconnect_called"] = True
        if self.on_disconnect:
            self._loop.call_soon(
                self.on_disconnect, self, None, None, self._rc_disconnect, None
            )

    def publish(self, topic, payload, qos=0, retain=False, properties=None):
        self._events.setdefault("published", []).append(
            (topic, payload, qos, retain, properties)
        )
        return SimpleNamespace(rc=self._publish_rc)

    def subscribe(self, topic, qos=0):
        self._events.setdefault("subscribed", []).append((topic, qos))
        return self._subscribe_rc, 1

    def unsubscribe(self, topic):
        self._events.setdefault("unsubscribed", []).append(topic)
        return mqtt.MQTT_ERR_SUCCESS, 1


def install_fake(monkeypatch, **options) -> dict:
    loop = asyncio.get_running_loop()
    events: dict = {}

    def factory(*args, **kwargs):
        return FakeMqttClient(loop, events, **options, **kwargs)

    monkeypatch.setattr("motor_thermal.adapters.mqtt.mqtt.Client", factory)
    return events


@pytest_asyncio.fixture
async def mqtt_client(monkeypatch):
    events = install_fake(monkeypatch)

    config = BrokerConfig(
        host="broker.example.net",
        port=1883,
        username="plant",
        password="secret",
    )

    client = MQTTClient(config, client_id="motor-thermal-test")
    await client.connect()

    yield client, events

    await client.disconnect()


@pytest.mark.asyncio
async def test_connect_configures_client(mqtt_client):
    client, events = mqtt_client

    assert events["connect_args"] == ("broker.example.net", 1883, 60)
    assert events["auth"] == ("plant", "secret")
    assert events["loop_start"] == 1
    assert events["init_kwargs"]["client_id"] == "motor-thermal-test"
    assert (
        events["init_kwargs"]["callback_api_version"]
        == mqtt.CallbackAPIVersion.VERSION2
    )
    assert client.is_connected() is True


@pytest.mark.asyncio
async def test_publish_delegates_to_client(mqtt_client):
    client, events = mqtt_client

    client.publish("motor/status", b"payload", qos=0, retain=False)

    assert events["published"] == [("motor/status", b"payload", 0, False, None)]


@pytest.mark.asyncio
async def test_subscribe_records_topics(mqtt_client):
    client, events = mqtt_client

    client.subscribe("motor/#", qos=1)

    assert events["subscribed"] == [("motor/#", 1)]
    assert client.subscriptions == {"motor/#": 1}

    client.subscribe("motor/#", qos=1)
    assert events["subscribed"] == [("motor/#", 1)]

    client.unsubscribe("motor/#")
    assert client.subscriptions == {}
    assert events["unsubscribed"] == ["motor/#"]


@pytest.mark.asyncio
async def test_subscriptions_made_offline_are_applied_on_connect(monkeypatch):
    events = install_fake(monkeypatch)
    client = MQTTClient(BrokerConfig(host="broker.example.net"), client_id="relay")

    client.subscribe("motor/control")
    assert "subscribed" not in events

    await client.connect()
    await asyncio.sleep(0)

    assert events["subscribed"] == [("motor/control", 1)]

    # A later reconnect replays the same subscriptions.
    client._client.fire_connect()
    await asyncio.sleep(0.01)
    assert events["subscribed"] == [("motor/control", 1), ("motor/control", 1)]

    await client.disconnect()


@pytest.mark.asyncio
async def test_message_handlers_dispatch_in_order(monkeypatch):
    install_fake(monkeypatch)
    client = MQTTClient(BrokerConfig(host="broker.example.net"), client_id="relay")

    received = []
    done = asyncio.Event()

    def sync_handler(topic: str, payload: bytes, redelivered: bool) -> None:
        received.append(("sync", topic, payload, redelivered))

    async def async_handler(topic: str, payload: bytes, redelivered: bool) -> None:
        received.append(("async", topic, payload, redelivered))
        done.set()

    client.add_message_handler(sync_handler)
    client.add_message_handler(async_handler)
    await client.connect()

    message = SimpleNamespace(topic="motor/temp", payload=b"data", dup=True)
    client._on_message(client._client, None, message)  # type: ignore[arg-type]

    await asyncio.wait_for(done.wait(), timeout=1.0)
    await client.disconnect()

    assert received == [
        ("sync", "motor/temp", b"data", True),
        ("async", "motor/temp", b"data", True),
    ]


@pytest.mark.asyncio
async def test_removed_handler_is_not_called(mqtt_client):
    client, _ = mqtt_client
    received = []

    def handler(topic, payload, redelivered):
        received.append(topic)

    client.add_message_handler(handler)
    client.remove_message_handler(handler)
    client._on_message(client._client, None, SimpleNamespace(topic="motor/x", payload=b""))
    await asyncio.sleep(0.01)

    assert received == []


@pytest.mark.asyncio
async def test_publish_failure_raises(monkeypatch):
    install_fake(monkeypatch, publish_rc=mqtt.MQTT_ERR_NO_CONN)
    client = MQTTClient(BrokerConfig(host="broker.example.net"), client_id="sim")
    await client.connect()

    with pytest.raises(MQTTConnectionError):
        client.publish("motor/status", b"payload")

    await client.disconnect()


def test_publish_without_connection_is_transient():
    client = MQTTClient(BrokerConfig(host="broker.example.net"), client_id="sim")

    with pytest.raises(TransientTransportError):
        client.publish("motor/status", b"{}")


@pytest.mark.asyncio
async def test_disconnect_handler_invoked(monkeypatch):
    events = install_fake(monkeypatch, rc_disconnect=7)
    client = MQTTClient(BrokerConfig(host="broker.example.net"), client_id="sim")

    disconnect_event = asyncio.Event()

    def _handler(rc: int) -> None:
        events["disconnect_rc"] = rc
        disconnect_event.set()

    client.register_disconnect_handler(_handler)

    await client.connect()
    await client.disconnect()

    await asyncio.wait_for(disconnect_event.wait(), timeout=1.0)
    assert events.get("disconnect_rc") == 7
    assert client.is_connected() is False


@pytest.mark.asyncio
async def test_connect_failure_raises(monkeypatch):
    events = install_fake(monkeypatch, rc_connect=5)
    client = MQTTClient(BrokerConfig(host="broker.example.net"), client_id="sim")

    with pytest.raises(MQTTConnectionError):
        await client.connect()

    assert events["loop_stop"] == 1
