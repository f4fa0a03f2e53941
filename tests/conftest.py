import asyncio
from typing import Any, Callable, List, Optional, Tuple

import pytest

from motor_thermal.core.errors import TransientTransportError


async def settle(rounds: int = 5) -> None:
    """Let pending callbacks and freshly created tasks run."""

    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClock:
    """Manually advanced clock for PeriodicTask tests."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self._sleepers: List[Tuple[float, asyncio.Future]] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        future = asyncio.get_running_loop().create_future()
        self._sleepers.append((self.now + seconds, future))
        await future

    def pending_deadlines(self) -> List[float]:
        return sorted(deadline for deadline, fut in self._sleepers if not fut.done())

    async def advance(self, seconds: float) -> None:
        target = self.now + seconds
        await settle()
        while True:
            due = sorted(
                (item for item in self._sleepers if item[0] <= target),
                key=lambda item: item[0],
            )
            if not due:
                break
            deadline, future = due[0]
            self._sleepers.remove(due[0])
            self.now = max(self.now, deadline)
            if not future.done():
                future.set_result(None)
            await settle()
        self.now = max(self.now, target)
        await settle()


class FakeBroker:
    """In-memory stand-in for the MQTT adapter."""

    def __init__(self) -> None:
        self.published: List[Tuple[str, bytes, int, bool]] = []
        self.subscriptions: List[str] = []
        self.handlers: List[Callable[[str, bytes, bool], Any]] = []
        self.connect_handlers: List[Callable[[int], None]] = []
        self.publish_error: Optional[Exception] = None

    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None:
        if self.publish_error is not None:
            raise self.publish_error
        self.published.append((topic, payload, qos, retain))

    def subscribe(self, topic: str, qos: int = 1) -> None:
        self.subscriptions.append(topic)

    def add_message_handler(self, handler) -> None:
        if handler not in self.handlers:
            self.handlers.append(handler)

    def remove_message_handler(self, handler) -> None:
        if handler in self.handlers:
            self.handlers.remove(handler)

    def register_connect_handler(self, handler) -> None:
        self.connect_handlers.append(handler)

    async def deliver(
        self, topic: str, payload: bytes, *, redelivered: bool = False
    ) -> None:
        for handler in list(self.handlers):
            result = handler(topic, payload, redelivered)
            if asyncio.iscoroutine(result):
                await result

    def topics_published(self) -> List[str]:
        return [topic for topic, *_ in self.published]

    def fail_publishing(self, message: str = "broker offline") -> None:
        self.publish_error = TransientTransportError(message)


class RecordingSink:
    def __init__(self) -> None:
        self.messages: List[Tuple[str, dict]] = []

    def emit(self, channel: str, payload) -> None:
        self.messages.append((channel, dict(payload)))

    def on(self, channel: str) -> List[dict]:
        return [payload for name, payload in self.messages if name == channel]


class ScriptedModel:
    """Heat model returning a fixed sequence of temperatures."""

    def __init__(self, temperatures) -> None:
        self._temperatures = list(temperatures)
        self.calls = 0

    def next_temperature(self, state) -> float:
        self.calls += 1
        value = self._temperatures.pop(0)
        if isinstance(value, Exception):
            raise value
        return value


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()
