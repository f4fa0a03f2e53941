"""Simulated motor thermal process and its safety state machine."""

from __future__ import annotations

import logging
import math
import random
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol, Sequence

from . import topics as channels
from .config import SimulatorConfig
from .core.errors import SafetyViolation, ValidationError
from .core.models import (
    Command,
    EmergencyStop,
    OperatingMode,
    ProcessState,
    SetFan,
    SetMode,
    SetThresholds,
    Start,
    Stop,
    ThresholdConfig,
    command_name,
)
from .core.protocols import BrokerClient, TelemetrySink
from .core.safety import classify, state_label
from .gateway import CommandGateway
from .scheduler import Clock, PeriodicTask
from .topics import TopicNamespace

LOGGER = logging.getLogger(__name__)

AUTO_STOP_REASON = "auto-stopped"


class HeatModel(Protocol):
    """Computes the next raw temperature from the current snapshot."""

    def next_temperature(self, state: ProcessState) -> float: ...


class RandomHeatModel:
    """Random load heating while running, exponential decay while stopped.

    Running: ``temp + uniform(gain_min, gain_max) - cooling`` where cooling
    depends on the fan. Stopped: ``temp + (ambient - temp) * decay_rate``.
    """

    def __init__(
        self,
        *,
        ambient_temp: float = 25.0,
        decay_rate: float = 0.05,
        heat_gain_min: float = 0.5,
        heat_gain_max: float = 2.0,
        cooling_fan_on: float = 2.0,
        cooling_fan_off: float = 0.5,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.ambient_temp = ambient_temp
        self.decay_rate = decay_rate
        self.heat_gain_min = heat_gain_min
        self.heat_gain_max = heat_gain_max
        self.cooling_fan_on = cooling_fan_on
        self.cooling_fan_off = cooling_fan_off
        self._rng = rng or random.Random()

    @classmethod
    def from_config(
        cls, config: SimulatorConfig, *, rng: Optional[random.Random] = None
    ) -> "RandomHeatModel":
        return cls(
            ambient_temp=config.ambient_temp,
            decay_rate=config.decay_rate,
            heat_gain_min=config.heat_gain_min,
            heat_gain_max=config.heat_gain_max,
            cooling_fan_on=config.cooling_fan_on,
            cooling_fan_off=config.cooling_fan_off,
            rng=rng or random.Random(config.seed),
        )

    def next_temperature(self, state: ProcessState) -> float:
        if state.running:
            gain = self._rng.uniform(self.heat_gain_min, self.heat_gain_max)
            cooling = self.cooling_fan_on if state.fan_on else self.cooling_fan_off
            return state.temperature + gain - cooling
        return state.temperature + (self.ambient_temp - state.temperature) * self.decay_rate


class _NullSink:
    def emit(self, channel: str, payload: Any) -> None:
        return None


class ThermalProcess:
    """Single owner of the simulated motor state.

    All mutation happens in the synchronous methods below; none of them
    awaits, so on a single event loop ticks and commands never interleave.
    Everyone else sees immutable :class:`ProcessState` snapshots.
    """

    def __init__(
        self,
        *,
        thresholds: Optional[ThresholdConfig] = None,
        model: Optional[HeatModel] = None,
        sink: Optional[TelemetrySink] = None,
        ambient_temp: float = 25.0,
        wall_clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._thresholds = thresholds or ThresholdConfig()
        self._ambient = ambient_temp
        self._model: HeatModel = model or RandomHeatModel(ambient_temp=ambient_temp)
        self._sink: TelemetrySink = sink or _NullSink()
        self._now = wall_clock or (lambda: datetime.now(timezone.utc))
        self._state = ProcessState(
            temperature=ambient_temp,
            mode=classify(ambient_temp, self._thresholds),
            last_update=self._now(),
        )
        self.failed_ticks = 0
        self._handlers: Dict[type, Callable[[Any], bool]] = {
            Start: self._start,
            Stop: self._stop,
            SetFan: self._set_fan,
            SetMode: self._set_mode,
            EmergencyStop: self._emergency_stop,
            SetThresholds: self._set_thresholds,
        }

    @property
    def thresholds(self) -> ThresholdConfig:
        return self._thresholds

    @property
    def ambient_temp(self) -> float:
        return self._ambient

    def attach_sink(self, sink: Optional[TelemetrySink]) -> None:
        """Route telemetry to ``sink``; ``None`` discards it."""

        self._sink = sink or _NullSink()

    def snapshot(self) -> ProcessState:
        return self._state

    def classify(self, temperature: float) -> OperatingMode:
        """Classify against the thresholds currently in force."""

        return classify(temperature, self._thresholds)

    # ------------------------------------------------------------------
    # Periodic work
    # ------------------------------------------------------------------
    def tick(self) -> ProcessState:
        """Advance the simulation by one control period."""

        previous = self._state
        try:
            proposed = float(self._model.next_temperature(previous))
        except Exception:
            self.failed_ticks += 1
            LOGGER.exception("Heat model failed; keeping previous state")
            return previous

        if not math.isfinite(proposed):
            self.failed_ticks += 1
            LOGGER.warning("Heat model produced %r; keeping previous state", proposed)
            return previous

        temperature = max(self._ambient, proposed)
        self._settle(temperature)

        if previous.running:
            self.sample()
        self._sink.emit(channels.STATUS, self._state.as_status())
        return self._state

    def sample(self) -> None:
        """Emit a temperature sample for live charting."""

        state = self._state
        self._sink.emit(
            channels.TEMP,
            {
                "time": int(state.last_update.timestamp() * 1000),
                "temp": round(state.temperature, 2),
            },
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def apply_command(self, command: Command) -> bool:
        """Apply one command atomically.

        Returns ``True`` when process state changed, ``False`` for no-ops and
        rejected threshold updates.
        """

        handler = self._handlers.get(type(command))
        if handler is None:
            LOGGER.warning("Dropping unsupported command %r", command)
            return False
        return handler(command)

    def _start(self, command: Start) -> bool:
        if self._state.running:
            return False
        self._commit(running=True, reason="started")
        self._emit_state("started")
        return True

    def _stop(self, command: Stop) -> bool:
        if not self._state.running:
            return False
        self._commit(running=False, reason="stopped by user")
        self._emit_state("stopped by user")
        return True

    def _set_fan(self, command: SetFan) -> bool:
        reason = "fan on" if command.on else "fan off"
        changed = self._state.fan_on != command.on
        self._commit(fan_on=command.on, reason=reason)
        self._emit_state(reason)
        return changed

    def _set_mode(self, command: SetMode) -> bool:
        if self._state.manual == command.manual:
            return False
        self._commit(manual=command.manual)
        LOGGER.info("Control mode set to %s", "manual" if command.manual else "auto")
        return True

    def _emergency_stop(self, command: EmergencyStop) -> bool:
        LOGGER.warning("Emergency stop requested")
        # Manual control keeps the fan forced on until an operator releases it.
        self._commit(running=False, fan_on=True, manual=True, reason="emergency stop")
        self._emit_state("emergency stop")
        return True

    def _set_thresholds(self, command: SetThresholds) -> bool:
        try:
            updated = command.resolve(self._thresholds)
        except ValidationError as exc:
            LOGGER.warning("Rejected threshold update: %s", exc)
            self._emit_state("settings rejected", error=str(exc))
            return False

        self._thresholds = updated
        LOGGER.info(
            "Thresholds updated: warning=%.1f fan=%.1f critical=%.1f",
            updated.warning_temp,
            updated.fan_temp,
            updated.critical_temp,
        )
        self._settle(self._state.temperature)
        return True

    def report_rejection(self, command: Command, error: Exception) -> None:
        """Surface a command rejected before it reached the process."""

        self._emit_state(f"{command_name(command)} rejected", error=str(error))

    # ------------------------------------------------------------------
    # Internal state handling
    # ------------------------------------------------------------------
    def _settle(self, temperature: float) -> None:
        """Commit a temperature and apply the safety policy for it."""

        previous = self._state
        mode = classify(temperature, self._thresholds)
        running = previous.running
        fan_on = previous.fan_on
        auto_stopped = False

        if mode is OperatingMode.CRITICAL and running:
            running = False
            auto_stopped = True

        if not previous.manual:
            fan_on = mode.severity >= OperatingMode.COOLING.severity

        self._commit(
            temperature=temperature,
            mode=mode,
            running=running,
            fan_on=fan_on,
            reason=AUTO_STOP_REASON if auto_stopped else previous.reason,
        )

        if auto_stopped:
            LOGGER.warning(
                "Auto-stop at %.2f°C (critical threshold %.1f°C)",
                temperature,
                self._thresholds.critical_temp,
            )
            self._emit_state(AUTO_STOP_REASON)
        elif mode is not previous.mode:
            LOGGER.info("Operating mode %s -> %s", previous.mode.value, mode.value)
            self._emit_state(f"mode {mode.value}")

    def _commit(self, **changes: Any) -> None:
        self._state = replace(self._state, last_update=self._now(), **changes)

    def _emit_state(self, reason: Optional[str], *, error: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"state": state_label(self._state)}
        if reason:
            payload["reason"] = reason
        if error:
            payload["error"] = error
        self._sink.emit(channels.STATE, payload)


class ProcessRunner:
    """Drives a :class:`ThermalProcess` from timers and broker commands.

    Subscribes to the control and settings topics (or to ``subscriptions``
    when the connection is shared with a wildcard consumer, since brokers may
    deliver one copy per overlapping subscription), admits commands through
    the :class:`CommandGateway` in arrival order, and runs the control and
    sample ticks as :class:`PeriodicTask` instances.
    """

    def __init__(
        self,
        process: ThermalProcess,
        broker: BrokerClient,
        *,
        topics: TopicNamespace,
        gateway: Optional[CommandGateway] = None,
        tick_seconds: float = 1.0,
        sample_seconds: float = 5.0,
        clock: Optional[Clock] = None,
        subscriptions: Optional[Sequence[str]] = None,
    ) -> None:
        self.process = process
        self._broker = broker
        self._topics = topics
        self._gateway = gateway or CommandGateway()
        self._tick_task = PeriodicTask("control-tick", tick_seconds, process.tick, clock=clock)
        self._sample_task = PeriodicTask(
            "sample-tick", sample_seconds, process.sample, clock=clock
        )
        self._subscriptions = tuple(
            subscriptions
            if subscriptions is not None
            else (topics.topic(channel) for channel in channels.COMMAND_CHANNELS)
        )
        self._started = False
        self.rejected = 0
        self.last_rejection: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        self._broker.add_message_handler(self.handle_message)
        for topic in self._subscriptions:
            self._broker.subscribe(topic)
        self._tick_task.start()
        self._sample_task.start()
        self._started = True
        LOGGER.info("Thermal process running under %s", self._topics.wildcard)

    async def stop(self) -> None:
        if not self._started:
            return
        self._broker.remove_message_handler(self.handle_message)
        await self._tick_task.stop()
        await self._sample_task.stop()
        self._started = False
        LOGGER.info("Thermal process stopped")

    async def handle_message(
        self, topic: str, payload: bytes, redelivered: bool = False
    ) -> None:
        channel = self._topics.channel_of(topic)
        if channel not in channels.COMMAND_CHANNELS:
            return
        self.dispatch(channel, payload)

    def dispatch(self, channel: str, payload: bytes | str) -> int:
        """Parse, admit and apply one payload; returns the number applied."""

        try:
            commands = self._gateway.parse(channel, payload)
        except ValidationError as exc:
            LOGGER.warning("Dropping malformed %s payload: %s", channel, exc)
            self._record_rejection(exc)
            return 0

        applied = 0
        for command in commands:
            try:
                self._gateway.admit(command, self.process.snapshot())
            except SafetyViolation as exc:
                LOGGER.warning("Safety rejection: %s", exc)
                self._record_rejection(exc)
                self.process.report_rejection(command, exc)
                continue
            self.process.apply_command(command)
            applied += 1
        return applied

    def _record_rejection(self, error: Exception) -> None:
        self.rejected += 1
        self.last_rejection = str(error)
