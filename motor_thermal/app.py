"""Main application entry-point for motor-thermal."""

from __future__ import annotations

import asyncio
import logging
import os
import random
from enum import Enum
from typing import Any, Optional

from . import constants
from .adapters import MQTTClient, MQTTConnectionError
from .config import MotorThermalConfig, load_config
from .connection import ConnectionCoordinator, ReconnectReason
from .gateway import CommandGateway
from .health import HealthReporter, HealthServer
from .logging import configure_logging
from .process import ProcessRunner, RandomHeatModel, ThermalProcess
from .relay import TelemetryRelay
from .scheduler import Clock
from .server import RelayServer
from .telemetry import TelemetryPublisher
from .topics import TopicNamespace

LOGGER = logging.getLogger(__name__)


class Role(str, Enum):
    SIMULATOR = "simulator"
    RELAY = "relay"
    ALL = "all"

    @property
    def runs_simulator(self) -> bool:
        return self in (Role.SIMULATOR, Role.ALL)

    @property
    def runs_relay(self) -> bool:
        return self in (Role.RELAY, Role.ALL)


class AgentState(str, Enum):
    COLD_START = "cold_start"
    AWAITING_MQTT = "awaiting_mqtt"
    ACTIVE = "active"
    DEGRADED = "degraded"
    RECOVERING = "recovering"
    STOPPING = "stopping"


class MotorThermalApp:
    """Coordinates application startup and shutdown.

    Depending on the role this hosts the thermal process (simulator), the
    observer relay, or both, sharing one broker connection. Broker outages
    never stop the simulation: telemetry published while disconnected is
    dropped and observers keep their sessions until the link recovers.
    """

    def __init__(
        self,
        config: Optional[MotorThermalConfig] = None,
        *,
        role: Role = Role.ALL,
        clock: Optional[Clock] = None,
    ) -> None:
        self._config = config or load_config()
        self._role = role
        self._clock = clock
        self._topics = TopicNamespace(self._config.topics.prefix)
        self._gateway = CommandGateway()
        self._mqtt_client: Optional[Any] = None
        self._connection_coordinator: Optional[ConnectionCoordinator] = None
        self._process: Optional[ThermalProcess] = None
        self._publisher: Optional[TelemetryPublisher] = None
        self._runner: Optional[ProcessRunner] = None
        self._relay: Optional[TelemetryRelay] = None
        self._relay_server: Optional[RelayServer] = None
        self._health = HealthReporter()
        self._health_server: Optional[HealthServer] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stopping = False
        self._state = AgentState.COLD_START
        self._state_detail: Optional[str] = None

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def process(self) -> Optional[ThermalProcess]:
        return self._process

    @property
    def relay(self) -> Optional[TelemetryRelay]:
        return self._relay

    async def run(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()

        LOGGER.info(
            "motor-thermal starting (role=%s, namespace=%s)",
            self._role.value,
            self._topics.prefix,
        )
        started = await self._start_services()
        if not started:
            LOGGER.warning("Service startup incomplete; running in degraded mode")

        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            LOGGER.info("motor-thermal received shutdown signal")
            raise
        finally:
            await self._stop_services()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(
        cls, config: Optional[MotorThermalConfig] = None, *, role: Role = Role.ALL
    ) -> None:
        instance = cls(config=config, role=role)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("motor-thermal received shutdown signal")

    async def _transition_state(
        self, state: AgentState, *, detail: Optional[str] = None
    ) -> None:
        if state == self._state and detail == self._state_detail:
            return

        previous = self._state
        self._state = state
        self._state_detail = detail

        LOGGER.info(
            "Agent state transition %s -> %s (%s)",
            previous.value,
            state.value,
            detail or state.value,
        )
        await self._health.set_agent_state(
            state.value,
            healthy=state == AgentState.ACTIVE,
            detail=detail or state.value,
        )

    def _schedule_health_update(
        self, name: str, healthy: bool, detail: Optional[str]
    ) -> None:
        loop = self._loop
        if loop is None:
            return
        loop.create_task(self._health.update(name, healthy, detail))

    async def _start_services(self) -> bool:
        await self._transition_state(AgentState.COLD_START, detail="initialising")
        self._stopping = False

        await self._health.update("mqtt", False, "initialising")

        self._build_process()

        client = MQTTClient(
            self._config.broker, client_id=_build_client_id(self._config, self._role)
        )
        client.register_disconnect_handler(self._on_mqtt_disconnect)
        client.register_connect_handler(self._on_mqtt_connect)
        self._mqtt_client = client

        self._connection_coordinator = ConnectionCoordinator(
            mqtt_client=client,
            resilience_config=self._config.resilience,
        )
        self._connection_coordinator.register_disconnected_callback(
            self._on_connection_lost
        )
        self._connection_coordinator.register_reconnected_callback(
            self._on_connection_restored
        )

        await self._transition_state(
            AgentState.AWAITING_MQTT, detail="connecting to mqtt broker"
        )
        await self._start_health_server()

        mqtt_connected = await self._connect_mqtt()
        # Subscriptions made while offline are applied once the broker answers.
        runtime_ready = await self._start_runtime_components()
        self._connection_coordinator.start_supervisor()

        if not mqtt_connected:
            await self._transition_state(
                AgentState.DEGRADED, detail="mqtt unavailable; retrying"
            )
            self._connection_coordinator.request_reconnect(
                ReconnectReason.CONNECTION_LOST
            )
            return False

        if runtime_ready:
            await self._transition_state(AgentState.ACTIVE, detail="runtime ready")
        else:
            await self._transition_state(
                AgentState.DEGRADED, detail="runtime initialisation incomplete"
            )
        return runtime_ready

    def _build_process(self) -> None:
        if not self._role.runs_simulator or self._process is not None:
            return
        simulator = self._config.simulator
        self._process = ThermalProcess(
            thresholds=self._config.thresholds,
            model=RandomHeatModel.from_config(
                simulator, rng=random.Random(simulator.seed)
            ),
            ambient_temp=simulator.ambient_temp,
        )
        self._health.attach_process(self._process.snapshot)

    async def _connect_mqtt(self) -> bool:
        if self._connection_coordinator is None:
            return False

        try:
            await self._connection_coordinator.connect()
        except MQTTConnectionError as exc:
            await self._health.update("mqtt", False, str(exc))
            LOGGER.error("MQTT connection failed: %s", exc)
            return False

        await self._health.update("mqtt", True, None)
        return True

    async def _start_runtime_components(self) -> bool:
        if self._mqtt_client is None:
            return False

        ready = True

        if self._role.runs_simulator:
            ready = await self._start_simulator() and ready
        if self._role.runs_relay:
            ready = await self._start_relay() and ready

        return ready

    async def _start_simulator(self) -> bool:
        self._build_process()
        assert self._process is not None

        if self._publisher is None:
            self._publisher = TelemetryPublisher(self._mqtt_client, self._topics)
            self._process.attach_sink(self._publisher)

        if self._runner is None:
            simulator = self._config.simulator
            self._runner = ProcessRunner(
                self._process,
                self._mqtt_client,
                topics=self._topics,
                gateway=self._gateway,
                tick_seconds=simulator.tick_seconds,
                sample_seconds=simulator.sample_seconds,
                clock=self._clock,
                subscriptions=(
                    (self._topics.wildcard,) if self._role.runs_relay else None
                ),
            )

        try:
            await self._runner.start()
        except MQTTConnectionError as exc:
            LOGGER.error("Simulator could not subscribe: %s", exc)
            await self._health.update("simulator", False, str(exc))
            return False

        await self._health.update("simulator", True, None)
        return True

    async def _start_relay(self) -> bool:
        if self._relay is None:
            relay_config = self._config.relay
            self._relay = TelemetryRelay(
                self._mqtt_client,
                topics=self._topics,
                gateway=self._gateway,
                session_queue_size=relay_config.session_queue_size,
                dedup_window_seconds=relay_config.dedup_window_seconds,
            )

        try:
            await self._relay.start()
        except MQTTConnectionError as exc:
            LOGGER.error("Relay could not subscribe: %s", exc)
            await self._health.update("relay", False, str(exc))
            return False

        if self._relay_server is None:
            server = RelayServer(
                self._relay, self._config.relay.host, self._config.relay.port
            )
            try:
                await server.start()
            except OSError as exc:
                LOGGER.error("Failed to start relay endpoint: %s", exc)
                await self._health.update("relay", False, str(exc))
                return False
            self._relay_server = server

        await self._health.update("relay", True, None)
        return True

    async def _start_health_server(self) -> None:
        resilience = self._config.resilience
        if not resilience.health_enabled or resilience.health_port <= 0:
            return

        server = HealthServer(
            self._health, resilience.health_host, resilience.health_port
        )
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
            await self._health.update("health-endpoint", False, str(exc))
        else:
            self._health_server = server
            await self._health.update("health-endpoint", True, None)

    async def _stop_services(self) -> None:
        await self._transition_state(AgentState.STOPPING, detail="shutdown requested")
        self._stopping = True

        if self._connection_coordinator is not None:
            await self._connection_coordinator.stop_supervisor()

        if self._runner is not None:
            await self._runner.stop()
            await self._health.update("simulator", False, "shutdown")

        if self._relay_server is not None:
            await self._relay_server.stop()
            self._relay_server = None
        if self._relay is not None:
            await self._relay.stop()
            await self._health.update("relay", False, "shutdown")

        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None

        if self._mqtt_client is not None:
            await self._mqtt_client.disconnect()
            self._mqtt_client = None
            await self._health.update("mqtt", False, "shutdown")

        if self._shutdown_event is not None:
            self._shutdown_event.set()

    # -------------------------------------------------------------------------
    # Connection Coordinator Callbacks
    # -------------------------------------------------------------------------

    async def _on_connection_lost(self, reason: ReconnectReason) -> None:
        LOGGER.info("Connection lost (reason=%s); simulation continues", reason.value)
        await self._transition_state(
            AgentState.RECOVERING, detail=f"mqtt disconnected ({reason.value})"
        )
        await self._health.update("mqtt", False, f"disconnected ({reason.value})")

    async def _on_connection_restored(self) -> None:
        LOGGER.info("Connection restored")
        await self._health.update("mqtt", True, None)

        try:
            runtime_ready = await self._start_runtime_components()
        except Exception:
            LOGGER.exception("Failed to restart components after reconnect")
            await self._transition_state(
                AgentState.DEGRADED, detail="runtime restart failed"
            )
            return

        if runtime_ready:
            await self._transition_state(AgentState.ACTIVE, detail="runtime recovered")
        else:
            await self._transition_state(
                AgentState.DEGRADED, detail="runtime restart incomplete"
            )

    # -------------------------------------------------------------------------
    # MQTT Client Callbacks (delivered on the event loop)
    # -------------------------------------------------------------------------

    def _on_mqtt_disconnect(self, rc: int) -> None:
        self._schedule_health_update("mqtt", False, f"disconnected (rc={rc})")
        if self._stopping or self._connection_coordinator is None:
            return

        reason = (
            ReconnectReason.AUTH_FAILURE if rc == 5 else ReconnectReason.CONNECTION_LOST
        )
        self._connection_coordinator.request_reconnect(reason)

    def _on_mqtt_connect(self, rc: int) -> None:
        if self._stopping:
            return
        self._schedule_health_update("mqtt", True, None)


def _build_client_id(config: MotorThermalConfig, role: Role) -> str:
    if config.broker.client_id:
        return config.broker.client_id
    return f"{constants.APP_NAME}-{role.value}-{os.getpid()}"
