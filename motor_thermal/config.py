"""Configuration loader for motor-thermal."""

from __future__ import annotations

import logging
import os
from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional
from urllib.parse import unquote, urlsplit

from . import constants
from .core.errors import ValidationError
from .core.models import ThresholdConfig

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class BrokerConfig:
    host: str = constants.DEFAULT_BROKER_HOST
    port: int = constants.DEFAULT_BROKER_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: Optional[str] = None
    keepalive: int = 60


@dataclass(slots=True)
class TopicConfig:
    prefix: str = constants.DEFAULT_TOPIC_PREFIX


@dataclass(slots=True)
class SimulatorConfig:
    tick_seconds: float = 1.0
    sample_seconds: float = 5.0
    ambient_temp: float = constants.AMBIENT_TEMP_C
    decay_rate: float = 0.05
    heat_gain_min: float = 0.5
    heat_gain_max: float = 2.0
    cooling_fan_on: float = 2.0
    cooling_fan_off: float = 0.5
    seed: Optional[int] = None


@dataclass(slots=True)
class RelayConfig:
    host: str = constants.DEFAULT_RELAY_HOST
    port: int = constants.DEFAULT_RELAY_PORT
    session_queue_size: int = 256
    dedup_window_seconds: float = 0.5


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(slots=True)
class ResilienceConfig:
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0
    reconnect_jitter_ratio: float = 0.5
    health_enabled: bool = False
    health_host: str = "127.0.0.1"
    health_port: int = 0


@dataclass(slots=True)
class MotorThermalConfig:
    broker: BrokerConfig
    topics: TopicConfig
    simulator: SimulatorConfig
    thresholds: ThresholdConfig
    relay: RelayConfig
    logging: LoggingConfig
    resilience: ResilienceConfig
    raw: ConfigParser
    path: Path
    env_overrides: list[str] = field(default_factory=list)


def _defaults() -> dict[str, dict[str, str]]:
    simulator = SimulatorConfig()
    thresholds = ThresholdConfig()
    relay = RelayConfig()
    resilience = ResilienceConfig()
    return {
        "broker": {
            "host": constants.DEFAULT_BROKER_HOST,
            "port": str(constants.DEFAULT_BROKER_PORT),
            "keepalive": "60",
        },
        "topics": {"prefix": constants.DEFAULT_TOPIC_PREFIX},
        "simulator": {
            "tick_seconds": str(simulator.tick_seconds),
            "sample_seconds": str(simulator.sample_seconds),
            "ambient_temp": str(simulator.ambient_temp),
            "decay_rate": str(simulator.decay_rate),
            "heat_gain_min": str(simulator.heat_gain_min),
            "heat_gain_max": str(simulator.heat_gain_max),
            "cooling_fan_on": str(simulator.cooling_fan_on),
            "cooling_fan_off": str(simulator.cooling_fan_off),
        },
        "thresholds": {
            "warning_temp": str(thresholds.warning_temp),
            "fan_temp": str(thresholds.fan_temp),
            "critical_temp": str(thresholds.critical_temp),
        },
        "relay": {
            "host": relay.host,
            "port": str(relay.port),
            "session_queue_size": str(relay.session_queue_size),
            "dedup_window_seconds": str(relay.dedup_window_seconds),
        },
        "logging": {
            "level": "INFO",
            "log_network": "false",
        },
        "resilience": {
            "reconnect_initial_seconds": str(resilience.reconnect_initial_seconds),
            "reconnect_max_seconds": str(resilience.reconnect_max_seconds),
            "reconnect_jitter_ratio": str(resilience.reconnect_jitter_ratio),
            "health_enabled": "false",
            "health_host": resilience.health_host,
            "health_port": str(resilience.health_port),
        },
    }


def _apply_environment(
    parser: ConfigParser, environ: Mapping[str, str]
) -> list[str]:
    """Apply the deployment environment variables on top of the file."""

    applied: list[str] = []

    mqtt_url = environ.get(constants.ENV_MQTT_URL, "").strip()
    if mqtt_url:
        parts = urlsplit(mqtt_url if "://" in mqtt_url else f"mqtt://{mqtt_url}")
        if parts.hostname:
            parser.set("broker", "host", parts.hostname)
            try:
                port = parts.port
            except ValueError:
                LOGGER.warning("Ignoring invalid port in %s", constants.ENV_MQTT_URL)
                port = None
            if port is not None:
                parser.set("broker", "port", str(port))
            if parts.username:
                parser.set("broker", "username", unquote(parts.username))
            if parts.password:
                parser.set("broker", "password", unquote(parts.password))
            applied.append(constants.ENV_MQTT_URL)
        else:
            LOGGER.warning("Ignoring %s without a host: %s", constants.ENV_MQTT_URL, mqtt_url)

    prefix = environ.get(constants.ENV_TOPIC_PREFIX, "").strip()
    if prefix:
        parser.set("topics", "prefix", prefix)
        applied.append(constants.ENV_TOPIC_PREFIX)

    relay_port = environ.get(constants.ENV_RELAY_PORT, "").strip()
    if relay_port:
        if relay_port.isdigit():
            parser.set("relay", "port", relay_port)
            applied.append(constants.ENV_RELAY_PORT)
        else:
            LOGGER.warning("Ignoring non-numeric %s=%s", constants.ENV_RELAY_PORT, relay_port)

    return applied


def _load_thresholds(parser: ConfigParser) -> ThresholdConfig:
    defaults = ThresholdConfig()
    try:
        return ThresholdConfig(
            warning_temp=parser.getfloat(
                "thresholds", "warning_temp", fallback=defaults.warning_temp
            ),
            fan_temp=parser.getfloat("thresholds", "fan_temp", fallback=defaults.fan_temp),
            critical_temp=parser.getfloat(
                "thresholds", "critical_temp", fallback=defaults.critical_temp
            ),
        )
    except (ValueError, ValidationError) as exc:
        LOGGER.warning("Invalid [thresholds] section (%s); using defaults", exc)
        return defaults


def _optional_int(parser: ConfigParser, section: str, option: str) -> Optional[int]:
    value = parser.get(section, option, fallback="").strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        LOGGER.warning("Ignoring non-integer [%s] %s=%s", section, option, value)
        return None


def load_config(
    path: Optional[Path] = None, *, environ: Optional[Mapping[str, str]] = None
) -> MotorThermalConfig:
    """Load configuration from disk, applying defaults and environment overrides."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser(interpolation=None)
    parser.read_dict(_defaults())

    if config_path.exists():
        parser.read(config_path)

    env_overrides = _apply_environment(
        parser, os.environ if environ is None else environ
    )

    broker = BrokerConfig(
        host=parser.get("broker", "host"),
        port=parser.getint("broker", "port", fallback=constants.DEFAULT_BROKER_PORT),
        username=parser.get("broker", "username", fallback=None),
        password=parser.get("broker", "password", fallback=None),
        client_id=parser.get("broker", "client_id", fallback=None),
        keepalive=max(5, parser.getint("broker", "keepalive", fallback=60)),
    )

    topics = TopicConfig(
        prefix=parser.get("topics", "prefix", fallback=constants.DEFAULT_TOPIC_PREFIX)
    )

    sim_defaults = SimulatorConfig()
    heat_gain_min = parser.getfloat(
        "simulator", "heat_gain_min", fallback=sim_defaults.heat_gain_min
    )
    heat_gain_max = max(
        heat_gain_min,
        parser.getfloat("simulator", "heat_gain_max", fallback=sim_defaults.heat_gain_max),
    )
    simulator = SimulatorConfig(
        tick_seconds=max(
            0.05,
            parser.getfloat("simulator", "tick_seconds", fallback=sim_defaults.tick_seconds),
        ),
        sample_seconds=max(
            0.05,
            parser.getfloat(
                "simulator", "sample_seconds", fallback=sim_defaults.sample_seconds
            ),
        ),
        ambient_temp=parser.getfloat(
            "simulator", "ambient_temp", fallback=sim_defaults.ambient_temp
        ),
        decay_rate=max(
            0.0,
            min(
                1.0,
                parser.getfloat("simulator", "decay_rate", fallback=sim_defaults.decay_rate),
            ),
        ),
        heat_gain_min=heat_gain_min,
        heat_gain_max=heat_gain_max,
        cooling_fan_on=parser.getfloat(
            "simulator", "cooling_fan_on", fallback=sim_defaults.cooling_fan_on
        ),
        cooling_fan_off=parser.getfloat(
            "simulator", "cooling_fan_off", fallback=sim_defaults.cooling_fan_off
        ),
        seed=_optional_int(parser, "simulator", "seed"),
    )

    relay_defaults = RelayConfig()
    relay = RelayConfig(
        host=parser.get("relay", "host", fallback=relay_defaults.host),
        port=parser.getint("relay", "port", fallback=relay_defaults.port),
        session_queue_size=max(
            1,
            parser.getint(
                "relay", "session_queue_size", fallback=relay_defaults.session_queue_size
            ),
        ),
        dedup_window_seconds=max(
            0.0,
            parser.getfloat(
                "relay",
                "dedup_window_seconds",
                fallback=relay_defaults.dedup_window_seconds,
            ),
        ),
    )

    log_path_value = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    resilience = ResilienceConfig(
        reconnect_initial_seconds=parser.getfloat(
            "resilience", "reconnect_initial_seconds", fallback=1.0
        ),
        reconnect_max_seconds=parser.getfloat(
            "resilience", "reconnect_max_seconds", fallback=30.0
        ),
        reconnect_jitter_ratio=max(
            0.0,
            min(
                1.0,
                parser.getfloat("resilience", "reconnect_jitter_ratio", fallback=0.5),
            ),
        ),
        health_enabled=parser.getboolean(
            "resilience", "health_enabled", fallback=False
        ),
        health_host=parser.get("resilience", "health_host", fallback="127.0.0.1"),
        health_port=parser.getint("resilience", "health_port", fallback=0),
    )

    return MotorThermalConfig(
        broker=broker,
        topics=topics,
        simulator=simulator,
        thresholds=_load_thresholds(parser),
        relay=relay,
        logging=logging_config,
        resilience=resilience,
        raw=parser,
        path=config_path,
        env_overrides=env_overrides,
    )
