"""Constants used across the motor-thermal package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "motor-thermal"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME

DEFAULT_BROKER_HOST = "test.mosquitto.org"
DEFAULT_BROKER_PORT = 1883
DEFAULT_TOPIC_PREFIX = "motor"

DEFAULT_RELAY_HOST = "0.0.0.0"
DEFAULT_RELAY_PORT = 3001

AMBIENT_TEMP_C = 25.0

# Environment overrides honoured by load_config
ENV_MQTT_URL = "MQTT_URL"
ENV_TOPIC_PREFIX = "MQTT_TOPIC_PREFIX"
ENV_RELAY_PORT = "PORT"
