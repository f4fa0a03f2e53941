"""Simulated induction motor thermal monitoring with an MQTT telemetry relay."""

__version__ = "0.1.0"
