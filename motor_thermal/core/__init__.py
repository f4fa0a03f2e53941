"""Core primitives for motor-thermal."""

from .errors import (
    MotorThermalError,
    SafetyViolation,
    TransientTransportError,
    ValidationError,
)
from .models import (
    Command,
    EmergencyStop,
    OperatingMode,
    ProcessState,
    SetFan,
    SetMode,
    SetThresholds,
    Start,
    Stop,
    TelemetryMessage,
    ThresholdConfig,
    command_name,
)
from .protocols import BrokerClient, MessageHandler, TelemetrySink
from .safety import classify, state_label

__all__ = [
    "BrokerClient",
    "Command",
    "EmergencyStop",
    "MessageHandler",
    "MotorThermalError",
    "OperatingMode",
    "ProcessState",
    "SafetyViolation",
    "SetFan",
    "SetMode",
    "SetThresholds",
    "Start",
    "Stop",
    "TelemetryMessage",
    "TelemetrySink",
    "ThresholdConfig",
    "TransientTransportError",
    "ValidationError",
    "classify",
    "command_name",
    "state_label",
]
