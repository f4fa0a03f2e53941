"""Domain models for the thermal process, its commands and telemetry."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from .. import constants
from .errors import ValidationError

WARNING_TEMP_RANGE = (20.0, 150.0)
FAN_TEMP_RANGE = (30.0, 150.0)
CRITICAL_TEMP_RANGE = (40.0, 200.0)


class OperatingMode(str, Enum):
    """Safety classification derived from temperature and thresholds."""

    NORMAL = "normal"
    WARNING = "warning"
    COOLING = "cooling"
    CRITICAL = "critical"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    OperatingMode.NORMAL: 0,
    OperatingMode.WARNING: 1,
    OperatingMode.COOLING: 2,
    OperatingMode.CRITICAL: 3,
}


def _check_setpoint(name: str, value: Any, bounds: tuple[float, float]) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number", field=name)
    number = float(value)
    if not math.isfinite(number):
        raise ValidationError(f"{name} must be finite", field=name)
    lower, upper = bounds
    if number < lower or number > upper:
        raise ValidationError(
            f"{name}={number:g} outside allowed range {lower:g}-{upper:g}",
            field=name,
        )
    return number


@dataclass(frozen=True, slots=True)
class ThresholdConfig:
    """Validated temperature setpoints in °C.

    Instances are checked on construction, so any ThresholdConfig in
    circulation satisfies ``warning_temp < fan_temp < critical_temp``.
    """

    warning_temp: float = 60.0
    fan_temp: float = 65.0
    critical_temp: float = 70.0

    def __post_init__(self) -> None:
        warning = _check_setpoint("warning_temp", self.warning_temp, WARNING_TEMP_RANGE)
        fan = _check_setpoint("fan_temp", self.fan_temp, FAN_TEMP_RANGE)
        critical = _check_setpoint(
            "critical_temp", self.critical_temp, CRITICAL_TEMP_RANGE
        )
        if not warning < fan < critical:
            raise ValidationError(
                "thresholds must satisfy warning_temp < fan_temp < critical_temp "
                f"(got {warning:g}, {fan:g}, {critical:g})"
            )
        object.__setattr__(self, "warning_temp", warning)
        object.__setattr__(self, "fan_temp", fan)
        object.__setattr__(self, "critical_temp", critical)

    def as_dict(self) -> Dict[str, float]:
        return {
            "warning_temp": self.warning_temp,
            "fan_temp": self.fan_temp,
            "critical_temp": self.critical_temp,
        }


@dataclass(frozen=True, slots=True)
class ProcessState:
    """Immutable snapshot of the simulated motor."""

    temperature: float = constants.AMBIENT_TEMP_C
    running: bool = False
    fan_on: bool = False
    manual: bool = False
    mode: OperatingMode = OperatingMode.NORMAL
    last_update: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    reason: Optional[str] = None

    def as_status(self) -> Dict[str, Any]:
        return {
            "motor": self.running,
            "fan": self.fan_on,
            "manual": self.manual,
            "mode": self.mode.value,
            "temp": round(self.temperature, 2),
        }


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Start:
    pass


@dataclass(frozen=True, slots=True)
class Stop:
    pass


@dataclass(frozen=True, slots=True)
class SetFan:
    on: bool


@dataclass(frozen=True, slots=True)
class SetMode:
    manual: bool


@dataclass(frozen=True, slots=True)
class EmergencyStop:
    pass


@dataclass(frozen=True, slots=True)
class SetThresholds:
    """Threshold update; absent fields keep their current value."""

    warning_temp: Optional[float] = None
    fan_temp: Optional[float] = None
    critical_temp: Optional[float] = None

    def resolve(self, current: ThresholdConfig) -> ThresholdConfig:
        """Merge with ``current`` and validate the resulting triple."""

        return ThresholdConfig(
            warning_temp=(
                current.warning_temp if self.warning_temp is None else self.warning_temp
            ),
            fan_temp=current.fan_temp if self.fan_temp is None else self.fan_temp,
            critical_temp=(
                current.critical_temp
                if self.critical_temp is None
                else self.critical_temp
            ),
        )


Command = Union[Start, Stop, SetFan, SetMode, EmergencyStop, SetThresholds]


def command_name(command: Command) -> str:
    return type(command).__name__


@dataclass(frozen=True, slots=True)
class TelemetryMessage:
    """One message on a semantic channel relative to the topic prefix."""

    topic: str
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
