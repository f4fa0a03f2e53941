"""Validation and arbitration of operator commands.

Two control vocabularies are in circulation and both are accepted:

* ``{"action": "start" | "stop" | "fan-on" | "fan-off" | "emergency-stop"}``
* ``{"motor": bool, "fan": bool, "mode": "auto" | "manual"}``

Either shape is turned into an ordered list of :mod:`~motor_thermal.core.models`
commands. The gateway keeps no state of its own: admission decisions are
taken against the process snapshot supplied by the caller.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Dict, List, Mapping, Optional, Sequence

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
    command_name,
)

LOGGER = logging.getLogger(__name__)

ACTION_COMMANDS: Dict[str, Command] = {
    "start": Start(),
    "stop": Stop(),
    "fan-on": SetFan(on=True),
    "fan-off": SetFan(on=False),
    "emergency-stop": EmergencyStop(),
}

CONTROL_MODES = {"auto": False, "manual": True}

# Accepted settings keys, in precedence order per setpoint.
SETTINGS_ALIASES: Dict[str, Sequence[str]] = {
    "warning_temp": ("warning_temp", "warnTemp"),
    "fan_temp": ("fan_temp",),
    "critical_temp": ("critical_temp", "maxTemp"),
}


def decode_payload(payload: bytes | str | Mapping[str, Any]) -> Dict[str, Any]:
    """Decode a broker or observer payload into a JSON object."""

    if isinstance(payload, Mapping):
        return dict(payload)
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ValidationError("payload is not valid UTF-8") from exc
    try:
        data = json.loads(payload)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"payload is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError("payload must be a JSON object")
    return data


class CommandGateway:
    """Turns raw control/settings payloads into admitted commands."""

    def parse_control(self, payload: bytes | str | Mapping[str, Any]) -> List[Command]:
        data = decode_payload(payload)
        commands: List[Command] = []

        if "action" in data:
            action = data["action"]
            if not isinstance(action, str) or action not in ACTION_COMMANDS:
                raise ValidationError(f"unknown control action {action!r}", field="action")
            commands.append(ACTION_COMMANDS[action])

        commands.extend(self._parse_object_control(data))

        if not commands:
            raise ValidationError("control payload has no recognised fields")
        return commands

    def _parse_object_control(self, data: Mapping[str, Any]) -> List[Command]:
        commands: List[Command] = []

        if "mode" in data:
            mode = data["mode"]
            if mode not in CONTROL_MODES:
                raise ValidationError(
                    f"mode must be 'auto' or 'manual' (got {mode!r})", field="mode"
                )
            commands.append(SetMode(manual=CONTROL_MODES[mode]))

        motor = _optional_bool(data, "motor")
        fan = _optional_bool(data, "fan")

        if motor is False and fan is True:
            commands.append(EmergencyStop())
            return commands

        if motor is not None:
            commands.append(Start() if motor else Stop())
        if fan is not None:
            commands.append(SetFan(on=fan))
        return commands

    def parse_settings(self, payload: bytes | str | Mapping[str, Any]) -> SetThresholds:
        data = decode_payload(payload)
        values: Dict[str, float] = {}

        for setpoint, aliases in SETTINGS_ALIASES.items():
            for key in aliases:
                if key not in data:
                    continue
                value = _finite_number(data[key])
                if value is None:
                    LOGGER.debug("Ignoring non-finite settings field %s=%r", key, data[key])
                    continue
                values[setpoint] = value
                break

        if not values:
            raise ValidationError("settings payload has no finite threshold values")
        return SetThresholds(**values)

    def parse(self, channel: str, payload: bytes | str | Mapping[str, Any]) -> List[Command]:
        """Parse a payload received on the ``control`` or ``settings`` channel."""

        if channel == "control":
            return self.parse_control(payload)
        if channel == "settings":
            return [self.parse_settings(payload)]
        raise ValidationError(f"channel {channel!r} does not carry commands")

    def admit(self, command: Command, snapshot: ProcessState) -> Command:
        """Check a command against the current mode.

        Only ``EmergencyStop`` is accepted while the motor is in critical mode.
        """

        if snapshot.mode is OperatingMode.CRITICAL and not isinstance(
            command, EmergencyStop
        ):
            raise SafetyViolation(
                f"{command_name(command)} rejected while temperature is critical",
                mode=snapshot.mode.value,
            )
        return command


def _optional_bool(data: Mapping[str, Any], key: str) -> Optional[bool]:
    if key not in data or data[key] is None:
        return None
    value = data[key]
    if not isinstance(value, bool):
        raise ValidationError(f"{key} must be a boolean (got {value!r})", field=key)
    return value


def _finite_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    number = float(value)
    if not math.isfinite(number):
        return None
    return number
