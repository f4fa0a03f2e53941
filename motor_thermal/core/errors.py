"""Error taxonomy shared by the process, gateway and relay."""

from __future__ import annotations

from typing import Optional


class MotorThermalError(RuntimeError):
    """Base class for errors raised by motor-thermal components."""


class ValidationError(MotorThermalError):
    """Raised when a command or settings payload is malformed.

    The rejected payload never reaches process state; callers report the
    diagnostic back to whoever sent it.
    """

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class SafetyViolation(MotorThermalError):
    """Raised when a command is incompatible with the current operating mode."""

    def __init__(self, message: str, *, mode: Optional[str] = None) -> None:
        super().__init__(message)
        self.mode = mode


class TransientTransportError(MotorThermalError):
    """Raised when the broker or an observer session is temporarily unreachable."""
