"""Safety classification of motor temperature."""

from __future__ import annotations

import math

from .models import OperatingMode, ProcessState, ThresholdConfig


def classify(temperature: float, thresholds: ThresholdConfig) -> OperatingMode:
    """Map a temperature onto the four ordered operating modes.

    Total over all floats: NaN has no ordering against the setpoints and is
    reported as ``critical`` so an unreadable temperature never looks safe.
    """

    if math.isnan(temperature):
        return OperatingMode.CRITICAL
    if temperature < thresholds.warning_temp:
        return OperatingMode.NORMAL
    if temperature < thresholds.fan_temp:
        return OperatingMode.WARNING
    if temperature < thresholds.critical_temp:
        return OperatingMode.COOLING
    return OperatingMode.CRITICAL


def state_label(state: ProcessState) -> str:
    """Legacy ``state`` topic vocabulary: ok, stopped, warning, stopped-by-max."""

    if state.mode is OperatingMode.CRITICAL:
        return "stopped-by-max"
    if not state.running:
        return "stopped"
    if state.mode in (OperatingMode.WARNING, OperatingMode.COOLING):
        return "warning"
    return "ok"
