"""Scoring engine.

Pure, deterministic functions that turn sensor readings into risk scores,
predicted failure dates, energy deviations and line/factory aggregates.
No I/O and no shared state; "now" is always injectable.

Rounding is half-up (``floor(x + 0.5)``) rather than Python's banker's
rounding so that throughput and energy values match the figures produced
by the dashboard and the historical dataset exactly.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from .errors import InvariantViolation
from .models import (
    DEFAULT_LINE_CAPACITY,
    HIGH_RISK_THRESHOLD,
    MachineStatus,
    SensorReading,
    utc_now,
)

POWER_NOMINAL_KW = 14.0

FAILURE_MAX_DAYS = 14
FAILURE_MIN_DAYS = 1

THROUGHPUT_REDUCTION_FACTOR = 0.6
THROUGHPUT_BLENDED_AVG_WEIGHT = 0.6
THROUGHPUT_BLENDED_MAX_WEIGHT = 0.4


@dataclass(frozen=True)
class RiskAxis:
    """One weighted sensor axis of the risk score.

    When ``baseline`` is set the axis scores the absolute deviation from it
    instead of the raw value.
    """

    sensor: str
    nominal: float
    critical: float
    weight: float
    baseline: Optional[float] = None

    def value(self, reading: SensorReading) -> float:
        raw = getattr(reading, self.sensor)
        if self.baseline is not None:
            return abs(raw - self.baseline)
        return raw


RISK_AXES = (
    RiskAxis("vibration_mm_s", nominal=1.0, critical=5.0, weight=0.45),
    RiskAxis("temperature_c", nominal=65.0, critical=95.0, weight=0.35),
    RiskAxis("power_kw", nominal=0.0, critical=8.0, weight=0.10, baseline=POWER_NOMINAL_KW),
    RiskAxis("cycle_time_s", nominal=28.0, critical=45.0, weight=0.10),
)


@dataclass(frozen=True)
class MachineScores:
    """All derived fields of a machine for one reading."""

    risk_score: float
    predicted_failure_date: datetime
    energy_deviation_kw: float
    status: MachineStatus


def clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def round_half_up(value: float) -> float:
    return float(math.floor(value + 0.5))


def validate_axes(axes: Sequence[RiskAxis]) -> None:
    """Reject an axis set whose weights do not sum to 1."""
    total = math.fsum(axis.weight for axis in axes)
    if not math.isclose(total, 1.0, rel_tol=0.0, abs_tol=1e-9):
        raise ValueError(f"Risk axis weights must sum to 1.0, got {total}")
    for axis in axes:
        if axis.nominal >= axis.critical:
            raise ValueError(f"Axis {axis.sensor}: nominal must be below critical")


def normalize(value: float, nominal: float, critical: float) -> float:
    """Map a value onto [0, 1] between its nominal and critical thresholds."""
    if nominal >= critical:
        raise ValueError(f"nominal ({nominal}) must be below critical ({critical})")
    if value <= nominal:
        return 0.0
    if value >= critical:
        return 1.0
    return (value - nominal) / (critical - nominal)


def risk_score(reading: SensorReading, axes: Sequence[RiskAxis] = RISK_AXES) -> float:
    """Weighted threshold risk in [0, 1] for a single reading."""
    if axes is not RISK_AXES:
        validate_axes(axes)
    weighted = 0.0
    for axis in axes:
        axis_score = normalize(axis.value(reading), axis.nominal, axis.critical)
        weighted += axis.weight * clamp(axis_score, 0.0, 1.0)
    return clamp(weighted, 0.0, 1.0)


def predicted_failure_date(risk: float, now: Optional[datetime] = None) -> datetime:
    """Risk 0 maps to 14 days out, risk 1 to 1 day out, linearly."""
    if now is None:
        now = utc_now()
    days_out = FAILURE_MAX_DAYS - risk * (FAILURE_MAX_DAYS - FAILURE_MIN_DAYS)
    return now + timedelta(days=days_out)


def energy_deviation(power_kw: float) -> float:
    """Signed deviation from the 14 kW baseline, two decimals."""
    return round_half_up((power_kw - POWER_NOMINAL_KW) * 100) / 100


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values)


def line_risk(risks: Sequence[float]) -> float:
    if not risks:
        return 0.0
    return _mean(risks)


def line_throughput(risks: Sequence[float], capacity: float = DEFAULT_LINE_CAPACITY) -> float:
    """Forecast units/day for a line.

    A blend of mean (60%) and max (40%) machine risk, so a single bad machine
    pulls the line down harder than a flat average would.
    """
    if not risks:
        return float(capacity)
    blended = (
        THROUGHPUT_BLENDED_AVG_WEIGHT * _mean(risks)
        + THROUGHPUT_BLENDED_MAX_WEIGHT * max(risks)
    )
    throughput = round_half_up(capacity * (1 - blended * THROUGHPUT_REDUCTION_FACTOR))
    return clamp(throughput, 0.0, float(capacity))


def factory_risk(line_risks: Sequence[float]) -> float:
    if not line_risks:
        return 0.0
    return _mean(line_risks)


def machine_status(risk: float, threshold: float = HIGH_RISK_THRESHOLD) -> MachineStatus:
    return MachineStatus.WARNING if risk > threshold else MachineStatus.RUNNING


def score_machine(
    reading: SensorReading,
    now: Optional[datetime] = None,
    threshold: float = HIGH_RISK_THRESHOLD,
) -> MachineScores:
    """Compute every derived machine field for one reading."""
    risk = risk_score(reading)
    if not 0.0 <= risk <= 1.0:
        raise InvariantViolation(f"risk score {risk} outside [0, 1] for {reading}")
    return MachineScores(
        risk_score=risk,
        predicted_failure_date=predicted_failure_date(risk, now),
        energy_deviation_kw=energy_deviation(reading.power_kw),
        status=machine_status(risk, threshold),
    )
