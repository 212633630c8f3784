"""Input validation for the boundary (CLI). Runs before any store access."""

from typing import Dict, Mapping, Optional

from .errors import ValidationError
from .models import MACHINE_ID_PATTERN, SENSOR_FIELDS

# Inclusive bounds accepted for injected sensor values
SENSOR_BOUNDS = {
    "temperature_c": (-40.0, 200.0),
    "vibration_mm_s": (0.0, 50.0),
    "power_kw": (0.0, 100.0),
    "cycle_time_s": (1.0, 300.0),
}

DEFAULT_TELEMETRY_LIMIT = 100
MAX_TELEMETRY_LIMIT = 1000


def validate_machine_id(machine_id: str) -> str:
    if not isinstance(machine_id, str) or not MACHINE_ID_PATTERN.match(machine_id):
        raise ValidationError(
            "machine_id", f"invalid machine ID {machine_id!r}, expected L{{1-3}}-M{{1-5}}"
        )
    return machine_id


def validate_overrides(overrides: Mapping[str, Optional[float]]) -> Dict[str, float]:
    """Check a partial sensor override and drop the fields left unset."""
    unknown = sorted(set(overrides) - set(SENSOR_FIELDS))
    if unknown:
        raise ValidationError(unknown[0], "unknown sensor field")

    checked = {}
    for name, value in overrides.items():
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(name, f"expected a number, got {value!r}")
        low, high = SENSOR_BOUNDS[name]
        # NaN fails both comparisons, so test for it explicitly
        if value != value or not low <= value <= high:
            raise ValidationError(name, f"{value} outside [{low:g}, {high:g}]")
        checked[name] = float(value)
    return checked


def validate_limit(limit: Optional[int]) -> int:
    """Telemetry row limit, defaulting when unset."""
    if limit is None:
        return DEFAULT_TELEMETRY_LIMIT
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise ValidationError("limit", f"expected an integer, got {limit!r}")
    if not 1 <= limit <= MAX_TELEMETRY_LIMIT:
        raise ValidationError("limit", f"{limit} outside [1, {MAX_TELEMETRY_LIMIT}]")
    return limit
