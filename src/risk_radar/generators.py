"""Synthetic historical dataset for demos and tests.

Produces hourly readings for every machine of the factory. Most machines run
near nominal; a few are given a drift so the dataset contains a degrading
machine per line, which is what makes the risk radar interesting to look at.
"""

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

from . import scoring
from .dataset import DatasetRow
from .models import (
    DEFAULT_LINE_CAPACITY,
    DEFAULT_LINE_IDS,
    DEFAULT_MACHINES_PER_LINE,
    FACTORY_ID,
    SensorReading,
    line_id_for,
    machine_ids_for,
)


@dataclass
class SensorGenerator:
    """Generates sensor values with gaussian noise and linear drift."""

    sensor_id: str
    base_value: float = 50.0
    min_value: float = 0.0
    max_value: float = 100.0
    noise_stddev: float = 2.0
    drift_rate: float = 0.0  # Value change per hour
    unit: str = ""
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def generate_value(self, elapsed_hours: float = 0.0) -> float:
        """Value after ``elapsed_hours`` of drift, clamped to range."""
        value = self.base_value + self.drift_rate * elapsed_hours
        value += self.rng.gauss(0, self.noise_stddev)
        value = max(self.min_value, min(self.max_value, value))
        return round(value, 2)


# (base, min, max, noise) per sensor for a healthy machine
SENSOR_PROFILES = {
    "temperature_c": (68.0, 40.0, 120.0, 1.5, "°C"),
    "vibration_mm_s": (1.6, 0.2, 12.0, 0.15, "mm/s"),
    "power_kw": (14.0, 5.0, 30.0, 0.4, "kW"),
    "cycle_time_s": (29.0, 20.0, 60.0, 0.6, "s"),
}

# Hourly drift for degrading machines
DEGRADING_DRIFT = {
    "temperature_c": 0.9,
    "vibration_mm_s": 0.12,
    "power_kw": 0.15,
    "cycle_time_s": 0.3,
}


def create_sensor_generators(
    rng: random.Random,
    degrading: bool = False,
) -> Dict[str, SensorGenerator]:
    """Create the four sensor generators for one machine."""
    generators = {}
    for sensor_id, (base, low, high, noise, unit) in SENSOR_PROFILES.items():
        generators[sensor_id] = SensorGenerator(
            sensor_id=sensor_id,
            base_value=base,
            min_value=low,
            max_value=high,
            noise_stddev=noise,
            drift_rate=DEGRADING_DRIFT[sensor_id] if degrading else 0.0,
            unit=unit,
            rng=rng,
        )
    return generators


def generate_dataset(
    line_ids: Sequence[str] = DEFAULT_LINE_IDS,
    machines_per_line: int = DEFAULT_MACHINES_PER_LINE,
    hours: int = 24,
    start: Optional[datetime] = None,
    seed: int = 42,
    degrading_machines: Optional[Sequence[str]] = None,
    line_capacity: float = DEFAULT_LINE_CAPACITY,
) -> List[DatasetRow]:
    """Hourly readings for every machine, in timestamp order.

    By default the second machine of every line degrades over the period.
    Each row carries its line's throughput forecast at that hour.
    """
    rng = random.Random(seed)
    if start is None:
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    if degrading_machines is None:
        degrading_machines = [f"{line_id}-M2" for line_id in line_ids]

    machine_ids = machine_ids_for(line_ids, machines_per_line)
    generators = {
        machine_id: create_sensor_generators(rng, machine_id in degrading_machines)
        for machine_id in machine_ids
    }

    rows: List[DatasetRow] = []
    for hour in range(hours):
        timestamp = start + timedelta(hours=hour)
        readings = {
            machine_id: SensorReading(
                **{
                    sensor_id: gen.generate_value(elapsed_hours=hour)
                    for sensor_id, gen in sensor_gens.items()
                }
            )
            for machine_id, sensor_gens in generators.items()
        }

        line_risks: Dict[str, List[float]] = {line_id: [] for line_id in line_ids}
        for machine_id, reading in readings.items():
            line_risks[line_id_for(machine_id)].append(scoring.risk_score(reading))

        for machine_id in machine_ids:
            line_id = line_id_for(machine_id)
            rows.append(
                DatasetRow(
                    timestamp=timestamp,
                    line_id=line_id,
                    machine_id=machine_id,
                    reading=readings[machine_id],
                    throughput_forecast=scoring.line_throughput(
                        line_risks[line_id], line_capacity
                    ),
                    factory_id=FACTORY_ID,
                )
            )
    return rows
