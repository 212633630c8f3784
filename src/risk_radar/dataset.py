"""Historical dataset rows and their CSV form.

The CSV header matches the demo dataset shipped with the dashboard:

    Timestamp,Factory,Line,Machine,Temperature_C,Vibration_mm_s,Power_kW,
    CycleTime_s,Status,RiskScore,PredictedFailureDate,
    LineThroughputForecast_units_per_day,EnergyDeviation_kW

Only Timestamp, Line, Machine and the four sensor columns are required; the
derived columns are recomputed by the scoring engine when seeding.
"""

import csv
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from . import scoring
from .models import FACTORY_ID, SensorReading, format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

CSV_COLUMNS = [
    "Timestamp",
    "Factory",
    "Line",
    "Machine",
    "Temperature_C",
    "Vibration_mm_s",
    "Power_kW",
    "CycleTime_s",
    "Status",
    "RiskScore",
    "PredictedFailureDate",
    "LineThroughputForecast_units_per_day",
    "EnergyDeviation_kW",
]

REQUIRED_COLUMNS = (
    "Timestamp",
    "Line",
    "Machine",
    "Temperature_C",
    "Vibration_mm_s",
    "Power_kW",
    "CycleTime_s",
)


@dataclass(frozen=True)
class DatasetRow:
    """One historical reading for one machine."""

    timestamp: datetime
    line_id: str
    machine_id: str
    reading: SensorReading
    throughput_forecast: Optional[float] = None
    factory_id: str = FACTORY_ID


def load_dataset(path: Path) -> List[DatasetRow]:
    """Read a dataset CSV; rows come back in timestamp order."""
    with open(path, newline="") as f:
        reader = csv.DictReader(f)
        missing = [c for c in REQUIRED_COLUMNS if c not in (reader.fieldnames or [])]
        if missing:
            raise ValueError(f"{path}: missing column(s) {', '.join(missing)}")

        rows = []
        for record in reader:
            if not record.get("Machine"):
                continue
            throughput = record.get("LineThroughputForecast_units_per_day")
            rows.append(
                DatasetRow(
                    timestamp=parse_timestamp(record["Timestamp"]),
                    line_id=record["Line"],
                    machine_id=record["Machine"],
                    reading=SensorReading(
                        temperature_c=float(record["Temperature_C"]),
                        vibration_mm_s=float(record["Vibration_mm_s"]),
                        power_kw=float(record["Power_kW"]),
                        cycle_time_s=float(record["CycleTime_s"]),
                    ),
                    throughput_forecast=float(throughput) if throughput else None,
                    factory_id=record.get("Factory") or FACTORY_ID,
                )
            )

    logger.info(f"Loaded {len(rows)} dataset rows from {path}")
    # sorted() is stable, so rows sharing a timestamp keep file order
    return sorted(rows, key=lambda r: r.timestamp)


def write_dataset(rows: Iterable[DatasetRow], path: Path) -> int:
    """Write rows as CSV, filling the derived columns. Returns the row count."""
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with open(path, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=CSV_COLUMNS)
        writer.writeheader()
        for row in rows:
            scores = scoring.score_machine(row.reading, now=row.timestamp)
            writer.writerow(
                {
                    "Timestamp": format_timestamp(row.timestamp),
                    "Factory": row.factory_id,
                    "Line": row.line_id,
                    "Machine": row.machine_id,
                    "Temperature_C": row.reading.temperature_c,
                    "Vibration_mm_s": row.reading.vibration_mm_s,
                    "Power_kW": row.reading.power_kw,
                    "CycleTime_s": row.reading.cycle_time_s,
                    "Status": scores.status.value,
                    "RiskScore": round(scores.risk_score, 4),
                    "PredictedFailureDate": format_timestamp(scores.predicted_failure_date),
                    "LineThroughputForecast_units_per_day": (
                        "" if row.throughput_forecast is None else row.throughput_forecast
                    ),
                    "EnergyDeviation_kW": scores.energy_deviation_kw,
                }
            )
            count += 1
    return count


def latest_by_machine(rows: Iterable[DatasetRow]) -> Dict[str, DatasetRow]:
    """Last row per machine; rows must be in timestamp order."""
    latest: Dict[str, DatasetRow] = {}
    for row in rows:
        latest[row.machine_id] = row
    return latest
