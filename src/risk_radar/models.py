"""Domain model for the factory hierarchy.

Factory (singleton) -> Lines -> Machines, plus the append-only telemetry
history. Both storage backends translate to and from these dataclasses:

- the relational backend maps rows with ``from_*_row`` helpers in ``db``
- the twin backend uses ``to_twin`` / ``from_twin`` (camelCase properties,
  ``$dtId`` and ``$metadata.$model`` like Azure Digital Twins documents)
"""

import re
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import ValidationError

FACTORY_ID = "demo-factory"
FACTORY_NAME = "Demo Factory"

HIGH_RISK_THRESHOLD = 0.7

DEFAULT_LINE_IDS = ("L1", "L2", "L3")
DEFAULT_MACHINES_PER_LINE = 5
DEFAULT_LINE_CAPACITY = 480
DEFAULT_OEE = 0.85

# L{1-3}-M{1-5}
MACHINE_ID_PATTERN = re.compile(r"^L[1-3]-M[1-5]$")

FACTORY_MODEL = "dtmi:com:productionriskradar:Factory;1"
LINE_MODEL = "dtmi:com:productionriskradar:Line;1"
MACHINE_MODEL = "dtmi:com:productionriskradar:Machine;1"

SENSOR_FIELDS = ("temperature_c", "vibration_mm_s", "power_kw", "cycle_time_s")


class MachineStatus(Enum):
    """Machine operating status. DOWN is never derived by scoring."""

    RUNNING = "Running"
    WARNING = "Warning"
    DOWN = "Down"


def line_id_for(machine_id: str) -> str:
    """Line id is the prefix before the dash ("L1-M2" -> "L1")."""
    return machine_id.split("-", 1)[0]


def machine_ids_for(line_ids=DEFAULT_LINE_IDS, machines_per_line: int = DEFAULT_MACHINES_PER_LINE) -> List[str]:
    return [f"{line_id}-M{n}" for line_id in line_ids for n in range(1, machines_per_line + 1)]


def format_timestamp(value: datetime) -> str:
    """UTC ISO-8601 with milliseconds and a Z suffix. Sorts chronologically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse a stored timestamp back to an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SensorReading:
    """The four sensor fields of a machine."""

    temperature_c: float = 0.0
    vibration_mm_s: float = 0.0
    power_kw: float = 0.0
    cycle_time_s: float = 0.0

    def with_overrides(self, overrides: Optional[Mapping[str, Optional[float]]]) -> "SensorReading":
        """Apply partial overrides; fields that are missing or None keep their value."""
        if not overrides:
            return self
        unknown = set(overrides) - set(SENSOR_FIELDS)
        if unknown:
            raise ValidationError(", ".join(sorted(unknown)), "unknown sensor field")
        changes = {k: float(v) for k, v in overrides.items() if v is not None}
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass
class MachineState:
    """Current state of one machine."""

    machine_id: str
    line_id: str
    name: str = ""
    status: MachineStatus = MachineStatus.RUNNING
    reading: SensorReading = field(default_factory=SensorReading)
    risk_score: float = 0.0
    predicted_failure_date: Optional[datetime] = None
    energy_deviation_kw: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "machine_id": self.machine_id,
            "line": self.line_id,
            "name": self.name or self.machine_id,
            "status": self.status.value,
            **self.reading.to_dict(),
            "risk_score": self.risk_score,
            "predicted_failure_date": (
                format_timestamp(self.predicted_failure_date)
                if self.predicted_failure_date
                else ""
            ),
            "energy_deviation_kw": self.energy_deviation_kw,
        }

    def to_twin(self) -> Dict[str, Any]:
        return {
            "$dtId": self.machine_id,
            "$metadata": {"$model": MACHINE_MODEL},
            "name": self.name or self.machine_id,
            "machineType": "General",
            "status": self.status.value,
            "temperature": self.reading.temperature_c,
            "vibration": self.reading.vibration_mm_s,
            "power": self.reading.power_kw,
            "cycleTime": self.reading.cycle_time_s,
            "riskScore": self.risk_score,
            "predictedFailureDate": (
                format_timestamp(self.predicted_failure_date)
                if self.predicted_failure_date
                else ""
            ),
            "energyDeviation": self.energy_deviation_kw,
        }

    @classmethod
    def from_twin(cls, twin: Mapping[str, Any]) -> "MachineState":
        machine_id = twin["$dtId"]
        return cls(
            machine_id=machine_id,
            line_id=line_id_for(machine_id),
            name=twin.get("name", machine_id),
            status=MachineStatus(twin.get("status", MachineStatus.RUNNING.value)),
            reading=SensorReading(
                temperature_c=float(twin.get("temperature", 0.0)),
                vibration_mm_s=float(twin.get("vibration", 0.0)),
                power_kw=float(twin.get("power", 0.0)),
                cycle_time_s=float(twin.get("cycleTime", 0.0)),
            ),
            risk_score=float(twin.get("riskScore", 0.0)),
            predicted_failure_date=parse_timestamp(twin.get("predictedFailureDate")),
            energy_deviation_kw=float(twin.get("energyDeviation", 0.0)),
        )


@dataclass
class LineState:
    """Current aggregate state of one production line."""

    line_id: str
    name: str = ""
    capacity: float = DEFAULT_LINE_CAPACITY
    risk_score: float = 0.0
    throughput_forecast: float = DEFAULT_LINE_CAPACITY
    oee: float = DEFAULT_OEE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "line_id": self.line_id,
            "name": self.name or self.line_id,
            "line_capacity": self.capacity,
            "risk_score": self.risk_score,
            "throughput_forecast": self.throughput_forecast,
            "oee": self.oee,
        }

    def to_twin(self) -> Dict[str, Any]:
        return {
            "$dtId": self.line_id,
            "$metadata": {"$model": LINE_MODEL},
            "name": self.name or self.line_id,
            "lineCapacity": self.capacity,
            "oee": self.oee,
            "currentThroughput": self.throughput_forecast,
            "riskScore": self.risk_score,
            "throughputForecast": self.throughput_forecast,
        }

    @classmethod
    def from_twin(cls, twin: Mapping[str, Any]) -> "LineState":
        return cls(
            line_id=twin["$dtId"],
            name=twin.get("name", twin["$dtId"]),
            capacity=float(twin.get("lineCapacity", DEFAULT_LINE_CAPACITY)),
            risk_score=float(twin.get("riskScore", 0.0)),
            throughput_forecast=float(twin.get("throughputForecast", DEFAULT_LINE_CAPACITY)),
            oee=float(twin.get("oee", DEFAULT_OEE)),
        )


@dataclass
class FactoryState:
    """Current aggregate state of the factory."""

    factory_id: str = FACTORY_ID
    name: str = FACTORY_NAME
    overall_risk_score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "factory_id": self.factory_id,
            "name": self.name,
            "overall_risk_score": self.overall_risk_score,
        }

    def to_twin(self) -> Dict[str, Any]:
        return {
            "$dtId": self.factory_id,
            "$metadata": {"$model": FACTORY_MODEL},
            "name": self.name,
            "location": "Manufacturing Summit",
            "overallRiskScore": self.overall_risk_score,
        }

    @classmethod
    def from_twin(cls, twin: Mapping[str, Any]) -> "FactoryState":
        return cls(
            factory_id=twin["$dtId"],
            name=twin.get("name", FACTORY_NAME),
            overall_risk_score=float(twin.get("overallRiskScore", 0.0)),
        )


@dataclass(frozen=True)
class TelemetryReading:
    """One immutable telemetry row."""

    machine_id: str
    timestamp: datetime
    reading: SensorReading
    risk_score: float
    predicted_failure_date: Optional[datetime]
    throughput_forecast: float
    energy_deviation_kw: float
    is_injected: bool = False

    def to_record(self) -> Dict[str, Any]:
        """Flat record with string timestamps, the shape both stores persist."""
        return {
            "machine_id": self.machine_id,
            "timestamp": format_timestamp(self.timestamp),
            **self.reading.to_dict(),
            "risk_score": self.risk_score,
            "predicted_failure_date": (
                format_timestamp(self.predicted_failure_date)
                if self.predicted_failure_date
                else ""
            ),
            "throughput_forecast": self.throughput_forecast,
            "energy_deviation_kw": self.energy_deviation_kw,
            "is_injected": self.is_injected,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "TelemetryReading":
        return cls(
            machine_id=record["machine_id"],
            timestamp=parse_timestamp(record["timestamp"]),
            reading=SensorReading(
                temperature_c=float(record["temperature_c"]),
                vibration_mm_s=float(record["vibration_mm_s"]),
                power_kw=float(record["power_kw"]),
                cycle_time_s=float(record["cycle_time_s"]),
            ),
            risk_score=float(record["risk_score"]),
            predicted_failure_date=parse_timestamp(record.get("predicted_failure_date")),
            throughput_forecast=float(record.get("throughput_forecast") or 0.0),
            energy_deviation_kw=float(record["energy_deviation_kw"]),
            is_injected=bool(record.get("is_injected", False)),
        )


@dataclass
class CascadeResult:
    """Outcome of applying one reading: the three recomputed levels."""

    machine: MachineState
    line: LineState
    factory: FactoryState
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "machine": self.machine.to_dict(),
            "line": self.line.to_dict(),
            "factory": self.factory.to_dict(),
            "warnings": list(self.warnings),
        }


@dataclass
class ResetResult:
    """Outcome of a reset: the factory, all lines, and the machines reset."""

    factory: FactoryState
    lines: List[LineState]
    machines: List[MachineState] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "factory": self.factory.to_dict(),
            "lines": [line.to_dict() for line in self.lines],
            "machines": [machine.to_dict() for machine in self.machines],
            "warnings": list(self.warnings),
        }


@dataclass
class SeedResult:
    """Counts reported by a bulk seed."""

    entities_created: int
    relationships_created: int
    telemetry_row_count: int

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def build_twin_graph(
    factory: FactoryState,
    lines: List[LineState],
    machines: List[MachineState],
) -> Dict[str, Any]:
    """Nest factory -> lines -> machines as one twin-shaped document."""
    graph = factory.to_twin()
    graph["digitalTwinsId"] = factory.factory_id
    graph["lines"] = []
    for line in sorted(lines, key=lambda l: l.line_id):
        line_twin = line.to_twin()
        line_twin["digitalTwinsId"] = line.line_id
        line_twin["machines"] = [
            dict(machine.to_twin(), digitalTwinsId=machine.machine_id)
            for machine in sorted(machines, key=lambda m: m.machine_id)
            if machine.line_id == line.line_id
        ]
        graph["lines"].append(line_twin)
    return graph


def build_relationships(
    factory_id: str,
    line_ids: List[str],
    machine_ids: List[str],
    include_part_of: bool = False,
) -> List[Dict[str, str]]:
    """Flat relationship list: hasLines, hasMachines and optionally partOf."""
    relationships = [
        {
            "$relationshipId": f"{factory_id}-hasLines-{line_id}",
            "$sourceId": factory_id,
            "$targetId": line_id,
            "$relationshipName": "hasLines",
        }
        for line_id in sorted(line_ids)
    ]
    for machine_id in sorted(machine_ids):
        line_id = line_id_for(machine_id)
        relationships.append(
            {
                "$relationshipId": f"{line_id}-hasMachines-{machine_id}",
                "$sourceId": line_id,
                "$targetId": machine_id,
                "$relationshipName": "hasMachines",
            }
        )
        if include_part_of:
            relationships.append(
                {
                    "$relationshipId": f"{machine_id}-partOf-{line_id}",
                    "$sourceId": machine_id,
                    "$targetId": line_id,
                    "$relationshipName": "partOf",
                }
            )
    return relationships
