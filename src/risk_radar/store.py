"""Store capability set consumed by the cascades.

The cascades only need a handful of verbs: read an entity, patch it, query
by predicate, append history, bulk delete history and run a bulk command.
Predicates and commands are plain dataclasses here; turning them into a
backend's query language (ADT SQL, KQL) is the adapter's job.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Union

from .models import (
    CascadeResult,
    FactoryState,
    LineState,
    MachineState,
    ResetResult,
    SeedResult,
    TelemetryReading,
)


@dataclass(frozen=True)
class PatchOp:
    """One JSON-patch operation on a twin property."""

    path: str
    value: Any
    op: str = "replace"

    def to_json_patch(self) -> Dict[str, Any]:
        return {"op": self.op, "path": self.path, "value": self.value}


def replace_ops(values: Dict[str, Any]) -> List[PatchOp]:
    """Patch operations replacing each top-level property in ``values``."""
    return [PatchOp(path=f"/{name}", value=value) for name, value in values.items()]


@dataclass(frozen=True)
class TwinQuery:
    """Twins of one model, optionally restricted to an id prefix."""

    model: Optional[str] = None
    id_prefix: Optional[str] = None

    def matches(self, twin: Dict[str, Any]) -> bool:
        if self.model and twin.get("$metadata", {}).get("$model") != self.model:
            return False
        if self.id_prefix and not str(twin.get("$dtId", "")).startswith(self.id_prefix):
            return False
        return True


@dataclass(frozen=True)
class TelemetryQuery:
    """Telemetry rows filtered by machine and/or injected flag."""

    machine_id: Optional[str] = None
    is_injected: Optional[bool] = None
    newest_first: bool = True
    limit: Optional[int] = None

    def matches(self, record: Dict[str, Any]) -> bool:
        if self.machine_id is not None and record.get("machine_id") != self.machine_id:
            return False
        if self.is_injected is not None and bool(record.get("is_injected")) != self.is_injected:
            return False
        return True


@dataclass(frozen=True)
class ClearTelemetry:
    """Remove every telemetry row."""


@dataclass(frozen=True)
class IngestTelemetry:
    """Append a batch of telemetry rows in one command."""

    rows: Sequence[TelemetryReading] = field(default_factory=tuple)


TelemetryCommand = Union[ClearTelemetry, IngestTelemetry]


class TwinStore(Protocol):
    """Current-state graph store. Queries are not guaranteed fresh after a write."""

    def get(self, twin_id: str) -> Optional[Dict[str, Any]]:
        ...

    def patch(self, twin_id: str, ops: Sequence[PatchOp]) -> None:
        ...

    def query(self, query: TwinQuery) -> List[Dict[str, Any]]:
        ...

    def upsert(self, twin_id: str, document: Dict[str, Any]) -> None:
        ...

    def delete(self, twin_id: str) -> None:
        ...

    def upsert_relationship(self, relationship: Dict[str, str]) -> None:
        ...

    def delete_relationships(self, twin_id: str) -> None:
        ...

    def close(self) -> None:
        ...


class TelemetryStore(Protocol):
    """Append-only time-series store."""

    def insert(self, reading: TelemetryReading) -> None:
        ...

    def query(self, query: TelemetryQuery) -> List[TelemetryReading]:
        ...

    def delete(self, query: TelemetryQuery) -> None:
        ...

    def execute(self, command: TelemetryCommand) -> None:
        ...

    def close(self) -> None:
        ...


class RiskCascade(Protocol):
    """Operations both backends expose to the boundary (CLI)."""

    def provision(self) -> None:
        ...

    def apply_reading(
        self, machine_id: str, overrides: Optional[Dict[str, Optional[float]]] = None
    ) -> CascadeResult:
        ...

    def reset_machine(self, machine_id: Optional[str] = None) -> ResetResult:
        ...

    def seed_from_dataset(self, rows: Iterable[Any]) -> SeedResult:
        ...

    def get_factory(self) -> FactoryState:
        ...

    def list_lines(self) -> List[LineState]:
        ...

    def list_machines(self) -> List[MachineState]:
        ...

    def get_machine(self, machine_id: str) -> MachineState:
        ...

    def recent_telemetry(
        self, machine_id: Optional[str] = None, limit: int = 100
    ) -> List[TelemetryReading]:
        ...

    def close(self) -> None:
        """Release engines or clients held by the cascade."""
        ...
