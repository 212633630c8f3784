"""Aggregation cascade on the twin graph + time-series services.

Unlike the relational backend there is no transaction spanning the writes:

1. The twin store's query index may lag behind a patch. Whenever a line or
   factory aggregate is computed, the value this cascade just computed for
   the machine (or line) replaces whatever the query returned for it.
2. The telemetry insert is best-effort. A failed insert is retried once
   after a fixed backoff; if that fails too the cascade carries on and
   reports a warning.
3. Machine, line and factory patches are issued one after another. A failed
   patch stops the cascade with ``DependencyFailure``; patches that already
   landed stay in place.

Every step yields a ``StepResult`` and the orchestration branches on its
outcome. Two concurrent cascades on the same line can race and either final
value may win.
"""

import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from . import scoring
from .config import FactoryConfig
from .dataset import DatasetRow, latest_by_machine
from .errors import DependencyFailure, NotFound
from .models import (
    LINE_MODEL,
    MACHINE_MODEL,
    CascadeResult,
    FactoryState,
    LineState,
    MachineState,
    MachineStatus,
    ResetResult,
    SeedResult,
    TelemetryReading,
    build_relationships,
    format_timestamp,
    line_id_for,
    utc_now,
)
from .store import (
    ClearTelemetry,
    IngestTelemetry,
    PatchOp,
    TelemetryQuery,
    TelemetryStore,
    TwinQuery,
    TwinStore,
    replace_ops,
)

logger = logging.getLogger(__name__)


class StepOutcome(Enum):
    """Outcome of one cascade step."""

    OK = "ok"
    DEGRADED = "degraded"  # failed, but the cascade may continue
    FAILED = "failed"  # failed, the cascade must stop


@dataclass
class StepResult:
    """Result of one external call made by the cascade."""

    step: str
    outcome: StepOutcome
    attempts: int = 1
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.outcome is StepOutcome.OK


class TwinCascade:
    """Eventual-consistency cascade over a twin store and a telemetry store."""

    def __init__(
        self,
        twins: TwinStore,
        telemetry: TelemetryStore,
        factory_config: Optional[FactoryConfig] = None,
        retry_backoff_s: float = 1.0,
        ingest_batch_size: int = 50,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._twins = twins
        self._telemetry = telemetry
        self._factory = factory_config or FactoryConfig()
        self._retry_backoff_s = retry_backoff_s
        self._ingest_batch_size = ingest_batch_size
        self._sleep = sleep
        self._clock = clock

    def close(self) -> None:
        self._twins.close()
        self._telemetry.close()

    # --- Provisioning ---

    def provision(self) -> None:
        """Create the default twins and relationships if absent."""
        steps: List[StepResult] = []
        created = 0

        factory = FactoryState(factory_id=self._factory.factory_id, name=self._factory.name)
        twins = [(factory.factory_id, factory.to_twin())]
        twins += [(line.line_id, line.to_twin()) for line in map(self._new_line, self._factory.line_ids)]
        twins += [
            (machine_id, MachineState(machine_id, line_id_for(machine_id), name=machine_id).to_twin())
            for machine_id in self._factory.machine_ids
        ]

        for twin_id, document in twins:
            if self._read(steps, f"read {twin_id}", self._twins.get, twin_id) is None:
                self._require(self._call(f"create {twin_id}", self._twins.upsert, twin_id, document), steps)
                created += 1

        for relationship in build_relationships(
            self._factory.factory_id,
            self._factory.line_ids,
            self._factory.machine_ids,
            include_part_of=True,
        ):
            self._require(
                self._call(
                    f"relate {relationship['$relationshipId']}",
                    self._twins.upsert_relationship,
                    relationship,
                ),
                steps,
            )
        logger.info(f"Provisioned {created} twins")

    # --- Cascade operations ---

    def apply_reading(
        self, machine_id: str, overrides: Optional[Dict[str, Optional[float]]] = None
    ) -> CascadeResult:
        """Apply a (partial) sensor override and cascade it up to the factory."""
        now = self._clock()
        steps: List[StepResult] = []

        # Existence is checked before anything is written
        twin = self._read(steps, "read machine", self._twins.get, machine_id)
        if twin is None:
            raise NotFound("Machine", machine_id)

        current = MachineState.from_twin(twin)
        reading = current.reading.with_overrides(overrides)
        scores = scoring.score_machine(reading, now, self._factory.high_risk_threshold)
        machine = replace(
            current,
            reading=reading,
            status=scores.status,
            risk_score=scores.risk_score,
            predicted_failure_date=scores.predicted_failure_date,
            energy_deviation_kw=scores.energy_deviation_kw,
        )

        line = self._line_with_override(steps, machine)
        factory = self._factory_with_override(steps, line)

        warnings = []
        telemetry_step = self._insert_telemetry(
            TelemetryReading(
                machine_id=machine_id,
                timestamp=now,
                reading=reading,
                risk_score=scores.risk_score,
                predicted_failure_date=scores.predicted_failure_date,
                throughput_forecast=line.throughput_forecast,
                energy_deviation_kw=scores.energy_deviation_kw,
                is_injected=True,
            )
        )
        steps.append(telemetry_step)
        if telemetry_step.outcome is StepOutcome.DEGRADED:
            warnings.append(
                f"Telemetry for {machine_id} was not recorded after "
                f"{telemetry_step.attempts} attempts: {telemetry_step.error}"
            )

        self._require(
            self._call("patch machine", self._twins.patch, machine_id, self._machine_ops(machine)),
            steps,
        )
        self._require(
            self._call("patch line", self._twins.patch, line.line_id, self._line_ops(line)),
            steps,
        )
        self._require(
            self._call(
                "patch factory", self._twins.patch, factory.factory_id, self._factory_ops(factory)
            ),
            steps,
        )

        result = CascadeResult(machine=machine, line=line, factory=factory, warnings=warnings)
        logger.info(
            f"Applied reading to {machine_id}: risk={machine.risk_score:.3f} "
            f"line={line.risk_score:.3f} factory={factory.overall_risk_score:.3f}"
        )
        return result

    def reset_machine(self, machine_id: Optional[str] = None) -> ResetResult:
        """Restore one machine (or all) to its last baseline reading."""
        now = self._clock()
        steps: List[StepResult] = []
        warnings: List[str] = []

        if machine_id:
            twin = self._read(steps, "read machine", self._twins.get, machine_id)
            if twin is None:
                raise NotFound("Machine", machine_id)
            targets = [MachineState.from_twin(twin)]
        else:
            targets = [
                MachineState.from_twin(t)
                for t in self._read(
                    steps, "query machines", self._twins.query, TwinQuery(model=MACHINE_MODEL)
                )
            ]

        restored: Dict[str, MachineState] = {}
        for machine in sorted(targets, key=lambda m: m.machine_id):
            baseline = self._read(
                steps,
                f"query baseline {machine.machine_id}",
                self._telemetry.query,
                TelemetryQuery(
                    machine_id=machine.machine_id, is_injected=False, newest_first=True, limit=1
                ),
            )
            if not baseline:
                warnings.append(f"No baseline reading for {machine.machine_id}")
                logger.warning(f"No baseline reading for {machine.machine_id}, left as is")
                continue

            reading = baseline[0].reading
            scores = scoring.score_machine(reading, now, self._factory.high_risk_threshold)
            state = replace(
                machine,
                reading=reading,
                status=MachineStatus.RUNNING,
                risk_score=scores.risk_score,
                predicted_failure_date=scores.predicted_failure_date,
                energy_deviation_kw=scores.energy_deviation_kw,
            )
            self._require(
                self._call(
                    f"patch machine {machine.machine_id}",
                    self._twins.patch,
                    machine.machine_id,
                    self._machine_ops(state),
                ),
                steps,
            )
            restored[machine.machine_id] = state

        self._require(
            self._call(
                "delete injected telemetry",
                self._telemetry.delete,
                TelemetryQuery(machine_id=machine_id, is_injected=True),
            ),
            steps,
        )

        # The query may still return pre-reset values; restored states win
        machines = [
            restored.get(m.machine_id, m)
            for m in map(
                MachineState.from_twin,
                self._read(steps, "query machines", self._twins.query, TwinQuery(model=MACHINE_MODEL)),
            )
        ]
        line_twins = self._read(steps, "query lines", self._twins.query, TwinQuery(model=LINE_MODEL))

        lines = []
        for line in sorted(map(LineState.from_twin, line_twins), key=lambda l: l.line_id):
            risks = [m.risk_score for m in machines if m.line_id == line.line_id]
            line = replace(
                line,
                risk_score=scoring.line_risk(risks),
                throughput_forecast=scoring.line_throughput(risks, line.capacity),
            )
            self._require(
                self._call(f"patch line {line.line_id}", self._twins.patch, line.line_id, self._line_ops(line)),
                steps,
            )
            lines.append(line)

        factory_twin = self._read(steps, "read factory", self._twins.get, self._factory.factory_id)
        if factory_twin is None:
            raise NotFound("Factory", self._factory.factory_id)
        factory = replace(
            FactoryState.from_twin(factory_twin),
            overall_risk_score=scoring.factory_risk([line.risk_score for line in lines]),
        )
        self._require(
            self._call(
                "patch factory", self._twins.patch, factory.factory_id, self._factory_ops(factory)
            ),
            steps,
        )

        result = ResetResult(
            factory=factory,
            lines=lines,
            machines=list(restored.values()),
            warnings=warnings,
        )
        logger.info(f"Reset {machine_id or 'all machines'} ({len(restored)} restored)")
        return result

    def seed_from_dataset(self, rows: Iterable[DatasetRow]) -> SeedResult:
        """Rebuild every twin and the telemetry table from a dataset. Idempotent."""
        rows = sorted(rows, key=lambda r: r.timestamp)
        now = self._clock()
        steps: List[StepResult] = []

        line_ids = sorted({row.line_id for row in rows})
        machine_ids = sorted({row.machine_id for row in rows})

        # Relationships must go before the twins they connect
        existing = self._read(steps, "query twins", self._twins.query, TwinQuery())
        for twin in existing:
            self._require(
                self._call("delete relationships", self._twins.delete_relationships, twin["$dtId"]),
                steps,
            )
        for twin in existing:
            self._require(self._call("delete twin", self._twins.delete, twin["$dtId"]), steps)

        machines = {}
        for machine_id, row in latest_by_machine(rows).items():
            scores = scoring.score_machine(row.reading, now, self._factory.high_risk_threshold)
            machines[machine_id] = MachineState(
                machine_id=machine_id,
                line_id=row.line_id,
                name=machine_id,
                status=MachineStatus.RUNNING,
                reading=row.reading,
                risk_score=scores.risk_score,
                predicted_failure_date=scores.predicted_failure_date,
                energy_deviation_kw=scores.energy_deviation_kw,
            )

        lines = []
        for line_id in line_ids:
            risks = [m.risk_score for m in machines.values() if m.line_id == line_id]
            line = self._new_line(line_id)
            lines.append(
                replace(
                    line,
                    risk_score=scoring.line_risk(risks),
                    throughput_forecast=scoring.line_throughput(risks, line.capacity),
                )
            )
        factory = FactoryState(
            factory_id=self._factory.factory_id,
            name=self._factory.name,
            overall_risk_score=scoring.factory_risk([line.risk_score for line in lines]),
        )

        documents = [(factory.factory_id, factory.to_twin())]
        documents += [(line.line_id, line.to_twin()) for line in lines]
        documents += [(m.machine_id, m.to_twin()) for m in machines.values()]
        for twin_id, document in documents:
            self._require(self._call(f"create {twin_id}", self._twins.upsert, twin_id, document), steps)

        relationships = build_relationships(
            factory.factory_id, line_ids, machine_ids, include_part_of=True
        )
        for relationship in relationships:
            self._require(
                self._call("create relationship", self._twins.upsert_relationship, relationship),
                steps,
            )

        self._require(
            self._call("clear telemetry", self._telemetry.execute, ClearTelemetry()), steps
        )
        history = [self._baseline_reading(row, now) for row in rows]
        for start in range(0, len(history), self._ingest_batch_size):
            batch = tuple(history[start:start + self._ingest_batch_size])
            self._require(
                self._call(
                    f"ingest telemetry batch {start // self._ingest_batch_size + 1}",
                    self._telemetry.execute,
                    IngestTelemetry(rows=batch),
                ),
                steps,
            )

        result = SeedResult(
            entities_created=len(documents),
            relationships_created=len(relationships),
            telemetry_row_count=len(rows),
        )
        logger.info(
            f"Seeded {result.entities_created} twins, {result.relationships_created} "
            f"relationships, {result.telemetry_row_count} telemetry rows"
        )
        return result

    # --- Read side ---

    def get_factory(self) -> FactoryState:
        twin = self._read([], "read factory", self._twins.get, self._factory.factory_id)
        if twin is None:
            raise NotFound("Factory", self._factory.factory_id)
        return FactoryState.from_twin(twin)

    def list_lines(self) -> List[LineState]:
        twins = self._read([], "query lines", self._twins.query, TwinQuery(model=LINE_MODEL))
        return sorted(map(LineState.from_twin, twins), key=lambda l: l.line_id)

    def list_machines(self) -> List[MachineState]:
        twins = self._read([], "query machines", self._twins.query, TwinQuery(model=MACHINE_MODEL))
        return sorted(map(MachineState.from_twin, twins), key=lambda m: m.machine_id)

    def get_machine(self, machine_id: str) -> MachineState:
        twin = self._read([], "read machine", self._twins.get, machine_id)
        if twin is None:
            raise NotFound("Machine", machine_id)
        return MachineState.from_twin(twin)

    def recent_telemetry(
        self, machine_id: Optional[str] = None, limit: int = 100
    ) -> List[TelemetryReading]:
        return self._read(
            [],
            "query telemetry",
            self._telemetry.query,
            TelemetryQuery(machine_id=machine_id, newest_first=True, limit=limit),
        )

    # --- Aggregation with staleness override ---

    def _line_with_override(self, steps: List[StepResult], machine: MachineState) -> LineState:
        """Line aggregate with ``machine`` substituted for its stored twin."""
        line_twin = self._read(steps, "read line", self._twins.get, machine.line_id)
        if line_twin is None:
            raise NotFound("Line", machine.line_id)

        siblings = self._read(
            steps,
            "query line machines",
            self._twins.query,
            TwinQuery(model=MACHINE_MODEL, id_prefix=f"{machine.line_id}-"),
        )
        risks = {twin["$dtId"]: float(twin.get("riskScore", 0.0)) for twin in siblings}
        risks[machine.machine_id] = machine.risk_score
        values = [risks[k] for k in sorted(risks)]

        line = LineState.from_twin(line_twin)
        return replace(
            line,
            risk_score=scoring.line_risk(values),
            throughput_forecast=scoring.line_throughput(values, line.capacity),
        )

    def _factory_with_override(self, steps: List[StepResult], line: LineState) -> FactoryState:
        """Factory aggregate with ``line`` substituted for its stored twin."""
        factory_twin = self._read(steps, "read factory", self._twins.get, self._factory.factory_id)
        if factory_twin is None:
            raise NotFound("Factory", self._factory.factory_id)

        line_twins = self._read(steps, "query lines", self._twins.query, TwinQuery(model=LINE_MODEL))
        risks = {twin["$dtId"]: float(twin.get("riskScore", 0.0)) for twin in line_twins}
        risks[line.line_id] = line.risk_score
        values = [risks[k] for k in sorted(risks)]

        return replace(
            FactoryState.from_twin(factory_twin),
            overall_risk_score=scoring.factory_risk(values),
        )

    # --- Steps ---

    def _call(self, step: str, fn: Callable[..., Any], *args: Any) -> StepResult:
        try:
            fn(*args)
        except Exception as e:
            logger.error(f"Step '{step}' failed: {e}")
            return StepResult(step=step, outcome=StepOutcome.FAILED, error=e)
        return StepResult(step=step, outcome=StepOutcome.OK)

    def _insert_telemetry(self, reading: TelemetryReading) -> StepResult:
        """Insert with one retry after a fixed backoff; degrade instead of failing."""
        first = self._call("insert telemetry", self._telemetry.insert, reading)
        if first.ok:
            return first

        logger.warning(
            f"Telemetry insert for {reading.machine_id} failed, "
            f"retrying in {self._retry_backoff_s}s"
        )
        self._sleep(self._retry_backoff_s)
        second = self._call("insert telemetry", self._telemetry.insert, reading)
        if second.ok:
            return replace(second, attempts=2)

        logger.warning(
            f"Telemetry insert for {reading.machine_id} failed twice, continuing without it"
        )
        return StepResult(
            step="insert telemetry",
            outcome=StepOutcome.DEGRADED,
            attempts=2,
            error=second.error,
        )

    @staticmethod
    def _require(result: StepResult, steps: List[StepResult]) -> None:
        """Record a step; stop the cascade if it failed."""
        steps.append(result)
        if result.outcome is StepOutcome.FAILED:
            completed = [s.step for s in steps if s.ok]
            raise DependencyFailure(result.step, result.error, completed) from result.error

    def _read(self, steps: List[StepResult], step: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        except Exception as e:
            logger.error(f"Step '{step}' failed: {e}")
            completed = [s.step for s in steps if s.ok]
            raise DependencyFailure(step, e, completed) from e

    # --- Patch documents ---

    @staticmethod
    def _machine_ops(machine: MachineState) -> List[PatchOp]:
        return replace_ops(
            {
                "status": machine.status.value,
                "temperature": machine.reading.temperature_c,
                "vibration": machine.reading.vibration_mm_s,
                "power": machine.reading.power_kw,
                "cycleTime": machine.reading.cycle_time_s,
                "riskScore": machine.risk_score,
                "predictedFailureDate": format_timestamp(machine.predicted_failure_date),
                "energyDeviation": machine.energy_deviation_kw,
            }
        )

    @staticmethod
    def _line_ops(line: LineState) -> List[PatchOp]:
        return replace_ops(
            {
                "riskScore": line.risk_score,
                "throughputForecast": line.throughput_forecast,
                "currentThroughput": line.throughput_forecast,
            }
        )

    @staticmethod
    def _factory_ops(factory: FactoryState) -> List[PatchOp]:
        return replace_ops({"overallRiskScore": factory.overall_risk_score})

    def _new_line(self, line_id: str) -> LineState:
        return LineState(
            line_id=line_id,
            name=line_id,
            capacity=self._factory.line_capacity,
            risk_score=0.0,
            throughput_forecast=self._factory.line_capacity,
            oee=self._factory.oee,
        )

    def _baseline_reading(self, row: DatasetRow, now: datetime) -> TelemetryReading:
        scores = scoring.score_machine(row.reading, now, self._factory.high_risk_threshold)
        return TelemetryReading(
            machine_id=row.machine_id,
            timestamp=row.timestamp,
            reading=row.reading,
            risk_score=scores.risk_score,
            predicted_failure_date=scores.predicted_failure_date,
            throughput_forecast=row.throughput_forecast or 0.0,
            energy_deviation_kw=scores.energy_deviation_kw,
            is_injected=False,
        )
