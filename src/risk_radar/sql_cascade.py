"""Aggregation cascade on the local transactional store.

Every operation runs in exactly one SQLAlchemy session and transaction
(``sessionmaker.begin()``): the machine update, the telemetry row, the line
and factory recomputation and the audit entry commit together or not at
all. Line and factory aggregates are recomputed from fresh reads inside the
transaction, so they always include the value just written. A store error
rolls the whole transaction back and is raised as ``DependencyFailure``.

Two concurrent invocations against the same line are last-write-wins; no
row locking or version column is used.
"""

import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import Engine, delete, func, insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from . import scoring
from .config import FactoryConfig
from .dataset import DatasetRow, latest_by_machine
from .db import AuditLogRow, FactoryRow, LineRow, MachineRow, TelemetryRow
from .errors import DependencyFailure, NotFound
from .models import (
    CascadeResult,
    FactoryState,
    LineState,
    MachineState,
    MachineStatus,
    ResetResult,
    SeedResult,
    SensorReading,
    TelemetryReading,
    format_timestamp,
    line_id_for,
    utc_now,
)

logger = logging.getLogger(__name__)


class TransactionalCascade:
    """Strong-consistency cascade: one transaction per invocation."""

    def __init__(
        self,
        session_factory: sessionmaker,
        factory_config: Optional[FactoryConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        engine: Optional[Engine] = None,
    ):
        self._session_factory = session_factory
        self._factory = factory_config or FactoryConfig()
        self._clock = clock
        self._engine = engine

    def close(self) -> None:
        """Dispose of the engine's connection pool, if this cascade owns one."""
        if self._engine is not None:
            self._engine.dispose()

    # --- Provisioning ---

    def provision(self) -> None:
        """Create the default factory, lines and machines if absent."""
        created = 0
        with self._transaction("provision transaction") as session:
            if session.get(FactoryRow, self._factory.factory_id) is None:
                session.add(
                    FactoryRow(
                        factory_id=self._factory.factory_id,
                        name=self._factory.name,
                        overall_risk_score=0.0,
                    )
                )
                created += 1
            for line_id in self._factory.line_ids:
                if session.get(LineRow, line_id) is None:
                    session.add(self._new_line(line_id))
                    created += 1
            session.flush()
            for machine_id in self._factory.machine_ids:
                if session.get(MachineRow, machine_id) is None:
                    session.add(self._new_machine(machine_id))
                    created += 1
        logger.info(f"Provisioned {created} entities")

    # --- Cascade operations ---

    def apply_reading(
        self, machine_id: str, overrides: Optional[Dict[str, Optional[float]]] = None
    ) -> CascadeResult:
        """Apply a (partial) sensor override and cascade it up to the factory."""
        now = self._clock()

        with self._transaction("inject transaction") as session:
            machine = session.get(MachineRow, machine_id)
            if machine is None:
                raise NotFound("Machine", machine_id)

            reading = machine.reading.with_overrides(overrides)
            scores = scoring.score_machine(reading, now, self._factory.high_risk_threshold)
            self._write_machine(machine, reading, scores, scores.status)

            telemetry = TelemetryRow.from_reading(
                TelemetryReading(
                    machine_id=machine_id,
                    timestamp=now,
                    reading=reading,
                    risk_score=scores.risk_score,
                    predicted_failure_date=scores.predicted_failure_date,
                    throughput_forecast=0.0,
                    energy_deviation_kw=scores.energy_deviation_kw,
                    is_injected=True,
                )
            )
            session.add(telemetry)

            line = self._recompute_line(session, machine.line)
            telemetry.throughput_forecast = line.throughput_forecast
            factory = self._recompute_factory(session)

            self._log_action(
                session,
                "inject",
                machine_id,
                json.dumps({**reading.to_dict(), "risk_score": scores.risk_score}),
            )

            result = CascadeResult(
                machine=machine.to_state(),
                line=line.to_state(),
                factory=factory.to_state(),
            )

        logger.info(
            f"Applied reading to {machine_id}: risk={result.machine.risk_score:.3f} "
            f"line={result.line.risk_score:.3f} factory={result.factory.overall_risk_score:.3f}"
        )
        return result

    def reset_machine(self, machine_id: Optional[str] = None) -> ResetResult:
        """Restore one machine (or all) to its last baseline reading."""
        now = self._clock()

        with self._transaction("reset transaction") as session:
            if machine_id:
                machine = session.get(MachineRow, machine_id)
                if machine is None:
                    raise NotFound("Machine", machine_id)
                machines = [machine]
            else:
                machines = list(
                    session.scalars(select(MachineRow).order_by(MachineRow.machine_id))
                )

            restored = []
            warnings = []
            for machine in machines:
                baseline = session.scalars(
                    select(TelemetryRow)
                    .where(
                        TelemetryRow.machine_id == machine.machine_id,
                        TelemetryRow.is_injected.is_(False),
                    )
                    .order_by(TelemetryRow.timestamp.desc(), TelemetryRow.id.desc())
                    .limit(1)
                ).first()
                if baseline is None:
                    warnings.append(f"No baseline reading for {machine.machine_id}")
                    logger.warning(f"No baseline reading for {machine.machine_id}, left as is")
                    continue

                reading = baseline.to_reading().reading
                scores = scoring.score_machine(reading, now, self._factory.high_risk_threshold)
                self._write_machine(machine, reading, scores, MachineStatus.RUNNING)
                restored.append(machine)

            purge = delete(TelemetryRow).where(TelemetryRow.is_injected.is_(True))
            if machine_id:
                purge = purge.where(TelemetryRow.machine_id == machine_id)
            session.execute(purge)

            line_ids = list(session.scalars(select(LineRow.line_id).order_by(LineRow.line_id)))
            lines = [self._recompute_line(session, line_id) for line_id in line_ids]
            factory = self._recompute_factory(session)

            self._log_action(
                session,
                "reset",
                machine_id,
                f"Reset {machine_id}" if machine_id else "Reset all machines",
            )

            result = ResetResult(
                factory=factory.to_state(),
                lines=[line.to_state() for line in lines],
                machines=[machine.to_state() for machine in restored],
                warnings=warnings,
            )

        logger.info(f"Reset {machine_id or 'all machines'} ({len(result.machines)} restored)")
        return result

    def seed_from_dataset(self, rows: Iterable[DatasetRow]) -> SeedResult:
        """Replace all state with a historical dataset. Idempotent."""
        rows = sorted(rows, key=lambda r: r.timestamp)
        now = self._clock()

        line_ids = sorted({row.line_id for row in rows})
        machine_ids = sorted({row.machine_id for row in rows})

        with self._transaction("seed transaction") as session:
            # Children first for the foreign keys
            for model in (TelemetryRow, AuditLogRow, MachineRow, LineRow, FactoryRow):
                session.execute(delete(model))

            session.add(
                FactoryRow(
                    factory_id=self._factory.factory_id,
                    name=self._factory.name,
                    overall_risk_score=0.0,
                )
            )
            session.add_all(self._new_line(line_id) for line_id in line_ids)
            session.flush()
            session.add_all(self._new_machine(machine_id) for machine_id in machine_ids)
            session.flush()

            if rows:
                session.execute(
                    insert(TelemetryRow),
                    [self._baseline_record(row, now) for row in rows],
                )

            for machine_id, row in latest_by_machine(rows).items():
                scores = scoring.score_machine(row.reading, now, self._factory.high_risk_threshold)
                self._write_machine(
                    session.get(MachineRow, machine_id),
                    row.reading,
                    scores,
                    MachineStatus.RUNNING,
                )

            for line_id in line_ids:
                self._recompute_line(session, line_id)
            self._recompute_factory(session)

            self._log_action(
                session, "seed", None, f"Seeded from dataset with {len(rows)} telemetry rows"
            )

        result = SeedResult(
            entities_created=1 + len(line_ids) + len(machine_ids),
            relationships_created=len(line_ids) + len(machine_ids),
            telemetry_row_count=len(rows),
        )
        logger.info(
            f"Seeded {result.entities_created} entities, "
            f"{result.telemetry_row_count} telemetry rows"
        )
        return result

    # --- Read side ---

    def get_factory(self) -> FactoryState:
        with self._session("read factory") as session:
            factory = session.get(FactoryRow, self._factory.factory_id)
            if factory is None:
                raise NotFound("Factory", self._factory.factory_id)
            return factory.to_state()

    def list_lines(self) -> List[LineState]:
        with self._session("list lines") as session:
            return [
                line.to_state()
                for line in session.scalars(select(LineRow).order_by(LineRow.line_id))
            ]

    def list_machines(self) -> List[MachineState]:
        with self._session("list machines") as session:
            return [
                machine.to_state()
                for machine in session.scalars(select(MachineRow).order_by(MachineRow.machine_id))
            ]

    def get_machine(self, machine_id: str) -> MachineState:
        with self._session("read machine") as session:
            machine = session.get(MachineRow, machine_id)
            if machine is None:
                raise NotFound("Machine", machine_id)
            return machine.to_state()

    def recent_telemetry(
        self, machine_id: Optional[str] = None, limit: int = 100
    ) -> List[TelemetryReading]:
        """Newest rows first, optionally for one machine."""
        stmt = select(TelemetryRow)
        if machine_id:
            stmt = stmt.where(TelemetryRow.machine_id == machine_id)
        stmt = stmt.order_by(TelemetryRow.timestamp.desc(), TelemetryRow.id.desc()).limit(limit)
        with self._session("query telemetry") as session:
            return [row.to_reading() for row in session.scalars(stmt)]

    def count_telemetry(self, is_injected: Optional[bool] = None) -> int:
        stmt = select(func.count()).select_from(TelemetryRow)
        if is_injected is not None:
            stmt = stmt.where(TelemetryRow.is_injected.is_(is_injected))
        with self._session("count telemetry") as session:
            return session.scalar(stmt)

    def recent_actions(self, limit: int = 10) -> List[Dict[str, Optional[str]]]:
        """Latest audit log entries, newest first."""
        stmt = select(AuditLogRow).order_by(AuditLogRow.id.desc()).limit(limit)
        with self._session("read audit log") as session:
            return [
                {
                    "timestamp": entry.timestamp,
                    "action": entry.action,
                    "machine_id": entry.machine_id,
                    "details": entry.details,
                }
                for entry in session.scalars(stmt)
            ]

    # --- Helpers ---

    @contextmanager
    def _transaction(self, step: str) -> Iterator[Session]:
        """Session inside one transaction; store errors roll back and become DependencyFailure."""
        try:
            with self._session_factory.begin() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Step '{step}' failed, rolled back: {e}")
            raise DependencyFailure(step, e) from e

    @contextmanager
    def _session(self, step: str) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Step '{step}' failed: {e}")
            raise DependencyFailure(step, e) from e

    def _new_line(self, line_id: str) -> LineRow:
        return LineRow(
            line_id=line_id,
            name=line_id,
            line_capacity=self._factory.line_capacity,
            risk_score=0.0,
            throughput_forecast=self._factory.line_capacity,
            oee=self._factory.oee,
        )

    def _new_machine(self, machine_id: str) -> MachineRow:
        return MachineRow(
            machine_id=machine_id,
            line=line_id_for(machine_id),
            name=machine_id,
            status=MachineStatus.RUNNING.value,
            temperature_c=0.0,
            vibration_mm_s=0.0,
            power_kw=0.0,
            cycle_time_s=0.0,
            risk_score=0.0,
            predicted_failure_date="",
            energy_deviation_kw=0.0,
        )

    @staticmethod
    def _write_machine(
        machine: MachineRow,
        reading: SensorReading,
        scores: scoring.MachineScores,
        status: MachineStatus,
    ) -> None:
        machine.temperature_c = reading.temperature_c
        machine.vibration_mm_s = reading.vibration_mm_s
        machine.power_kw = reading.power_kw
        machine.cycle_time_s = reading.cycle_time_s
        machine.risk_score = scores.risk_score
        machine.predicted_failure_date = format_timestamp(scores.predicted_failure_date)
        machine.energy_deviation_kw = scores.energy_deviation_kw
        machine.status = status.value

    @staticmethod
    def _recompute_line(session: Session, line_id: str) -> LineRow:
        line = session.get(LineRow, line_id)
        if line is None:
            raise NotFound("Line", line_id)
        # Autoflush makes the query see machine updates pending in this session
        risks = list(
            session.scalars(select(MachineRow.risk_score).where(MachineRow.line == line_id))
        )
        line.risk_score = scoring.line_risk(risks)
        line.throughput_forecast = scoring.line_throughput(risks, line.line_capacity)
        return line

    def _recompute_factory(self, session: Session) -> FactoryRow:
        factory = session.get(FactoryRow, self._factory.factory_id)
        if factory is None:
            raise NotFound("Factory", self._factory.factory_id)
        session.flush()
        risks = list(session.scalars(select(LineRow.risk_score)))
        factory.overall_risk_score = scoring.factory_risk(risks)
        return factory

    def _log_action(
        self, session: Session, action: str, machine_id: Optional[str], details: str
    ) -> None:
        session.add(
            AuditLogRow(
                timestamp=format_timestamp(self._clock()),
                action=action,
                machine_id=machine_id,
                details=details,
            )
        )

    def _baseline_record(self, row: DatasetRow, now: datetime) -> Dict[str, object]:
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
        ).to_record()
