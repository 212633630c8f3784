"""Relational schema for the strong-consistency backend (SQLAlchemy ORM)."""

import logging
from pathlib import Path
from typing import Optional

from sqlalchemy import Boolean, Engine, Float, ForeignKey, Index, Integer, String, Text, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import (
    FactoryState,
    LineState,
    MachineState,
    MachineStatus,
    SensorReading,
    TelemetryReading,
    format_timestamp,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class FactoryRow(Base):
    __tablename__ = "factory"

    factory_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    overall_risk_score: Mapped[float] = mapped_column(Float, default=0.0)

    def to_state(self) -> FactoryState:
        return FactoryState(
            factory_id=self.factory_id,
            name=self.name,
            overall_risk_score=self.overall_risk_score,
        )


class LineRow(Base):
    __tablename__ = "lines"

    line_id: Mapped[str] = mapped_column(String(16), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    line_capacity: Mapped[float] = mapped_column(Float, default=480)
    risk_score: Mapped[float] = mapped_column(Float, default=0.0)
    throughput_forecast: Mapped[float] = mapped_column(Float, default=480)
    oee: Mapped[float] = mapped_column(Float, default=0.85)

    def to_state(self) -> LineState:
        return LineState(
            line_id=self.line_id,
            name=self.name,
            capacity=self.line_capacity,
            risk_score=self.risk_score,
            throughput_forecast=self.throughput_forecast,
            oee=self.oee,
        )


class MachineRow(Base):
    __tablename__ = "machines"
    __table_args__ = (
        Index("idx_machines_line", "line"),
        Index("idx_machines_risk", "risk_score"),
    )

    machine_id: Mapped[str] = mapped_column(String(16), primary_key=True)
    line: Mapped[str] = mapped_column(ForeignKey("lines.line_id"))
    name: Mapped[str] = mapped_column(String(255), default="")
    status: Mapped[str] = mapped_column(String(16), default=MachineStatus.RUNNING.value)
    temperature_c: Mapped[float] = mapped_column(Float, default=0.0)
    vibration_mm_s: Mapped[float] = mapped_column(Float, default=0.0)
    power_kw: Mapped[float] = mapped_column(Float, default=0.0)
    cycle_time_s: Mapped[float] = mapped_column(Float, default=0.0)
    risk_score: Mapped[float] = mapped_column(Float, default=0.0)
    predicted_failure_date: Mapped[str] = mapped_column(String(32), default="")
    energy_deviation_kw: Mapped[float] = mapped_column(Float, default=0.0)

    @property
    def reading(self) -> SensorReading:
        return SensorReading(
            temperature_c=self.temperature_c,
            vibration_mm_s=self.vibration_mm_s,
            power_kw=self.power_kw,
            cycle_time_s=self.cycle_time_s,
        )

    def to_state(self) -> MachineState:
        return MachineState(
            machine_id=self.machine_id,
            line_id=self.line,
            name=self.name,
            status=MachineStatus(self.status),
            reading=self.reading,
            risk_score=self.risk_score,
            predicted_failure_date=parse_timestamp(self.predicted_failure_date),
            energy_deviation_kw=self.energy_deviation_kw,
        )


class TelemetryRow(Base):
    __tablename__ = "telemetry"
    __table_args__ = (
        Index("idx_telemetry_machine_time", "machine_id", "timestamp"),
        Index("idx_telemetry_risk", "risk_score"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    machine_id: Mapped[str] = mapped_column(ForeignKey("machines.machine_id"))
    timestamp: Mapped[str] = mapped_column(String(32))
    temperature_c: Mapped[float] = mapped_column(Float)
    vibration_mm_s: Mapped[float] = mapped_column(Float)
    power_kw: Mapped[float] = mapped_column(Float)
    cycle_time_s: Mapped[float] = mapped_column(Float)
    risk_score: Mapped[float] = mapped_column(Float)
    predicted_failure_date: Mapped[str] = mapped_column(String(32), default="")
    throughput_forecast: Mapped[float] = mapped_column(Float, default=0.0)
    energy_deviation_kw: Mapped[float] = mapped_column(Float)
    is_injected: Mapped[bool] = mapped_column(Boolean, default=False)

    @classmethod
    def from_reading(cls, reading: TelemetryReading) -> "TelemetryRow":
        return cls(**reading.to_record())

    def to_reading(self) -> TelemetryReading:
        return TelemetryReading.from_record(
            {
                "machine_id": self.machine_id,
                "timestamp": self.timestamp,
                "temperature_c": self.temperature_c,
                "vibration_mm_s": self.vibration_mm_s,
                "power_kw": self.power_kw,
                "cycle_time_s": self.cycle_time_s,
                "risk_score": self.risk_score,
                "predicted_failure_date": self.predicted_failure_date,
                "throughput_forecast": self.throughput_forecast,
                "energy_deviation_kw": self.energy_deviation_kw,
                "is_injected": self.is_injected,
            }
        )


class AuditLogRow(Base):
    __tablename__ = "anomaly_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[str] = mapped_column(
        String(32), default=lambda: format_timestamp(utc_now())
    )
    action: Mapped[str] = mapped_column(String(16))
    machine_id: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    details: Mapped[str] = mapped_column(Text, default="")


def create_db_engine(url: str) -> Engine:
    """Create an engine; SQLite files get WAL journaling and foreign keys."""
    if url.startswith("sqlite:///") and not url.endswith(":memory:"):
        Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url)

    if engine.dialect.name == "sqlite":

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_schema(engine: Engine) -> None:
    """Create tables and indexes. Safe to run repeatedly."""
    Base.metadata.create_all(engine)
    logger.debug(f"Schema ready on {engine.url}")
