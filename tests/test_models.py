"""Tests for the domain model."""

from datetime import datetime, timedelta, timezone

import pytest

from risk_radar.errors import ValidationError
from risk_radar.models import (
    MACHINE_MODEL,
    FactoryState,
    LineState,
    MachineState,
    MachineStatus,
    SensorReading,
    TelemetryReading,
    build_relationships,
    build_twin_graph,
    format_timestamp,
    line_id_for,
    machine_ids_for,
    parse_timestamp,
)

from conftest import NOW, WORN


class TestIdentifiers:
    """Tests for id helpers."""

    def test_line_id_for(self):
        assert line_id_for("L2-M4") == "L2"

    def test_machine_ids_for(self):
        ids = machine_ids_for()
        assert len(ids) == 15
        assert ids[0] == "L1-M1"
        assert ids[-1] == "L3-M5"


class TestTimestamps:
    """Tests for timestamp formatting."""

    def test_format(self):
        value = datetime(2026, 1, 2, 3, 4, 5, 678901, tzinfo=timezone.utc)
        assert format_timestamp(value) == "2026-01-02T03:04:05.678Z"

    def test_naive_is_utc(self):
        assert format_timestamp(datetime(2026, 1, 1)) == "2026-01-01T00:00:00.000Z"

    def test_converts_to_utc(self):
        value = datetime(2026, 1, 1, 2, 0, tzinfo=timezone(timedelta(hours=2)))
        assert format_timestamp(value) == "2026-01-01T00:00:00.000Z"

    def test_lexical_order_is_chronological(self):
        values = [NOW + timedelta(minutes=m) for m in (-600, -1, 0, 1, 5000)]
        assert sorted(format_timestamp(v) for v in values) == [format_timestamp(v) for v in values]

    def test_parse(self):
        assert parse_timestamp("2026-01-02T09:30:00.000Z") == NOW
        assert parse_timestamp("2026-01-02T09:30:00") == NOW
        assert parse_timestamp("") is None
        assert parse_timestamp(None) is None


class TestSensorReading:
    """Tests for partial overrides."""

    def test_with_overrides(self):
        updated = WORN.with_overrides({"temperature_c": 98, "power_kw": None})
        assert updated == SensorReading(98.0, 4.6, 16.0, 33.0)

    def test_no_overrides(self):
        assert WORN.with_overrides(None) is WORN
        assert WORN.with_overrides({}) is WORN

    def test_unknown_field(self):
        with pytest.raises(ValidationError) as exc_info:
            WORN.with_overrides({"pressure": 1})
        assert exc_info.value.field == "pressure"


class TestTwinDocuments:
    """Tests for twin conversion."""

    def test_machine_round_trip(self):
        machine = MachineState(
            machine_id="L1-M1",
            line_id="L1",
            name="L1-M1",
            status=MachineStatus.WARNING,
            reading=WORN,
            risk_score=0.8,
            predicted_failure_date=NOW,
            energy_deviation_kw=2.0,
        )

        twin = machine.to_twin()

        assert twin["$metadata"]["$model"] == MACHINE_MODEL
        assert twin["cycleTime"] == 33.0
        assert twin["predictedFailureDate"] == "2026-01-02T09:30:00.000Z"
        assert MachineState.from_twin(twin) == machine

    def test_line_round_trip(self):
        line = LineState(line_id="L2", name="L2", risk_score=0.3, throughput_forecast=400)
        twin = line.to_twin()

        assert twin["lineCapacity"] == 480
        assert twin["currentThroughput"] == 400
        assert LineState.from_twin(twin) == line

    def test_factory_round_trip(self):
        factory = FactoryState(overall_risk_score=0.25)
        assert FactoryState.from_twin(factory.to_twin()) == factory


class TestTelemetryReading:
    """Tests for telemetry records."""

    def test_record_round_trip(self):
        reading = TelemetryReading(
            machine_id="L1-M1",
            timestamp=NOW,
            reading=WORN,
            risk_score=0.5,
            predicted_failure_date=NOW + timedelta(days=7.5),
            throughput_forecast=420.0,
            energy_deviation_kw=2.0,
            is_injected=True,
        )

        record = reading.to_record()

        assert record["timestamp"] == "2026-01-02T09:30:00.000Z"
        assert record["is_injected"] is True
        assert TelemetryReading.from_record(record) == reading


class TestGraph:
    """Tests for the nested twin graph and relationships."""

    def test_twin_graph(self):
        lines = [LineState("L2"), LineState("L1")]
        machines = [MachineState("L1-M2", "L1"), MachineState("L1-M1", "L1"), MachineState("L2-M1", "L2")]

        graph = build_twin_graph(FactoryState(), lines, machines)

        assert graph["digitalTwinsId"] == "demo-factory"
        assert [l["digitalTwinsId"] for l in graph["lines"]] == ["L1", "L2"]
        assert [m["digitalTwinsId"] for m in graph["lines"][0]["machines"]] == ["L1-M1", "L1-M2"]

    def test_relationships(self):
        rels = build_relationships("demo-factory", ["L1"], ["L1-M1", "L1-M2"])

        assert [r["$relationshipName"] for r in rels] == ["hasLines", "hasMachines", "hasMachines"]
        assert rels[1]["$relationshipId"] == "L1-hasMachines-L1-M1"

    def test_relationships_with_part_of(self):
        rels = build_relationships("demo-factory", ["L1"], ["L1-M1"], include_part_of=True)

        part_of = [r for r in rels if r["$relationshipName"] == "partOf"]
        assert part_of == [
            {
                "$relationshipId": "L1-M1-partOf-L1",
                "$sourceId": "L1-M1",
                "$targetId": "L1",
                "$relationshipName": "partOf",
            }
        ]
