"""Shared fixtures: a small dataset, a fixed clock and in-memory stores."""

import copy
from datetime import datetime, timedelta, timezone

import pytest

from risk_radar.dataset import DatasetRow
from risk_radar.models import SensorReading, line_id_for, machine_ids_for
from risk_radar.store import ClearTelemetry, IngestTelemetry, TelemetryQuery

START = datetime(2026, 1, 1, tzinfo=timezone.utc)
NOW = datetime(2026, 1, 2, 9, 30, tzinfo=timezone.utc)

HEALTHY = SensorReading(temperature_c=70.0, vibration_mm_s=1.5, power_kw=14.0, cycle_time_s=30.0)
WORN = SensorReading(temperature_c=70.0, vibration_mm_s=4.6, power_kw=16.0, cycle_time_s=33.0)


def build_rows(hours=2):
    """Every machine healthy, except L1-M1 which is worn in the last hour."""
    rows = []
    for hour in range(hours):
        for machine_id in machine_ids_for():
            worn = machine_id == "L1-M1" and hour == hours - 1
            rows.append(
                DatasetRow(
                    timestamp=START + timedelta(hours=hour),
                    line_id=line_id_for(machine_id),
                    machine_id=machine_id,
                    reading=WORN if worn else HEALTHY,
                    throughput_forecast=470.0,
                )
            )
    return rows


@pytest.fixture
def rows():
    return build_rows()


@pytest.fixture
def clock():
    return lambda: NOW


class FakeTwinStore:
    """Dict-backed twin store with an always-fresh query index."""

    def __init__(self):
        self.twins = {}
        self.relationships = {}
        self.patches = []
        self.fail_patch_on = set()
        self.closed = False

    def get(self, twin_id):
        twin = self.twins.get(twin_id)
        return copy.deepcopy(twin) if twin is not None else None

    def patch(self, twin_id, ops):
        if twin_id in self.fail_patch_on:
            raise ConnectionError(f"patch {twin_id} refused")
        for op in ops:
            self.twins[twin_id][op.path.lstrip("/")] = op.value
        self.patches.append(twin_id)

    def query(self, query):
        return [copy.deepcopy(t) for t in self._index().values() if query.matches(t)]

    def upsert(self, twin_id, document):
        self.twins[twin_id] = copy.deepcopy(document)

    def delete(self, twin_id):
        del self.twins[twin_id]

    def upsert_relationship(self, relationship):
        self.relationships[relationship["$relationshipId"]] = dict(relationship)

    def delete_relationships(self, twin_id):
        self.relationships = {
            rid: rel
            for rid, rel in self.relationships.items()
            if twin_id not in (rel["$sourceId"], rel["$targetId"])
        }

    def close(self):
        self.closed = True

    def _index(self):
        return self.twins


class StaleTwinStore(FakeTwinStore):
    """Query index only catches up when ``refresh()`` is called."""

    def __init__(self):
        super().__init__()
        self._snapshot = {}

    def refresh(self):
        self._snapshot = copy.deepcopy(self.twins)

    def _index(self):
        return self._snapshot


class FakeTelemetryStore:
    """List-backed telemetry store; inserts can be made to fail."""

    def __init__(self):
        self.records = []
        self.insert_failures = 0
        self.insert_attempts = 0
        self.commands = []
        self.closed = False

    def insert(self, reading):
        self.insert_attempts += 1
        if self.insert_failures > 0:
            self.insert_failures -= 1
            raise TimeoutError("ingestion timed out")
        self.records.append(reading)

    def query(self, query):
        matched = [r for r in self.records if query.matches(r.to_record())]
        matched.sort(key=lambda r: r.timestamp, reverse=query.newest_first)
        if query.limit is not None:
            matched = matched[: query.limit]
        return matched

    def delete(self, query):
        self.records = [r for r in self.records if not query.matches(r.to_record())]

    def execute(self, command):
        self.commands.append(command)
        if isinstance(command, ClearTelemetry):
            self.records = []
        elif isinstance(command, IngestTelemetry):
            self.records.extend(command.rows)

    def close(self):
        self.closed = True

    def injected(self, machine_id=None):
        return self.query(TelemetryQuery(machine_id=machine_id, is_injected=True))


@pytest.fixture
def twin_store():
    return FakeTwinStore()


@pytest.fixture
def stale_twin_store():
    return StaleTwinStore()


@pytest.fixture
def telemetry_store():
    return FakeTelemetryStore()
