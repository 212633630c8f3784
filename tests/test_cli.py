"""Tests for the command-line interface."""

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner
from sqlalchemy import create_engine, text

from risk_radar.cli import main

ENV_VARS = ("RISK_RADAR_BACKEND", "DATABASE_URL", "DB_PATH", "MQTT_BROKER", "MQTT_PORT")


@pytest.fixture
def runner(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return CliRunner()


@pytest.fixture
def invoke(runner, tmp_path):
    """Run the CLI against a fresh SQLite file; config.yaml is absent unless a test writes it."""
    env = {"DATABASE_URL": f"sqlite:///{tmp_path / 'factory.db'}"}
    config_path = str(tmp_path / "config.yaml")

    def _invoke(*args):
        return runner.invoke(main, ["--config", config_path, *args], env=env)

    return _invoke


@pytest.fixture
def seeded(invoke):
    result = invoke("seed", "--generate")
    assert result.exit_code == 0, result.output
    return invoke


class TestSetup:
    """Tests for init, provision, seed and generate-dataset."""

    def test_init_writes_config(self, invoke, tmp_path):
        result = invoke("init", "--output", str(tmp_path / "config"))

        assert result.exit_code == 0
        assert (tmp_path / "config" / "config.yaml").exists()

    def test_provision(self, invoke):
        result = invoke("provision")

        assert result.exit_code == 0
        assert "3 lines, 15 machines" in result.output

    def test_seed_generated(self, invoke):
        result = invoke("seed", "--generate")

        assert result.exit_code == 0
        assert "Entities created:      19" in result.output
        assert "Telemetry rows:        360" in result.output

    def test_seed_needs_a_source(self, invoke):
        assert invoke("seed").exit_code == 2

    def test_seed_from_generated_file(self, invoke, tmp_path):
        path = tmp_path / "history.csv"

        result = invoke("generate-dataset", str(path), "--hours", "2")
        assert result.exit_code == 0
        assert "Wrote 30 rows" in result.output

        result = invoke("seed", "--dataset", str(path))
        assert result.exit_code == 0
        assert "Telemetry rows:        30" in result.output


class TestInject:
    """Tests for the inject command."""

    def test_inject_json(self, seeded):
        result = seeded("inject", "L1-M2", "--temperature", "98", "--json")

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["machine"]["temperature_c"] == 98.0
        assert data["line"]["line_id"] == "L1"
        assert data["warnings"] == []

    def test_inject_summary(self, seeded):
        result = seeded("inject", "L3-M1", "--vibration", "9")

        assert result.exit_code == 0
        assert result.output.startswith("L3-M1: risk")
        assert "demo-factory: overall risk" in result.output

    def test_invalid_machine_id_is_usage_error(self, seeded):
        result = seeded("inject", "L7-M1", "--temperature", "98")

        assert result.exit_code == 2
        assert "machine_id" in result.output

    def test_out_of_range_value_is_usage_error(self, seeded):
        result = seeded("inject", "L1-M1", "--temperature", "500")

        assert result.exit_code == 2
        assert "temperature_c" in result.output

    def test_unknown_machine_exits_1(self, invoke):
        result = invoke("inject", "L1-M1", "--temperature", "98")

        assert result.exit_code == 1
        assert "Error: Machine not found: L1-M1" in result.output

    def test_store_error_exits_1(self, seeded, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'factory.db'}")
        with engine.begin() as conn:
            conn.execute(
                text(
                    "CREATE TRIGGER audit_read_only BEFORE INSERT ON anomaly_log "
                    "BEGIN SELECT RAISE(ABORT, 'audit log is read-only'); END"
                )
            )
        engine.dispose()

        result = seeded("inject", "L1-M1", "--temperature", "98")

        assert result.exit_code == 1
        assert "Error: inject transaction failed" in result.output
        latest = seeded("telemetry", "--machine", "L1-M1", "--limit", "1")
        assert " *" not in latest.output


class TestPublish:
    """Tests for publishing state after inject and reset."""

    def test_inject_publishes_after_cascade(self, seeded):
        with patch("risk_radar.publisher.mqtt_publish.multiple") as multiple:
            result = seeded("inject", "L1-M2", "--temperature", "98", "--publish")

        assert result.exit_code == 0, result.output
        topics = [m["topic"] for m in multiple.call_args[0][0]]
        assert topics == [
            "risk-radar/v1/demo-factory/L1/L1-M2/_state",
            "risk-radar/v1/demo-factory/L1/_state",
            "risk-radar/v1/demo-factory/_state",
        ]

    def test_reset_publishes_every_level(self, seeded):
        with patch("risk_radar.publisher.mqtt_publish.multiple") as multiple:
            result = seeded("reset", "--publish")

        assert result.exit_code == 0
        assert len(multiple.call_args[0][0]) == 15 + 3 + 1

    def test_broker_failure_is_a_warning(self, seeded):
        with patch(
            "risk_radar.publisher.mqtt_publish.multiple", side_effect=ConnectionRefusedError()
        ):
            result = seeded("inject", "L1-M2", "--temperature", "98", "--publish")

        assert result.exit_code == 0
        assert "Warning: state not published" in result.output
        assert "L1-M2: risk" in result.output

    def test_dry_run_sends_nothing(self, seeded):
        with patch("risk_radar.publisher.mqtt_publish.multiple") as multiple:
            result = seeded("inject", "L1-M2", "--temperature", "98", "--dry-run")

        assert result.exit_code == 0
        multiple.assert_not_called()

    def test_not_requested(self, seeded):
        with patch("risk_radar.publisher.mqtt_publish.multiple") as multiple:
            seeded("inject", "L1-M2", "--temperature", "98")

        multiple.assert_not_called()


class TestReset:
    """Tests for the reset command."""

    def test_reset_one(self, seeded):
        seeded("inject", "L1-M1", "--temperature", "98")

        result = seeded("reset", "L1-M1")

        assert result.exit_code == 0
        assert "Reset L1-M1: 1 restored" in result.output

    def test_reset_all(self, seeded):
        result = seeded("reset")

        assert result.exit_code == 0
        assert "Reset all machines: 15 restored" in result.output

    def test_reset_invalid_id(self, seeded):
        assert seeded("reset", "M1").exit_code == 2


class TestViews:
    """Tests for status, telemetry and twin."""

    def test_status(self, seeded):
        result = seeded("status")

        assert result.exit_code == 0
        assert "Backend: sqlite" in result.output
        assert "Demo Factory (demo-factory)" in result.output
        assert "L2-M5" in result.output

    def test_status_before_setup(self, invoke):
        result = invoke("status")

        assert result.exit_code == 1
        assert "Factory not found" in result.output

    def test_status_flags_only_above_threshold(self, invoke, tmp_path):
        (tmp_path / "config.yaml").write_text("factory:\n  high_risk_threshold: 0.45\n")
        invoke("seed", "--generate")
        invoke(
            "inject", "L1-M1",
            "--temperature", "60", "--vibration", "5", "--power", "14", "--cycle-time", "20",
        )
        invoke("inject", "L2-M1", "--temperature", "95", "--vibration", "5")

        result = invoke("status")

        rows = {line.split()[0]: line for line in result.output.splitlines() if line.startswith("  L")}
        assert rows["L1-M1"].endswith("risk 0.450")
        assert "Running" in rows["L1-M1"]
        assert rows["L2-M1"].endswith(" !")
        assert "Warning" in rows["L2-M1"]

    def test_telemetry(self, seeded):
        result = seeded("telemetry", "--machine", "L1-M1", "--limit", "5")

        assert result.exit_code == 0
        assert result.output.strip().endswith("5 rows")
        assert result.output.count("L1-M1") == 5

    def test_telemetry_limit_bounds(self, seeded):
        assert seeded("telemetry", "--limit", "0").exit_code == 2
        assert seeded("telemetry", "--limit", "1001").exit_code == 2

    def test_twin(self, seeded):
        result = seeded("twin")

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["twin"]["digitalTwinsId"] == "demo-factory"
        assert len(data["twin"]["lines"]) == 3
        assert len(data["relationships"]) == 18
