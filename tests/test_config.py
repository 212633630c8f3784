"""Tests for configuration loading."""

import pytest
import yaml

from risk_radar.backends import BackendKind
from risk_radar.config import Config, TelemetryConfig, TwinConfig

ENV_VARS = (
    "RISK_RADAR_BACKEND",
    "DATABASE_URL",
    "DB_PATH",
    "ADT_INSTANCE_URL",
    "ADX_CLUSTER_URL",
    "ADX_DATABASE",
    "AZURE_TENANT_ID",
    "AZURE_CLIENT_ID",
    "AZURE_CLIENT_SECRET",
    "MQTT_BROKER",
    "MQTT_PORT",
    "MQTT_USERNAME",
    "MQTT_PASSWORD",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestDefaults:
    """Tests for the default configuration."""

    def test_default(self):
        config = Config.default()

        assert config.backend == BackendKind.SQLITE
        assert config.database.url == "sqlite:///data/factory.db"
        assert config.telemetry.database == "productionriskradar"
        assert config.telemetry.table == "Telemetry"
        assert config.cascade.telemetry_retry_backoff_s == 1.0
        assert config.cascade.ingest_batch_size == 50
        assert config.factory.high_risk_threshold == 0.7
        assert len(config.factory.machine_ids) == 15
        assert config.mqtt.enabled is False

    def test_missing_file_gives_defaults(self, tmp_path):
        assert Config.from_yaml(tmp_path / "nope.yaml") == Config.default()


class TestYaml:
    """Tests for YAML round trip."""

    def test_round_trip(self, tmp_path):
        config = Config.default()
        config.backend = BackendKind.AZURE
        config.twins.instance_url = "https://twins.example"
        config.factory.line_ids = ["L1", "L2"]
        config.cascade.ingest_batch_size = 10
        path = tmp_path / "config" / "config.yaml"

        config.to_yaml(path)
        loaded = Config.from_yaml(path)

        assert loaded.backend == BackendKind.AZURE
        assert loaded.twins.instance_url == "https://twins.example"
        assert loaded.factory.line_ids == ["L1", "L2"]
        assert loaded.cascade.ingest_batch_size == 10

    def test_secrets_not_written(self, tmp_path):
        config = Config.default()
        config.twins.client_secret = "s3cret"
        config.mqtt.password = "hunter2"
        path = tmp_path / "config.yaml"

        config.to_yaml(path)

        text = path.read_text()
        assert "s3cret" not in text
        assert "hunter2" not in text

    def test_partial_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"factory": {"machines_per_line": 2}, "mqtt": {"enabled": True}}))

        config = Config.from_yaml(path)

        assert config.factory.machine_ids == ["L1-M1", "L1-M2", "L2-M1", "L2-M2", "L3-M1", "L3-M2"]
        assert config.mqtt.enabled is True
        assert config.database.url == "sqlite:///data/factory.db"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert Config.from_yaml(path) == Config.default()


class TestEnv:
    """Tests for environment overrides."""

    def test_azure_settings(self, monkeypatch):
        monkeypatch.setenv("RISK_RADAR_BACKEND", "AZURE")
        monkeypatch.setenv("ADT_INSTANCE_URL", "https://adt.example")
        monkeypatch.setenv("ADX_CLUSTER_URL", "https://adx.example")
        monkeypatch.setenv("ADX_DATABASE", "radar")
        monkeypatch.setenv("AZURE_TENANT_ID", "tenant")
        monkeypatch.setenv("AZURE_CLIENT_ID", "client")
        monkeypatch.setenv("AZURE_CLIENT_SECRET", "secret")

        config = Config.from_env()

        assert config.backend == BackendKind.AZURE
        assert config.twins.instance_url == "https://adt.example"
        assert config.twins.client_secret == "secret"
        assert config.telemetry.cluster_url == "https://adx.example"
        assert config.telemetry.database == "radar"
        assert config.telemetry.tenant_id == "tenant"
        config.twins.require()
        config.telemetry.require()

    def test_db_path(self, monkeypatch):
        monkeypatch.setenv("DB_PATH", "/tmp/radar.db")
        assert Config.from_env().database.url == "sqlite:////tmp/radar.db"

    def test_database_url_wins(self, monkeypatch):
        monkeypatch.setenv("DB_PATH", "/tmp/radar.db")
        monkeypatch.setenv("DATABASE_URL", "sqlite:///other.db")
        assert Config.from_env().database.url == "sqlite:///other.db"

    def test_overrides_loaded_config(self, monkeypatch):
        config = Config.default()
        config.mqtt.broker = "from-file"
        monkeypatch.setenv("MQTT_PORT", "8883")

        config = Config.from_env(config)

        assert config.mqtt.broker == "from-file"
        assert config.mqtt.port == 8883


class TestRequire:
    """Tests for Azure settings checks."""

    def test_twins_missing(self):
        with pytest.raises(ValueError, match="instance_url"):
            TwinConfig(tenant_id="t", client_id="c", client_secret="s").require()

    def test_telemetry_missing(self):
        with pytest.raises(ValueError, match="cluster_url, tenant_id, client_id, client_secret"):
            TelemetryConfig().require()
