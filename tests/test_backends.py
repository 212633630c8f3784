"""Tests for backend selection."""

import pytest

from risk_radar.azure_clients import AzureTwinStore, KustoTelemetryStore
from risk_radar.backends import BackendKind, create_cascade, get_features_for_backend
from risk_radar.config import Config
from risk_radar.errors import DependencyFailure
from risk_radar.sql_cascade import TransactionalCascade
from risk_radar.twin_cascade import TwinCascade


class TestBackendFeatures:
    """Tests for backend guarantees."""

    def test_sqlite_is_atomic(self):
        features = get_features_for_backend(BackendKind.SQLITE)
        assert features.atomic_cascade
        assert features.rollback_on_failure
        assert features.read_your_writes
        assert not features.telemetry_best_effort

    def test_azure_is_eventual(self):
        features = get_features_for_backend(BackendKind.AZURE)
        assert not features.atomic_cascade
        assert not features.read_your_writes
        assert features.telemetry_best_effort


class TestCreateCascade:
    """Tests for create_cascade()."""

    def test_sqlite(self, tmp_path):
        config = Config.default()
        config.database.url = f"sqlite:///{tmp_path / 'factory.db'}"

        cascade = create_cascade(config)

        assert isinstance(cascade, TransactionalCascade)
        assert (tmp_path / "factory.db").exists()
        cascade.provision()
        assert len(cascade.list_machines()) == 15
        cascade.close()

    def test_sqlite_unopenable_database(self, tmp_path):
        config = Config.default()
        config.database.url = f"sqlite:///{tmp_path}"

        with pytest.raises(DependencyFailure, match="open database"):
            create_cascade(config)

    def test_azure_is_built_without_connecting(self):
        config = Config.default()
        config.backend = BackendKind.AZURE
        config.cascade.telemetry_retry_backoff_s = 0.5
        sleeps = []

        cascade = create_cascade(config, sleep=sleeps.append)

        assert isinstance(cascade, TwinCascade)
        assert isinstance(cascade._twins, AzureTwinStore)
        assert isinstance(cascade._telemetry, KustoTelemetryStore)
        assert cascade._retry_backoff_s == 0.5
        assert cascade._sleep == sleeps.append

    def test_azure_needs_settings_on_first_call(self):
        config = Config.default()
        config.backend = BackendKind.AZURE

        cascade = create_cascade(config)

        with pytest.raises(DependencyFailure) as exc_info:
            cascade.get_factory()
        assert "Missing Digital Twins settings" in str(exc_info.value)
