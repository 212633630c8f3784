"""Configuration management for the risk radar."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import yaml

from .backends import BackendKind
from .models import (
    DEFAULT_LINE_CAPACITY,
    DEFAULT_LINE_IDS,
    DEFAULT_MACHINES_PER_LINE,
    DEFAULT_OEE,
    FACTORY_ID,
    FACTORY_NAME,
    HIGH_RISK_THRESHOLD,
    machine_ids_for,
)


@dataclass
class DatabaseConfig:
    """Relational store (strong-consistency backend)."""

    url: str = "sqlite:///data/factory.db"


@dataclass
class TwinConfig:
    """Azure Digital Twins connection."""

    instance_url: str = ""
    tenant_id: str = ""
    client_id: str = ""
    client_secret: str = ""

    def require(self) -> None:
        """Raise if any setting needed to connect is missing."""
        missing = [
            name
            for name in ("instance_url", "tenant_id", "client_id", "client_secret")
            if not getattr(self, name)
        ]
        if missing:
            raise ValueError(f"Missing Digital Twins settings: {', '.join(missing)}")


@dataclass
class TelemetryConfig:
    """Azure Data Explorer (Kusto) connection."""

    cluster_url: str = ""
    database: str = "productionriskradar"
    table: str = "Telemetry"
    tenant_id: str = ""
    client_id: str = ""
    client_secret: str = ""

    def require(self) -> None:
        """Raise if any setting needed to connect is missing."""
        missing = [
            name
            for name in ("cluster_url", "tenant_id", "client_id", "client_secret")
            if not getattr(self, name)
        ]
        if missing:
            raise ValueError(f"Missing Data Explorer settings: {', '.join(missing)}")


@dataclass
class CascadeConfig:
    """Cascade tuning."""

    telemetry_retry_backoff_s: float = 1.0
    ingest_batch_size: int = 50


@dataclass
class FactoryConfig:
    """Shape of the factory hierarchy created at provisioning."""

    factory_id: str = FACTORY_ID
    name: str = FACTORY_NAME
    line_ids: List[str] = field(default_factory=lambda: list(DEFAULT_LINE_IDS))
    machines_per_line: int = DEFAULT_MACHINES_PER_LINE
    line_capacity: float = DEFAULT_LINE_CAPACITY
    oee: float = DEFAULT_OEE
    high_risk_threshold: float = HIGH_RISK_THRESHOLD

    @property
    def machine_ids(self) -> List[str]:
        return machine_ids_for(self.line_ids, self.machines_per_line)


@dataclass
class MQTTConfig:
    """MQTT broker for the optional state publisher."""

    enabled: bool = False
    broker: str = "localhost"
    port: int = 1883
    username: str = ""
    password: str = ""
    client_id: str = "risk-radar"
    qos: int = 1
    topic_prefix: str = "risk-radar/v1"


@dataclass
class Config:
    """Main configuration container."""

    backend: BackendKind = BackendKind.SQLITE
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    twins: TwinConfig = field(default_factory=TwinConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    cascade: CascadeConfig = field(default_factory=CascadeConfig)
    factory: FactoryConfig = field(default_factory=FactoryConfig)
    mqtt: MQTTConfig = field(default_factory=MQTTConfig)

    @classmethod
    def from_yaml(cls, config_path: Path) -> "Config":
        """Load configuration from YAML file."""
        if not config_path.exists():
            return cls.default()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls._from_dict(data)

    @classmethod
    def from_env(cls, config: "Config" = None) -> "Config":
        """Load configuration from environment variables.

        Variables override the values of ``config`` (defaults when omitted).
        """
        if config is None:
            config = cls.default()

        backend = os.getenv("RISK_RADAR_BACKEND")
        if backend:
            config.backend = BackendKind(backend.lower())

        # Relational store
        db_path = os.getenv("DB_PATH")
        if db_path:
            config.database.url = f"sqlite:///{db_path}"
        config.database.url = os.getenv("DATABASE_URL", config.database.url)

        # Azure credentials are shared by both services
        tenant_id = os.getenv("AZURE_TENANT_ID", config.twins.tenant_id)
        client_id = os.getenv("AZURE_CLIENT_ID", config.twins.client_id)
        client_secret = os.getenv("AZURE_CLIENT_SECRET", config.twins.client_secret)

        config.twins.instance_url = os.getenv("ADT_INSTANCE_URL", config.twins.instance_url)
        config.twins.tenant_id = tenant_id
        config.twins.client_id = client_id
        config.twins.client_secret = client_secret

        config.telemetry.cluster_url = os.getenv("ADX_CLUSTER_URL", config.telemetry.cluster_url)
        config.telemetry.database = os.getenv("ADX_DATABASE", config.telemetry.database)
        config.telemetry.tenant_id = os.getenv("AZURE_TENANT_ID", config.telemetry.tenant_id or tenant_id)
        config.telemetry.client_id = os.getenv("AZURE_CLIENT_ID", config.telemetry.client_id or client_id)
        config.telemetry.client_secret = os.getenv(
            "AZURE_CLIENT_SECRET", config.telemetry.client_secret or client_secret
        )

        # Override MQTT settings from env
        config.mqtt.broker = os.getenv("MQTT_BROKER", config.mqtt.broker)
        config.mqtt.port = int(os.getenv("MQTT_PORT", config.mqtt.port))
        config.mqtt.username = os.getenv("MQTT_USERNAME", config.mqtt.username)
        config.mqtt.password = os.getenv("MQTT_PASSWORD", config.mqtt.password)

        return config

    @classmethod
    def default(cls) -> "Config":
        """Create default configuration: local SQLite, 3 lines of 5 machines."""
        return cls()

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary."""
        config = cls.default()

        if "backend" in data:
            config.backend = BackendKind(str(data["backend"]).lower())

        if "database" in data:
            db_data = data["database"] or {}
            config.database = DatabaseConfig(url=db_data.get("url", config.database.url))

        if "twins" in data:
            twin_data = data["twins"] or {}
            config.twins = TwinConfig(
                instance_url=twin_data.get("instance_url", config.twins.instance_url),
                tenant_id=twin_data.get("tenant_id", config.twins.tenant_id),
                client_id=twin_data.get("client_id", config.twins.client_id),
                client_secret=twin_data.get("client_secret", config.twins.client_secret),
            )

        if "telemetry" in data:
            ts_data = data["telemetry"] or {}
            config.telemetry = TelemetryConfig(
                cluster_url=ts_data.get("cluster_url", config.telemetry.cluster_url),
                database=ts_data.get("database", config.telemetry.database),
                table=ts_data.get("table", config.telemetry.table),
                tenant_id=ts_data.get("tenant_id", config.twins.tenant_id),
                client_id=ts_data.get("client_id", config.twins.client_id),
                client_secret=ts_data.get("client_secret", config.twins.client_secret),
            )

        if "cascade" in data:
            cascade_data = data["cascade"] or {}
            config.cascade = CascadeConfig(
                telemetry_retry_backoff_s=float(
                    cascade_data.get(
                        "telemetry_retry_backoff_s", config.cascade.telemetry_retry_backoff_s
                    )
                ),
                ingest_batch_size=int(
                    cascade_data.get("ingest_batch_size", config.cascade.ingest_batch_size)
                ),
            )

        if "factory" in data:
            factory_data = data["factory"] or {}
            config.factory = FactoryConfig(
                factory_id=factory_data.get("factory_id", config.factory.factory_id),
                name=factory_data.get("name", config.factory.name),
                line_ids=list(factory_data.get("line_ids", config.factory.line_ids)),
                machines_per_line=int(
                    factory_data.get("machines_per_line", config.factory.machines_per_line)
                ),
                line_capacity=float(
                    factory_data.get("line_capacity", config.factory.line_capacity)
                ),
                oee=float(factory_data.get("oee", config.factory.oee)),
                high_risk_threshold=float(
                    factory_data.get("high_risk_threshold", config.factory.high_risk_threshold)
                ),
            )

        if "mqtt" in data:
            mqtt_data = data["mqtt"] or {}
            config.mqtt = MQTTConfig(
                enabled=bool(mqtt_data.get("enabled", config.mqtt.enabled)),
                broker=mqtt_data.get("broker", config.mqtt.broker),
                port=mqtt_data.get("port", config.mqtt.port),
                username=mqtt_data.get("username", config.mqtt.username),
                password=mqtt_data.get("password", config.mqtt.password),
                client_id=mqtt_data.get("client_id", config.mqtt.client_id),
                qos=mqtt_data.get("qos", config.mqtt.qos),
                topic_prefix=mqtt_data.get("topic_prefix", config.mqtt.topic_prefix),
            )

        return config

    def to_yaml(self, path: Path) -> None:
        """Save configuration to YAML file. Secrets are not written."""
        data = {
            "backend": self.backend.value,
            "database": {"url": self.database.url},
            "twins": {"instance_url": self.twins.instance_url},
            "telemetry": {
                "cluster_url": self.telemetry.cluster_url,
                "database": self.telemetry.database,
                "table": self.telemetry.table,
            },
            "cascade": {
                "telemetry_retry_backoff_s": self.cascade.telemetry_retry_backoff_s,
                "ingest_batch_size": self.cascade.ingest_batch_size,
            },
            "factory": {
                "factory_id": self.factory.factory_id,
                "name": self.factory.name,
                "line_ids": list(self.factory.line_ids),
                "machines_per_line": self.factory.machines_per_line,
                "line_capacity": self.factory.line_capacity,
                "oee": self.factory.oee,
                "high_risk_threshold": self.factory.high_risk_threshold,
            },
            "mqtt": {
                "enabled": self.mqtt.enabled,
                "broker": self.mqtt.broker,
                "port": self.mqtt.port,
                "client_id": self.mqtt.client_id,
                "qos": self.mqtt.qos,
                "topic_prefix": self.mqtt.topic_prefix,
            },
        }

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
