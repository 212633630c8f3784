"""Azure Digital Twins and Azure Data Explorer adapters.

``AzureTwinStore`` implements the twin store on an ADT instance and
``KustoTelemetryStore`` the telemetry store on an ADX database. The Azure
SDKs are imported when a client is first built, so the relational backend
works without them configured.

The ``render_*`` functions turn store predicates and commands into ADT SQL
and KQL text. They are pure and tested on their own.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from .config import TelemetryConfig, TwinConfig
from .models import TelemetryReading
from .store import (
    ClearTelemetry,
    IngestTelemetry,
    PatchOp,
    TelemetryCommand,
    TelemetryQuery,
    TwinQuery,
)

logger = logging.getLogger(__name__)

# Column order of the Telemetry table
TELEMETRY_COLUMNS = (
    "machine_id",
    "timestamp",
    "temperature_c",
    "vibration_mm_s",
    "power_kw",
    "cycle_time_s",
    "risk_score",
    "predicted_failure_date",
    "throughput_forecast",
    "energy_deviation_kw",
    "is_injected",
)


def _quote(value: str) -> str:
    """Single-quoted string literal (ADT SQL and KQL share the escaping)."""
    return "'" + str(value).replace("\\", "\\\\").replace("'", "\\'") + "'"


def render_twin_query(query: TwinQuery) -> str:
    """ADT SQL for a twin query."""
    clauses = []
    if query.model:
        clauses.append(f"IS_OF_MODEL(T, {_quote(query.model)})")
    if query.id_prefix:
        clauses.append(f"STARTSWITH(T.$dtId, {_quote(query.id_prefix)})")
    sql = "SELECT * FROM DIGITALTWINS T"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    return sql


def _telemetry_filter(query: TelemetryQuery) -> List[str]:
    clauses = []
    if query.machine_id is not None:
        clauses.append(f"machine_id == {_quote(query.machine_id)}")
    if query.is_injected is not None:
        clauses.append(f"is_injected == {'true' if query.is_injected else 'false'}")
    return clauses


def render_telemetry_query(table: str, query: TelemetryQuery) -> str:
    """KQL selecting telemetry rows, newest (or oldest) first."""
    parts = [table]
    clauses = _telemetry_filter(query)
    if clauses:
        parts.append("where " + " and ".join(clauses))
    parts.append(f"order by timestamp {'desc' if query.newest_first else 'asc'}")
    if query.limit is not None:
        parts.append(f"take {int(query.limit)}")
    return " | ".join(parts)


def render_delete(table: str, query: TelemetryQuery) -> str:
    """KQL management command deleting the rows a query selects."""
    predicate = [table]
    clauses = _telemetry_filter(query)
    if clauses:
        predicate.append("where " + " and ".join(clauses))
    return f".delete table {table} records <| " + " | ".join(predicate)


def _csv_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render_ingest_line(reading: TelemetryReading) -> str:
    record = reading.to_record()
    return ",".join(_csv_value(record[column]) for column in TELEMETRY_COLUMNS)


def render_command(table: str, command: TelemetryCommand) -> str:
    """KQL management command for a bulk telemetry command."""
    if isinstance(command, ClearTelemetry):
        return f".clear table {table} data"
    if isinstance(command, IngestTelemetry):
        lines = [render_ingest_line(reading) for reading in command.rows]
        return f".ingest inline into table {table} <|\n" + "\n".join(lines)
    raise TypeError(f"Unsupported telemetry command: {type(command).__name__}")


class AzureTwinStore:
    """Twin store on an Azure Digital Twins instance."""

    def __init__(self, config: TwinConfig, client=None):
        self.config = config
        self._client = client

    @property
    def client(self):
        if self._client is None:
            from azure.digitaltwins.core import DigitalTwinsClient
            from azure.identity import ClientSecretCredential

            self.config.require()
            credential = ClientSecretCredential(
                self.config.tenant_id,
                self.config.client_id,
                self.config.client_secret,
            )
            self._client = DigitalTwinsClient(self.config.instance_url, credential)
            logger.info(f"Connected to Azure Digital Twins at {self.config.instance_url}")
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def get(self, twin_id: str) -> Optional[Dict[str, Any]]:
        from azure.core.exceptions import ResourceNotFoundError

        try:
            return self.client.get_digital_twin(twin_id)
        except ResourceNotFoundError:
            return None

    def patch(self, twin_id: str, ops: Sequence[PatchOp]) -> None:
        self.client.update_digital_twin(twin_id, [op.to_json_patch() for op in ops])

    def query(self, query: TwinQuery) -> List[Dict[str, Any]]:
        return list(self.client.query_twins(render_twin_query(query)))

    def upsert(self, twin_id: str, document: Dict[str, Any]) -> None:
        self.client.upsert_digital_twin(twin_id, document)

    def delete(self, twin_id: str) -> None:
        self.client.delete_digital_twin(twin_id)

    def upsert_relationship(self, relationship: Dict[str, str]) -> None:
        self.client.upsert_relationship(
            relationship["$sourceId"],
            relationship["$relationshipId"],
            relationship,
        )

    def delete_relationships(self, twin_id: str) -> None:
        """Remove outgoing and incoming relationships of a twin."""
        for relationship in list(self.client.list_relationships(twin_id)):
            self.client.delete_relationship(twin_id, relationship["$relationshipId"])
        for incoming in list(self.client.list_incoming_relationships(twin_id)):
            self.client.delete_relationship(incoming.source_id, incoming.relationship_id)


class KustoTelemetryStore:
    """Telemetry store on an Azure Data Explorer table."""

    def __init__(self, config: TelemetryConfig, client=None):
        self.config = config
        self._client = client

    @property
    def client(self):
        if self._client is None:
            from azure.kusto.data import KustoClient, KustoConnectionStringBuilder

            self.config.require()
            kcsb = KustoConnectionStringBuilder.with_aad_application_key_authentication(
                self.config.cluster_url,
                self.config.client_id,
                self.config.client_secret,
                self.config.tenant_id,
            )
            self._client = KustoClient(kcsb)
            logger.info(f"Connected to Azure Data Explorer at {self.config.cluster_url}")
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def insert(self, reading: TelemetryReading) -> None:
        self._execute_mgmt(render_command(self.config.table, IngestTelemetry(rows=(reading,))))

    def query(self, query: TelemetryQuery) -> List[TelemetryReading]:
        kql = render_telemetry_query(self.config.table, query)
        logger.debug(f"KQL: {kql}")
        response = self.client.execute(self.config.database, kql)
        if not response.primary_results:
            return []
        return [TelemetryReading.from_record(row.to_dict()) for row in response.primary_results[0]]

    def delete(self, query: TelemetryQuery) -> None:
        self._execute_mgmt(render_delete(self.config.table, query))

    def execute(self, command: TelemetryCommand) -> None:
        self._execute_mgmt(render_command(self.config.table, command))

    def _execute_mgmt(self, command: str) -> None:
        logger.debug(f"KQL command: {command.splitlines()[0]}")
        self.client.execute_mgmt(self.config.database, command)
