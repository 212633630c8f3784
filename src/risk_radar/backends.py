"""Storage backends for the aggregation cascade.

sqlite: Strong consistency - one transaction per cascade, all-or-nothing
azure:  Eventual consistency - twin graph for current state plus a separate
        time-series store, written by independent calls
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from .errors import DependencyFailure

logger = logging.getLogger(__name__)


class BackendKind(Enum):
    """Available storage backends."""

    SQLITE = "sqlite"  # Local transactional store
    AZURE = "azure"  # Digital Twins + Data Explorer


@dataclass
class BackendFeatures:
    """Consistency guarantees offered by a backend."""

    atomic_cascade: bool = False  # machine/line/factory written in one transaction
    read_your_writes: bool = False  # queries reflect a write immediately
    rollback_on_failure: bool = False  # a failed step undoes earlier steps
    telemetry_best_effort: bool = False  # telemetry insert may degrade to a warning
    audit_log: bool = False  # inject/reset/seed actions are logged


def get_features_for_backend(kind: BackendKind) -> BackendFeatures:
    """Get the guarantees of a given backend."""
    if kind == BackendKind.SQLITE:
        return BackendFeatures(
            atomic_cascade=True,
            read_your_writes=True,
            rollback_on_failure=True,
            audit_log=True,
        )
    return BackendFeatures(telemetry_best_effort=True)


def create_cascade(
    config,
    sleep: Optional[Callable[[float], None]] = None,
):
    """Build the cascade selected by ``config.backend``.

    Clients and engines are constructed here and passed in; nothing is held
    in module globals. The cascade owns them: call ``close()`` when done.
    """
    kind = config.backend
    logger.info(f"Using {kind.value} backend")

    if kind == BackendKind.SQLITE:
        from .db import create_db_engine, create_session_factory, init_schema
        from .sql_cascade import TransactionalCascade

        engine = create_db_engine(config.database.url)
        try:
            init_schema(engine)
        except SQLAlchemyError as e:
            engine.dispose()
            raise DependencyFailure("open database", e) from e
        return TransactionalCascade(
            create_session_factory(engine),
            factory_config=config.factory,
            engine=engine,
        )

    from .azure_clients import AzureTwinStore, KustoTelemetryStore
    from .twin_cascade import TwinCascade

    kwargs = {}
    if sleep is not None:
        kwargs["sleep"] = sleep
    return TwinCascade(
        AzureTwinStore(config.twins),
        KustoTelemetryStore(config.telemetry),
        factory_config=config.factory,
        retry_backoff_s=config.cascade.telemetry_retry_backoff_s,
        ingest_batch_size=config.cascade.ingest_batch_size,
        **kwargs,
    )
