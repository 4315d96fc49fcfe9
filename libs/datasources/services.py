"""Wiring of repositories, integrations and services for one process."""

from dataclasses import dataclass, field

import structlog

from .analysis.base import InFlightRuns
from .analysis.dimension_slices import DimensionSlicesService
from .connectors.clickhouse import ManagedClickHouseProvisioner, get_reserved_column_names
from .fact_tables import FactTableRefresher
from .integration import ConnectorBuilder, WarehouseIntegration
from .materialized_columns import MaterializedColumnManager
from .query_service import QueryExecutionService
from .registry import DataSourceRegistry
from .sanitizer import IdentifierSanitizer
from .settings import DataSourcesConfig, get_settings
from .storage.database import DatabaseManager
from .storage.models import DataSource
from .storage.repositories import (
    DataSourceRepository,
    DependentsRepository,
    DimensionSlicesRepository,
    FactTableRepository,
    InformationSchemaRepository,
    QueryRepository,
)
from .vault import CredentialVault

logger = structlog.get_logger(__name__)


@dataclass
class DataSourceServices:
    """Everything a request handler needs, built once per process."""

    settings: DataSourcesConfig
    database: DatabaseManager
    vault: CredentialVault
    datasources: DataSourceRepository
    fact_tables: FactTableRepository
    dependents: DependentsRepository
    information_schemas: InformationSchemaRepository
    dimension_slices_runs: DimensionSlicesRepository
    queries: QueryRepository
    connector_factory: ConnectorBuilder | None = None
    in_flight: InFlightRuns = field(default_factory=InFlightRuns)

    def __post_init__(self) -> None:
        self.fact_table_refresher = FactTableRefresher(
            self.fact_tables, lookback_days=self.settings.test_query_days
        )
        # Singleton so the per data source locks are shared by every request
        self.materialized_columns = MaterializedColumnManager(
            self.datasources,
            self.integration_for,
            self.fact_table_refresher,
            IdentifierSanitizer(get_reserved_column_names),
        )
        self.query_service = QueryExecutionService(self.settings)
        self.dimension_slices = DimensionSlicesService(
            self.datasources,
            self.dimension_slices_runs,
            self.queries,
            self.integration_for,
            in_flight=self.in_flight,
            max_slices=self.settings.dimension_slices_max_slices,
            default_lookback_days=self.settings.dimension_slices_default_lookback_days,
            max_lookback_days=self.settings.dimension_slices_max_lookback_days,
        )
        self.registry = DataSourceRegistry(
            self.datasources,
            self.dependents,
            self.information_schemas,
            self.queries,
            self.vault,
            self.integration_for,
            provisioner_factory=self._provisioner,
        )

    def integration_for(self, datasource: DataSource) -> WarehouseIntegration:
        return WarehouseIntegration(
            datasource, self.vault, connector_factory=self.connector_factory
        )

    def _provisioner(self) -> ManagedClickHouseProvisioner:
        return ManagedClickHouseProvisioner(
            self.settings.managed_clickhouse.admin_params()
        )

    @classmethod
    def from_database(
        cls,
        database: DatabaseManager,
        settings: DataSourcesConfig | None = None,
        vault: CredentialVault | None = None,
        connector_factory: ConnectorBuilder | None = None,
    ) -> "DataSourceServices":
        settings = settings or get_settings()
        if vault is None:
            key = settings.encryption_key
            vault = CredentialVault(key.get_secret_value() if key else None)
        session_factory = database.async_session_factory
        logger.info("datasource_services_built", database_url=_redact(database.database_url))
        return cls(
            settings=settings,
            database=database,
            vault=vault,
            datasources=DataSourceRepository(session_factory),
            fact_tables=FactTableRepository(session_factory),
            dependents=DependentsRepository(session_factory),
            information_schemas=InformationSchemaRepository(session_factory),
            dimension_slices_runs=DimensionSlicesRepository(session_factory),
            queries=QueryRepository(session_factory),
            connector_factory=connector_factory,
        )


def _redact(database_url: str) -> str:
    scheme, sep, rest = database_url.partition("://")
    if "@" not in rest:
        return database_url
    return f"{scheme}{sep}***@{rest.rpartition('@')[2]}"
