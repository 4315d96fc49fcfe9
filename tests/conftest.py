"""Pytest configuration and shared fixtures."""

import asyncio
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import pytest
import pytest_asyncio

from libs.datasources.connectors.base import (
    ConnectionError,
    ConnectionStatus,
    DataWarehouseConnector,
    QueryError,
    QueryMetadata,
    QueryResult,
    TableInfo,
)
from libs.datasources.connectors.clickhouse import (
    ManagedClickHouseConnector,
    ManagedClickHouseProvisioner,
)
from libs.datasources.permissions import Organization, RequestContext
from libs.datasources.registry import default_managed_settings
from libs.datasources.schemas import DataSourceType
from libs.datasources.services import DataSourceServices
from libs.datasources.settings import DataSourcesConfig
from libs.datasources.storage.database import DatabaseManager
from libs.datasources.vault import CredentialVault

ORG_ID = "org_test"
MANAGED_DATASOURCE_ID = "ds_managed"
CLICKHOUSE_DATASOURCE_ID = "ds_clickhouse"

MANAGED_PARAMS = {
    "host": "clickhouse.internal",
    "port": 8443,
    "username": "ds_managed_reader",
    "password": "managed-secret",
    "database": "analytics",
    "events_table": "events",
}
CLICKHOUSE_PARAMS = {
    "host": "warehouse.customer.example",
    "port": 8443,
    "username": "analyst",
    "password": "customer-secret",
    "database": "default",
}

EVENTS_TABLE_COLUMNS = [
    ("timestamp", "DateTime64(3)"),
    ("datasource_id", "LowCardinality(String)"),
    ("event_name", "LowCardinality(String)"),
    ("properties_json", "String"),
    ("user_id", "String"),
    ("device_id", "String"),
    ("geo_country", "LowCardinality(String)"),
]

_ADD_COLUMN = re.compile(
    r"ADD COLUMN IF NOT EXISTS (\w+) (\S+) MATERIALIZED", re.IGNORECASE
)
_RENAME_COLUMN = re.compile(r"RENAME COLUMN IF EXISTS (\w+) TO (\w+)", re.IGNORECASE)
_DROP_COLUMN = re.compile(r"DROP COLUMN IF EXISTS (\w+)", re.IGNORECASE)
_SLICE_DIMENSION = re.compile(r"SELECT (\w+) AS dimension_value")
_LIMIT = re.compile(r"LIMIT (\d+)\s*$")


@dataclass
class FakeWarehouse:
    """
    In-memory stand-in for a ClickHouse cluster.

    ALTER statements are applied to ``columns`` so tests can assert on the
    physical table the way the warehouse would report it.
    """

    columns: list[tuple[str, str]] = field(
        default_factory=lambda: list(EVENTS_TABLE_COLUMNS)
    )
    executed: list[str] = field(default_factory=list)
    killed: list[str] = field(default_factory=list)
    slices: dict[str, list[tuple[Any, int]]] = field(default_factory=dict)
    result_columns: list[str] = field(default_factory=lambda: ["id", "value"])
    result_rows: list[list[Any]] = field(default_factory=lambda: [[1, "a"], [2, "b"]])
    describe_columns: list[tuple[str, str]] | None = None
    fail_when: Callable[[str], bool] | None = None
    connect_error: bool = False
    healthy: bool = True
    hold_slice_queries: bool = False
    release: asyncio.Event = field(default_factory=asyncio.Event)

    def column_names(self) -> list[str]:
        return [name for name, _ in self.columns]

    def ddl(self) -> list[str]:
        return [sql for sql in self.executed if sql.startswith("ALTER")]

    async def execute(
        self, query: str, params: dict[str, Any] | None, query_id: str | None
    ) -> tuple[list[str], list[list[Any]]]:
        statement = " ".join(query.split())
        self.executed.append(statement)
        if self.fail_when and self.fail_when(statement):
            raise QueryError("Code: 44. DB::Exception: simulated failure", query)

        if statement.startswith("ALTER"):
            if match := _ADD_COLUMN.search(statement):
                if match.group(1) not in self.column_names():
                    self.columns.append((match.group(1), match.group(2)))
            elif match := _RENAME_COLUMN.search(statement):
                self.columns = [
                    (match.group(2) if name == match.group(1) else name, type_)
                    for name, type_ in self.columns
                ]
            elif match := _DROP_COLUMN.search(statement):
                self.columns = [c for c in self.columns if c[0] != match.group(1)]
            return [], []

        if statement.startswith("KILL QUERY"):
            self.killed.append((params or {})["query_id"])
            self.release.set()
            return [], []

        if "system.columns" in statement:
            return (
                ["name", "type", "default_expression", "comment"],
                [[name, type_, "", ""] for name, type_ in self.columns],
            )

        if statement.startswith("DESCRIBE"):
            columns = self.describe_columns or self.columns
            return ["name", "type"], [[name, type_] for name, type_ in columns]

        if match := _SLICE_DIMENSION.search(statement):
            if self.hold_slice_queries:
                await self.release.wait()
                if query_id in self.killed:
                    raise QueryError("Query was cancelled", query)
            values = sorted(
                self.slices.get(match.group(1), []), key=lambda v: v[1], reverse=True
            )
            total = sum(units for _, units in values)
            limit = int(_LIMIT.search(statement).group(1))
            return (
                ["dimension_value", "units", "total_units"],
                [[value, units, total] for value, units in values[:limit]],
            )

        return list(self.result_columns), [list(row) for row in self.result_rows]

    def connector_factory(
        self, datasource_type: DataSourceType, params: dict[str, Any]
    ) -> DataWarehouseConnector:
        if datasource_type == DataSourceType.MANAGED_CLICKHOUSE:
            return FakeManagedClickHouseConnector(params, self)
        return FakeConnector(params, self, datasource_type)


async def _fake_result(
    warehouse: FakeWarehouse,
    query: str,
    params: dict[str, Any] | None,
    query_id: str | None,
) -> QueryResult:
    columns, rows = await warehouse.execute(query, params, query_id)
    return QueryResult(
        columns=columns,
        data=rows,
        metadata=QueryMetadata(query_id=query_id, execution_time_ms=0),
        total_rows=len(rows),
    )


class FakeManagedClickHouseConnector(ManagedClickHouseConnector):
    """Managed ClickHouse connector whose driver is a ``FakeWarehouse``."""

    def __init__(self, connection_params: dict[str, Any], warehouse: FakeWarehouse):
        super().__init__(connection_params)
        self.warehouse = warehouse

    async def connect(self) -> None:
        if self.warehouse.connect_error:
            self._status = ConnectionStatus.ERROR
            raise ConnectionError(
                "Failed to connect to ClickHouse: password=hunter2 rejected",
                self._get_datasource_type(),
            )
        self._status = ConnectionStatus.CONNECTED

    async def disconnect(self) -> None:
        self._status = ConnectionStatus.DISCONNECTED

    async def test_connection(self) -> bool:
        return self.warehouse.healthy

    async def execute_query(
        self,
        query: str,
        params: dict[str, Any] | None = None,
        timeout: int | None = None,
        query_id: str | None = None,
    ) -> QueryResult:
        return await _fake_result(self.warehouse, query, params, query_id)


class FakeConnector(DataWarehouseConnector):
    """Connector for any other warehouse kind, backed by a ``FakeWarehouse``."""

    def __init__(
        self,
        connection_params: dict[str, Any],
        warehouse: FakeWarehouse,
        datasource_type: DataSourceType,
    ):
        super().__init__(connection_params)
        self.warehouse = warehouse
        self._datasource_type = datasource_type

    def _get_datasource_type(self) -> DataSourceType:
        return self._datasource_type

    async def connect(self) -> None:
        if self.warehouse.connect_error:
            raise ConnectionError("Connection refused", self._datasource_type)
        self._status = ConnectionStatus.CONNECTED

    async def disconnect(self) -> None:
        self._status = ConnectionStatus.DISCONNECTED

    async def test_connection(self) -> bool:
        return self.warehouse.healthy

    async def execute_query(
        self,
        query: str,
        params: dict[str, Any] | None = None,
        timeout: int | None = None,
        query_id: str | None = None,
    ) -> QueryResult:
        return await _fake_result(self.warehouse, query, params, query_id)

    async def get_table_info(
        self, table_name: str, schema_name: str | None = None
    ) -> TableInfo:
        return TableInfo(name=table_name, schema_name=schema_name, columns=[])


class FakeProvisioner(ManagedClickHouseProvisioner):
    def __init__(self, admin_params: dict[str, Any], warehouse: FakeWarehouse):
        super().__init__(admin_params)
        self.warehouse = warehouse

    def _create_connector(self):
        return FakeManagedClickHouseConnector(self.admin_params, self.warehouse)


@pytest.fixture
def settings():
    """Settings isolated from the environment and any .env file."""
    return DataSourcesConfig(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        encryption_key=None,
    )


@pytest.fixture
def vault():
    return CredentialVault(CredentialVault.generate_key())


@pytest.fixture
def warehouse():
    return FakeWarehouse()


@pytest_asyncio.fixture
async def database():
    """Fresh in-memory product database per test."""
    manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await manager.create_all_tables()
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def services(database, settings, vault, warehouse):
    services = DataSourceServices.from_database(
        database,
        settings,
        vault=vault,
        connector_factory=warehouse.connector_factory,
    )
    services.registry.provisioner_factory = lambda: FakeProvisioner(
        settings.managed_clickhouse.admin_params(), warehouse
    )
    return services


@pytest.fixture
def ctx():
    return RequestContext(organization=Organization(id=ORG_ID), user_id="u_1")


@pytest_asyncio.fixture
async def managed_datasource(services, vault):
    """Managed ClickHouse data source with the default exposure queries."""
    return await services.datasources.create(
        ORG_ID,
        "Managed ClickHouse",
        DataSourceType.MANAGED_CLICKHOUSE.value,
        vault.encrypt(MANAGED_PARAMS),
        default_managed_settings().to_document(),
        id=MANAGED_DATASOURCE_ID,
    )


@pytest_asyncio.fixture
async def clickhouse_datasource(services, vault):
    """Customer-run ClickHouse data source."""
    return await services.datasources.create(
        ORG_ID,
        "Customer ClickHouse",
        DataSourceType.CLICKHOUSE.value,
        vault.encrypt(CLICKHOUSE_PARAMS),
        {"events": {}},
        id=CLICKHOUSE_DATASOURCE_ID,
        projects=["prj_a"],
    )
