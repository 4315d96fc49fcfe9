"""
Uniform facade over one data source's warehouse.

A ``WarehouseIntegration`` is built from a stored data source record. Params
are decrypted once, at construction; when that fails the integration still
builds, with ``decryption_error`` set and empty params, so read paths such as
listing data sources keep working.
"""

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from functools import cached_property
from typing import Any

import structlog

from .connectors.base import (
    ColumnInfo,
    ConnectionError,
    DataWarehouseConnector,
    QueryResult,
)
from .connectors.config import get_sensitive_param_keys
from .connectors.factory import ConnectorFactory
from .exceptions import CredentialDecryptionError
from .schemas import DataSourceSettings, DataSourceType, DataSourceView, MaterializedColumn
from .storage.models import DataSource
from .vault import CredentialVault

logger = structlog.get_logger(__name__)

ConnectorBuilder = Callable[[DataSourceType, dict[str, Any]], DataWarehouseConnector]


class WarehouseIntegration:
    """Connection lifecycle, querying and DDL for a single data source."""

    def __init__(
        self,
        datasource: DataSource,
        vault: CredentialVault,
        connector_factory: ConnectorBuilder | None = None,
    ):
        self.datasource = datasource
        self.type = DataSourceType(datasource.type)
        self.settings = DataSourceSettings.model_validate(datasource.settings or {})
        self._connector_factory = (
            connector_factory or ConnectorFactory.create_connector_from_dict
        )
        self.logger = logger.bind(
            component="warehouse_integration",
            datasource_id=datasource.id,
            datasource_type=self.type.value,
        )

        self.decryption_error = False
        try:
            self.params: dict[str, Any] = vault.decrypt(datasource.params)
        except CredentialDecryptionError:
            self.logger.warning("datasource_params_undecryptable")
            self.decryption_error = True
            self.params = {}

    @property
    def id(self) -> str:
        return self.datasource.id

    @property
    def organization(self) -> str:
        return self.datasource.organization

    def _build_connector(self) -> DataWarehouseConnector:
        if self.decryption_error:
            raise CredentialDecryptionError(
                "Could not decrypt data source credentials. "
                "Re-enter the connection params to repair it."
            )
        return self._connector_factory(self.type, self.params)

    @cached_property
    def dialect(self) -> DataWarehouseConnector:
        """Unconnected connector used only for SQL generation hooks."""
        return self._build_connector()

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[DataWarehouseConnector]:
        """Open a fresh connection for one unit of work."""
        connector = self._build_connector()
        async with connector:
            yield connector

    # Params

    def merge_params(self, new_params: dict[str, Any]) -> dict[str, Any]:
        """
        Shallow-merge caller params onto the stored ones.

        A sensitive key sent back empty (as every redacted view shows it) keeps
        the stored secret.
        """
        sensitive = get_sensitive_param_keys(self.type)
        merged = dict(self.params)
        for key, value in new_params.items():
            if key in sensitive and value in ("", None):
                continue
            merged[key] = value
        return merged

    def get_non_sensitive_params(self) -> dict[str, Any]:
        params = dict(self.params)
        for key in get_sensitive_param_keys(self.type):
            if key in params:
                params[key] = ""
        return params

    def to_view(self) -> DataSourceView:
        return DataSourceView(
            id=self.datasource.id,
            organization=self.datasource.organization,
            name=self.datasource.name,
            description=self.datasource.description,
            type=self.type,
            settings=self.settings,
            projects=list(self.datasource.projects or []),
            params=self.get_non_sensitive_params(),
            decryption_error=self.decryption_error,
            date_created=self.datasource.date_created,
            date_updated=self.datasource.date_updated,
        )

    # Warehouse round-trips

    async def test_connection(self) -> None:
        """
        Connect and probe the warehouse.

        Raises:
            ConnectionError: If the warehouse is unreachable or rejects the params
        """
        async with self.connect() as connector:
            healthy = await connector.test_connection()
        if not healthy:
            raise ConnectionError(
                "Connection test query did not succeed", self.type
            )
        self.logger.info("connection_test_passed")

    async def run_query(
        self,
        sql: str,
        timeout: int | None = None,
        query_id: str | None = None,
        params: dict[str, Any] | None = None,
    ) -> QueryResult:
        async with self.connect() as connector:
            return await connector.execute_query(
                sql, params=params, timeout=timeout, query_id=query_id
            )

    async def cancel_query(self, query_id: str) -> bool:
        async with self.connect() as connector:
            cancelled = await connector.cancel_query(query_id)
        self.logger.info("query_cancel", query_id=query_id, accepted=cancelled)
        return cancelled

    async def get_table_columns(
        self, table_name: str, schema_name: str | None = None
    ) -> list[ColumnInfo]:
        async with self.connect() as connector:
            table = await connector.get_table_info(table_name, schema_name)
        return table.columns

    async def describe_query(self, sql: str) -> list[ColumnInfo]:
        async with self.connect() as connector:
            return await connector.describe_query(sql)

    # Dialect hooks

    @property
    def supports_materialized_columns(self) -> bool:
        return self.dialect.supports_materialized_columns

    def escape_string_literal(self, value: str) -> str:
        return self.dialect.escape_string_literal(value)

    def limit_query(self, sql: str, limit: int) -> str:
        return self.dialect.limit_query(sql, limit)

    async def get_materialized_table_columns(self) -> list[str]:
        """Physical column names of the table holding materialized columns."""
        schema_name, _, table_name = self.dialect.materialized_table.rpartition(".")
        columns = await self.get_table_columns(table_name, schema_name or None)
        return [column.name for column in columns]

    async def add_materialized_column(self, column: MaterializedColumn) -> None:
        await self.run_query(self.dialect.add_column_sql(column))
        self.logger.info(
            "materialized_column_added",
            column_name=column.column_name,
            datatype=column.datatype,
        )

    async def rename_materialized_column(self, from_name: str, to_name: str) -> None:
        await self.run_query(self.dialect.rename_column_sql(from_name, to_name))
        self.logger.info(
            "materialized_column_renamed", from_name=from_name, to_name=to_name
        )

    async def drop_materialized_column(self, column_name: str) -> None:
        await self.run_query(self.dialect.drop_column_sql(column_name))
        self.logger.info("materialized_column_dropped", column_name=column_name)


IntegrationFactory = Callable[[DataSource], WarehouseIntegration]
