"""
ClickHouse warehouse connector implementation.

This module provides connectors for customer-run ClickHouse and for the
platform-managed ClickHouse variant, using clickhouse-connect over HTTP(S).
The managed variant owns a shared events table, so it is the only variant that
supports materialized columns and per-data-source user provisioning.
"""

import asyncio
import secrets
import time
from typing import Any

import structlog

from ..sanitizer import validate_sql_identifier
from ..schemas import DataSourceType, FactTableColumnType, MaterializedColumn
from .base import (
    ColumnInfo,
    ConnectionStatus,
    DataWarehouseConnector,
    QueryError,
    QueryMetadata,
    QueryResult,
    TableInfo,
    sanitize_error_message,
)
from .base import (
    ConnectionError as ConnectorConnectionError,
)
from .config import ClickHouseConfig

# Columns of the managed events table. Materialized columns may not reuse them.
MANAGED_EVENTS_BASE_COLUMNS = frozenset(
    {
        "timestamp",
        "received_at",
        "datasource_id",
        "client_key",
        "environment",
        "sdk_language",
        "sdk_version",
        "event_name",
        "event_uuid",
        "properties_json",
        "context_json",
        "user_id",
        "device_id",
        "anonymous_id",
        "page_id",
        "session_id",
        "url",
        "url_path",
        "url_host",
        "url_query",
        "url_fragment",
        "page_title",
        "geo_country",
        "geo_city",
        "geo_lat",
        "geo_lon",
        "ua",
        "ua_browser",
        "ua_os",
        "ua_device_type",
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_term",
        "utm_content",
    }
)

_COMMAND_PREFIXES = ("ALTER", "CREATE", "DROP", "GRANT", "REVOKE", "KILL", "RENAME")


def get_reserved_column_names() -> frozenset[str]:
    """Reserved-name provider for the managed events table."""
    return MANAGED_EVENTS_BASE_COLUMNS


class ClickHouseConnector(DataWarehouseConnector):
    """ClickHouse connector for customer-run clusters."""

    def __init__(self, connection_params: dict[str, Any]):
        """Initialize ClickHouse connector with configuration."""
        super().__init__(connection_params)
        self.config = ClickHouseConfig(**connection_params)
        self._client = None
        self.logger = structlog.get_logger(__name__).bind(
            datasource_type=self._get_datasource_type().value,
            host=self.config.host,
            connector_id=id(self),
        )

    def _get_datasource_type(self) -> DataSourceType:
        """Return ClickHouse data source type."""
        return DataSourceType.CLICKHOUSE

    def _create_sync_client(self, conn_params: dict[str, Any]) -> Any:
        """
        Create a synchronous clickhouse-connect client.

        Executed through run_in_executor; the HTTP client blocks.
        """
        import clickhouse_connect

        return clickhouse_connect.get_client(**conn_params)

    def _execute_sync_query(
        self,
        query: str,
        params: dict[str, Any] | None = None,
        timeout: int | None = None,
        query_id: str | None = None,
    ) -> tuple[list[list[Any]], list[str]]:
        """Execute a statement on the blocking client."""
        if not self._client:
            raise QueryError("Not connected to ClickHouse", query)

        settings: dict[str, Any] = {}
        if timeout:
            settings["max_execution_time"] = timeout
        if query_id:
            settings["query_id"] = query_id

        if query.lstrip().upper().startswith(_COMMAND_PREFIXES):
            self._client.command(query, parameters=params, settings=settings or None)
            return [], []

        result = self._client.query(query, parameters=params, settings=settings or None)
        return [list(row) for row in result.result_rows], list(result.column_names)

    async def connect(self) -> None:
        """Establish connection to ClickHouse."""
        self.logger.info("attempting_connection", status="connecting")
        try:
            self._status = ConnectionStatus.CONNECTING
            loop = asyncio.get_running_loop()
            self._client = await loop.run_in_executor(
                None, self._create_sync_client, self.config.get_connection_params()
            )
            self._status = ConnectionStatus.CONNECTED
            self.logger.info("connection_successful", status="connected")

        except Exception as e:
            self._status = ConnectionStatus.ERROR
            sanitized_error = sanitize_error_message(str(e))
            self.logger.error(
                "connection_failed", status="error", error=sanitized_error
            )
            raise ConnectorConnectionError(
                f"Failed to connect to ClickHouse: {sanitized_error}",
                self._get_datasource_type(),
            ) from e

    async def disconnect(self) -> None:
        """Close ClickHouse connection."""
        try:
            if self._client:
                self._client.close()
                self._client = None
            self._status = ConnectionStatus.DISCONNECTED
        except Exception as e:
            # Log error but don't raise - disconnection should be best-effort
            self.logger.error("disconnect_failed", status="error", error=str(e))
            self._status = ConnectionStatus.ERROR

    async def test_connection(self) -> bool:
        """Test ClickHouse connection health."""
        try:
            if not self._client:
                return False
            loop = asyncio.get_running_loop()
            rows, _ = await loop.run_in_executor(
                None, self._execute_sync_query, "SELECT 1", None, None, None
            )
            return len(rows) > 0
        except Exception:
            return False

    async def execute_query(
        self,
        query: str,
        params: dict[str, Any] | None = None,
        timeout: int | None = None,
        query_id: str | None = None,
    ) -> QueryResult:
        """Execute a SQL statement on ClickHouse."""
        if not self._client:
            raise QueryError("Not connected to ClickHouse", query)

        self.logger.info(
            "executing_query", query_id=query_id, has_params=params is not None
        )
        start_time = time.time()

        try:
            loop = asyncio.get_running_loop()
            data, columns = await loop.run_in_executor(
                None, self._execute_sync_query, query, params, timeout, query_id
            )
        except Exception as e:
            execution_time = int((time.time() - start_time) * 1000)
            self.logger.error(
                "query_failed",
                query_id=query_id,
                execution_time_ms=execution_time,
                error=sanitize_error_message(str(e)),
            )
            raise QueryError(f"Query execution failed: {str(e)}", query) from e

        execution_time = int((time.time() - start_time) * 1000)
        self.logger.info(
            "query_completed",
            query_id=query_id,
            execution_time_ms=execution_time,
            row_count=len(data),
        )
        return QueryResult(
            columns=columns,
            data=data,
            metadata=QueryMetadata(
                query_id=query_id,
                execution_time_ms=execution_time,
                rows_scanned=len(data),
            ),
            total_rows=len(data),
        )

    async def get_table_info(
        self, table_name: str, schema_name: str | None = None
    ) -> TableInfo:
        """Get column information for a table from system.columns."""
        database = schema_name or self.config.database
        columns_query = """
            SELECT name, type, default_expression, comment
            FROM system.columns
            WHERE database = {database:String} AND table = {table:String}
            ORDER BY position
        """
        result = await self.execute_query(
            columns_query, {"database": database, "table": table_name}
        )
        columns = [
            ColumnInfo(
                name=row[0],
                data_type=row[1],
                is_nullable=str(row[1]).startswith("Nullable("),
                default_value=row[2] or None,
                comment=row[3] or None,
            )
            for row in result.data
        ]
        return TableInfo(name=table_name, schema_name=database, columns=columns)

    async def describe_query(self, query: str) -> list[ColumnInfo]:
        """Column names and ClickHouse types produced by a query."""
        result = await self.execute_query(f"DESCRIBE (\n{query}\n)")
        return [ColumnInfo(name=row[0], data_type=row[1]) for row in result.data]

    async def cancel_query(self, query_id: str) -> bool:
        """Kill a running query by the id it was started with."""
        try:
            await self.execute_query(
                "KILL QUERY WHERE query_id = %(query_id)s ASYNC",
                {"query_id": query_id},
            )
            self.logger.info("query_cancel_requested", query_id=query_id)
            return True
        except QueryError as e:
            self.logger.warning("query_cancel_failed", query_id=query_id, error=str(e))
            return False

    def escape_string_literal(self, value: str) -> str:
        return value.replace("\\", "\\\\").replace("'", "\\'")


class ManagedClickHouseConnector(ClickHouseConnector):
    """Connector for the platform-managed ClickHouse events store."""

    supports_materialized_columns = True

    # datatype -> (column type, extraction expression template)
    _MATERIALIZED_TYPES = {
        FactTableColumnType.NUMBER.value: (
            "Nullable(Float64)",
            "JSONExtract(properties_json, '{field}', 'Nullable(Float64)')",
        ),
        FactTableColumnType.STRING.value: (
            "String",
            "JSONExtractString(properties_json, '{field}')",
        ),
        FactTableColumnType.BOOLEAN.value: (
            "Nullable(Bool)",
            "JSONExtract(properties_json, '{field}', 'Nullable(Bool)')",
        ),
        FactTableColumnType.DATE.value: (
            "Nullable(DateTime64(3))",
            "parseDateTime64BestEffortOrNull(JSONExtractString(properties_json, '{field}'))",
        ),
        FactTableColumnType.OTHER.value: (
            "String",
            "JSONExtractRaw(properties_json, '{field}')",
        ),
    }

    def _get_datasource_type(self) -> DataSourceType:
        return DataSourceType.MANAGED_CLICKHOUSE

    @property
    def materialized_table(self) -> str:
        return validate_sql_identifier(
            f"{self.config.database}.{self.config.events_table}", "events table"
        )

    def add_column_sql(self, column: MaterializedColumn) -> str:
        column_type, expression = self._MATERIALIZED_TYPES[column.datatype]
        field = self.escape_string_literal(column.source_field)
        return (
            f"ALTER TABLE {self.materialized_table} "
            f"ADD COLUMN IF NOT EXISTS {column.column_name} {column_type} "
            f"MATERIALIZED {expression.format(field=field)}"
        )

    def rename_column_sql(self, from_name: str, to_name: str) -> str:
        return (
            f"ALTER TABLE {self.materialized_table} "
            f"RENAME COLUMN IF EXISTS {from_name} TO {to_name}"
        )

    def drop_column_sql(self, column_name: str) -> str:
        return (
            f"ALTER TABLE {self.materialized_table} "
            f"DROP COLUMN IF EXISTS {column_name}"
        )


class ManagedClickHouseProvisioner:
    """Creates the dedicated warehouse user behind a managed data source."""

    def __init__(self, admin_params: dict[str, Any]):
        self.admin_params = admin_params
        self.config = ClickHouseConfig(**admin_params)
        self.logger = structlog.get_logger(__name__).bind(
            component="managed_clickhouse_provisioner"
        )

    def _create_connector(self) -> ClickHouseConnector:
        return ClickHouseConnector(self.admin_params)

    async def provision(self, datasource_id: str) -> dict[str, Any]:
        """
        Create a user that can only read this data source's events.

        Returns:
            dict: Connection params for the new data source
        """
        validate_sql_identifier(datasource_id, "data source id")
        database = validate_sql_identifier(self.config.database, "database")
        events_table = validate_sql_identifier(self.config.events_table, "events table")
        username = f"{datasource_id}_reader"
        # token_hex only yields [0-9a-f], safe inside a quoted literal
        password = secrets.token_hex(24)

        statements = [
            f"CREATE USER IF NOT EXISTS {username} "
            f"IDENTIFIED WITH sha256_password BY '{password}' "
            f"DEFAULT DATABASE {database}",
            f"GRANT SELECT ON {database}.* TO {username}",
            f"CREATE ROW POLICY IF NOT EXISTS {datasource_id}_policy "
            f"ON {database}.{events_table} FOR SELECT "
            f"USING datasource_id = '{datasource_id}' TO {username}",
        ]

        async with self._create_connector() as connector:
            for statement in statements:
                await connector.execute_query(statement)

        self.logger.info(
            "managed_user_provisioned", datasource_id=datasource_id, username=username
        )
        return {
            "host": self.config.host,
            "port": self.config.port,
            "username": username,
            "password": password,
            "database": database,
            "secure": self.config.secure,
            "events_table": events_table,
        }
