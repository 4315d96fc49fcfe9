"""
Snowflake warehouse connector implementation.

This module provides a connector for Snowflake using the official
snowflake-connector-python library, with blocking calls run in an executor.
"""

import asyncio
import time
from typing import Any

import structlog

from ..sanitizer import validate_sql_identifier
from ..schemas import DataSourceType
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
from .config import SnowflakeConfig


class SnowflakeConnector(DataWarehouseConnector):
    """Snowflake warehouse connector."""

    def __init__(self, connection_params: dict[str, Any]):
        """Initialize Snowflake connector with configuration."""
        super().__init__(connection_params)
        self.config = SnowflakeConfig(**connection_params)
        self._connection = None
        self._cursor = None
        self.logger = structlog.get_logger(__name__).bind(
            datasource_type="snowflake",
            account=self.config.account,
            connector_id=id(self),
        )

    def _get_datasource_type(self) -> DataSourceType:
        """Return Snowflake data source type."""
        return DataSourceType.SNOWFLAKE

    def _create_sync_connection(self, conn_params: dict[str, Any]) -> tuple[Any, Any]:
        """
        Create a synchronous Snowflake connection.

        This method performs the actual sync connection creation that will be
        executed asynchronously using run_in_executor.

        Args:
            conn_params: Connection parameters for Snowflake

        Returns:
            tuple: (connection, cursor) objects
        """
        import snowflake.connector

        connection = snowflake.connector.connect(**conn_params)
        cursor = connection.cursor() if connection else None
        return connection, cursor

    def _execute_sync_query(
        self,
        query: str,
        params: dict[str, Any] | None = None,
        timeout: int | None = None,
        query_tag: str | None = None,
    ) -> tuple[list[Any], list[str], str | None]:
        """
        Execute a synchronous query on Snowflake.

        Returns:
            tuple: (results, columns, snowflake query id)
        """
        if not self._cursor:
            raise QueryError("Not connected to Snowflake", query)

        if query_tag:
            self._cursor.execute(
                "ALTER SESSION SET QUERY_TAG = %(tag)s", {"tag": query_tag}
            )

        kwargs: dict[str, Any] = {}
        if timeout:
            kwargs["timeout"] = timeout
        if params:
            self._cursor.execute(query, params, **kwargs)
        else:
            self._cursor.execute(query, **kwargs)

        results = self._cursor.fetchall()
        columns = (
            [desc[0] for desc in self._cursor.description]
            if self._cursor.description
            else []
        )
        return [list(row) for row in results], columns, self._cursor.sfqid

    async def connect(self) -> None:
        """Establish connection to Snowflake."""
        self.logger.info("attempting_connection", status="connecting")
        try:
            self._status = ConnectionStatus.CONNECTING
            loop = asyncio.get_running_loop()
            self._connection, self._cursor = await loop.run_in_executor(
                None, self._create_sync_connection, self.config.get_connection_params()
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
                f"Failed to connect to Snowflake: {sanitized_error}",
                DataSourceType.SNOWFLAKE,
            ) from e

    async def disconnect(self) -> None:
        """Close Snowflake connection."""
        try:
            if self._cursor:
                self._cursor.close()
                self._cursor = None
            if self._connection:
                self._connection.close()
                self._connection = None
            self._status = ConnectionStatus.DISCONNECTED
        except Exception as e:
            # Log error but don't raise - disconnection should be best-effort
            self.logger.error("disconnect_failed", status="error", error=str(e))
            self._status = ConnectionStatus.ERROR

    async def test_connection(self) -> bool:
        """Test Snowflake connection health."""
        try:
            if not self._cursor:
                return False
            loop = asyncio.get_running_loop()
            results, _, _ = await loop.run_in_executor(
                None, self._execute_sync_query, "SELECT 1", None, None, None
            )
            return len(results) > 0
        except Exception:
            return False

    async def execute_query(
        self,
        query: str,
        params: dict[str, Any] | None = None,
        timeout: int | None = None,
        query_id: str | None = None,
    ) -> QueryResult:
        """Execute a SQL query on Snowflake, tagging it with ``query_id``."""
        if not self._cursor:
            raise QueryError("Not connected to Snowflake", query)

        self.logger.info(
            "executing_query", query_id=query_id, has_params=params is not None
        )
        start_time = time.time()

        try:
            loop = asyncio.get_running_loop()
            data, columns, sf_query_id = await loop.run_in_executor(
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
            snowflake_query_id=sf_query_id,
            execution_time_ms=execution_time,
            row_count=len(data),
        )
        return QueryResult(
            columns=columns,
            data=data,
            metadata=QueryMetadata(
                query_id=sf_query_id or query_id,
                execution_time_ms=execution_time,
                rows_scanned=len(data),
            ),
            total_rows=len(data),
        )

    async def cancel_query(self, query_id: str) -> bool:
        """Cancel running queries carrying this query tag."""
        validate_sql_identifier(query_id, "query id")
        try:
            await self.execute_query(
                "SELECT SYSTEM$CANCEL_QUERY(query_id) "
                "FROM TABLE(INFORMATION_SCHEMA.QUERY_HISTORY()) "
                "WHERE query_tag = %(tag)s AND execution_status = 'RUNNING'",
                {"tag": query_id},
            )
            return True
        except QueryError as e:
            self.logger.warning("query_cancel_failed", query_id=query_id, error=str(e))
            return False

    async def get_table_info(
        self, table_name: str, schema_name: str | None = None
    ) -> TableInfo:
        """Get column information for a table from INFORMATION_SCHEMA."""
        schema = schema_name or self.config.schema_name
        if not schema:
            raise QueryError("Schema name is required", "")

        columns_query = """
            SELECT COLUMN_NAME, DATA_TYPE, IS_NULLABLE, COLUMN_DEFAULT, COMMENT
            FROM INFORMATION_SCHEMA.COLUMNS
            WHERE TABLE_SCHEMA = %(schema_name)s AND TABLE_NAME = %(table_name)s
            ORDER BY ORDINAL_POSITION
        """
        result = await self.execute_query(
            columns_query,
            {"schema_name": schema.upper(), "table_name": table_name.upper()},
        )
        columns = [
            ColumnInfo(
                name=row[0],
                data_type=row[1],
                is_nullable=row[2] == "YES",
                default_value=row[3] if len(row) > 3 else None,
                comment=row[4] if len(row) > 4 else None,
            )
            for row in result.data
        ]
        return TableInfo(name=table_name, schema_name=schema, columns=columns)
