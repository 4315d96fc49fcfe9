"""
Amazon Redshift warehouse connector implementation.

This module provides a connector for Redshift using the redshift_connector
library. Query ids are attached as the session query group, which is how
running queries are found again for cancellation.
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
from .config import RedshiftConfig


class RedshiftConnector(DataWarehouseConnector):
    """Amazon Redshift warehouse connector."""

    def __init__(self, connection_params: dict[str, Any]):
        """Initialize Redshift connector with configuration."""
        super().__init__(connection_params)
        self.config = RedshiftConfig(**connection_params)
        self._connection = None
        self._cursor = None
        self.logger = structlog.get_logger(__name__).bind(
            datasource_type="redshift",
            host=self.config.host,
            connector_id=id(self),
        )

    def _get_datasource_type(self) -> DataSourceType:
        """Return Redshift data source type."""
        return DataSourceType.REDSHIFT

    def _create_sync_connection(self, conn_params: dict[str, Any]) -> tuple[Any, Any]:
        import redshift_connector

        connection = redshift_connector.connect(**conn_params)
        cursor = connection.cursor()

        schema = validate_sql_identifier(self.config.schema_name, "schema")
        if schema != "public":
            cursor.execute(f"SET search_path TO {schema}, public")
        return connection, cursor

    def _execute_sync_query(
        self,
        query: str,
        params: dict[str, Any] | None = None,
        timeout: int | None = None,
        query_id: str | None = None,
    ) -> tuple[list[list[Any]], list[str]]:
        if not self._cursor:
            raise QueryError("Not connected to Redshift", query)

        if timeout:
            # Redshift uses milliseconds
            self._cursor.execute(f"SET statement_timeout TO {int(timeout) * 1000}")
        if query_id:
            validate_sql_identifier(query_id, "query id")
            self._cursor.execute(f"SET query_group TO '{query_id}'")

        try:
            if params:
                # redshift_connector uses the pyformat paramstyle
                self._cursor.execute(query, params)
            else:
                self._cursor.execute(query)

            columns = (
                [desc[0] for desc in self._cursor.description]
                if self._cursor.description
                else []
            )
            results = self._cursor.fetchall() if columns else []
        finally:
            if query_id:
                self._cursor.execute("RESET query_group")

        return [list(row) for row in results], columns

    async def connect(self) -> None:
        """Establish connection to Redshift."""
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
                f"Failed to connect to Redshift: {sanitized_error}",
                DataSourceType.REDSHIFT,
            ) from e

    async def disconnect(self) -> None:
        """Close Redshift connection."""
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
        """Test Redshift connection health."""
        try:
            if not self._cursor:
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
        """Execute a SQL query on Redshift."""
        if not self._cursor:
            raise QueryError("Not connected to Redshift", query)

        start_time = time.time()
        try:
            loop = asyncio.get_running_loop()
            data, columns = await loop.run_in_executor(
                None, self._execute_sync_query, query, params, timeout, query_id
            )
        except Exception as e:
            self.logger.error(
                "query_failed", query_id=query_id, error=sanitize_error_message(str(e))
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

    async def cancel_query(self, query_id: str) -> bool:
        """Cancel in-flight queries started under this query group."""
        try:
            await self.execute_query(
                "SELECT pg_cancel_backend(pid) FROM stv_inflight "
                "WHERE TRIM(label) = %(label)s",
                {"label": query_id},
            )
            return True
        except QueryError as e:
            self.logger.warning("query_cancel_failed", query_id=query_id, error=str(e))
            return False

    async def get_table_info(
        self, table_name: str, schema_name: str | None = None
    ) -> TableInfo:
        """Get column information for a table from information_schema."""
        schema = schema_name or self.config.schema_name
        columns_query = """
            SELECT column_name, data_type, is_nullable, column_default
            FROM information_schema.columns
            WHERE table_schema = %(schema_name)s AND table_name = %(table_name)s
            ORDER BY ordinal_position
        """
        result = await self.execute_query(
            columns_query, {"schema_name": schema, "table_name": table_name}
        )
        columns = [
            ColumnInfo(
                name=row[0],
                data_type=row[1],
                is_nullable=row[2] == "YES",
                default_value=row[3] if len(row) > 3 else None,
            )
            for row in result.data
        ]
        return TableInfo(name=table_name, schema_name=schema, columns=columns)
