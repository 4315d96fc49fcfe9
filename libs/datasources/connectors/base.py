"""
Base warehouse connector interface and common data structures.

This module defines the abstract base class for all warehouse connectors,
the shared result types, and the per-variant SQL dialect hooks (materialized
column DDL, string escaping, limit wrapping) that the orchestration layers call
without knowing which warehouse they talk to.
"""

import re
from abc import ABC, abstractmethod
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel

from ..exceptions import DataSourceError, UnsupportedOperationError
from ..schemas import DataSourceType, MaterializedColumn


def sanitize_error_message(error_message: str) -> str:
    """
    Sanitize error messages to remove sensitive information.

    Args:
        error_message: The raw error message

    Returns:
        str: Sanitized error message
    """
    sensitive_patterns = [
        (r'password[=:]\s*[\'"][^\'";]+[\'"]', "password=***"),
        (r"password[=:]\s*\S+", "password=***"),
        (r'user[=:]\s*[\'"][^\'";]+[\'"]', "user=***"),
        (r'account[=:]\s*[\'"][^\'";]+[\'"]', "account=***"),
        (r'token[=:]\s*[\'"][^\'";]+[\'"]', "token=***"),
        (r'key[=:]\s*[\'"][^\'";]+[\'"]', "key=***"),
        (r'host[=:]\s*[\'"][^\'";]+[\'"]', "host=***"),
        (r'server[=:]\s*[\'"][^\'";]+[\'"]', "server=***"),
        (r"IDENTIFIED\s+(WITH\s+\w+\s+)?BY\s+'[^']*'", "IDENTIFIED BY '***'"),
    ]

    sanitized_message = error_message
    for pattern, replacement in sensitive_patterns:
        sanitized_message = re.sub(
            pattern, replacement, sanitized_message, flags=re.IGNORECASE
        )

    return sanitized_message


class ConnectionStatus(str, Enum):
    """Connection status states."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    ERROR = "error"


class ColumnInfo(BaseModel):
    """Information about a table or query column."""

    name: str
    data_type: str
    is_nullable: bool = True
    default_value: str | None = None
    comment: str | None = None


class TableInfo(BaseModel):
    """Information about a warehouse table."""

    name: str
    schema_name: str | None = None
    columns: list[ColumnInfo]
    row_count: int | None = None

    def column_names(self) -> list[str]:
        return [column.name for column in self.columns]


class QueryMetadata(BaseModel):
    """Metadata about query execution."""

    query_id: str | None = None
    execution_time_ms: int
    rows_scanned: int | None = None
    bytes_scanned: int | None = None


class QueryResult(BaseModel):
    """Result of a warehouse query execution."""

    columns: list[str]
    data: list[list[Any]]
    metadata: QueryMetadata
    total_rows: int | None = None

    def to_records(self) -> list[dict[str, Any]]:
        """Rows as dictionaries keyed by column name."""
        return [dict(zip(self.columns, row)) for row in self.data]

    def to_dict(self) -> dict[str, Any]:
        """Convert result to dictionary format."""
        return {
            "columns": self.columns,
            "data": self.data,
            "metadata": self.metadata.model_dump(),
            "total_rows": self.total_rows,
        }


def infer_python_type(value: Any) -> str:
    """Best-effort warehouse type name for a fetched Python value."""
    if isinstance(value, bool):
        return "BOOLEAN"
    if isinstance(value, int | float):
        return "NUMBER"
    if isinstance(value, datetime | date):
        return "TIMESTAMP"
    if isinstance(value, str):
        return "VARCHAR"
    return "UNKNOWN"


class DataWarehouseConnector(ABC):
    """
    Abstract base class for warehouse connectors.

    All warehouse implementations must inherit from this class and implement
    the required abstract methods. Dialect hooks have generic defaults;
    variants override what their SQL dialect needs.
    """

    supports_materialized_columns = False

    def __init__(self, connection_params: dict[str, Any]):
        """Initialize the connector with connection parameters."""
        self.connection_params = connection_params
        self._status = ConnectionStatus.DISCONNECTED
        self._connection = None
        self.logger: Any = None  # Will be initialized in concrete classes

    @property
    def status(self) -> ConnectionStatus:
        """Get current connection status."""
        return self._status

    @property
    def datasource_type(self) -> DataSourceType:
        """Get the data source type for this connector."""
        return self._get_datasource_type()

    @abstractmethod
    def _get_datasource_type(self) -> DataSourceType:
        """Return the data source type for this connector."""
        pass

    @abstractmethod
    async def connect(self) -> None:
        """
        Establish connection to the warehouse.

        Raises:
            ConnectionError: If connection cannot be established
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the connection to the warehouse."""
        pass

    @abstractmethod
    async def test_connection(self) -> bool:
        """
        Test if the connection is working.

        Returns:
            bool: True if connection is healthy, False otherwise
        """
        pass

    @abstractmethod
    async def execute_query(
        self,
        query: str,
        params: dict[str, Any] | None = None,
        timeout: int | None = None,
        query_id: str | None = None,
    ) -> QueryResult:
        """
        Execute a SQL query and return results.

        Args:
            query: SQL query string
            params: Optional query parameters
            timeout: Optional timeout in seconds
            query_id: Optional caller-chosen id used to cancel the query later

        Returns:
            QueryResult: Query execution results

        Raises:
            QueryError: If query execution fails
        """
        pass

    @abstractmethod
    async def get_table_info(
        self, table_name: str, schema_name: str | None = None
    ) -> TableInfo:
        """
        Get detailed information about a specific table.

        Args:
            table_name: Name of the table
            schema_name: Optional schema name

        Returns:
            TableInfo: Detailed table information
        """
        pass

    async def describe_query(self, query: str) -> list[ColumnInfo]:
        """Column names and types produced by a query."""
        result = await self.execute_query(
            f"SELECT * FROM (\n{query}\n) __describe LIMIT 1"
        )
        first_row = result.data[0] if result.data else [None] * len(result.columns)
        return [
            ColumnInfo(name=name, data_type=infer_python_type(value))
            for name, value in zip(result.columns, first_row)
        ]

    async def cancel_query(self, query_id: str) -> bool:
        """Ask the warehouse to stop a running query. Returns False when unsupported."""
        return False

    def escape_string_literal(self, value: str) -> str:
        """Escape a value for use inside a single-quoted SQL string literal."""
        return value.replace("'", "''")

    def limit_query(self, query: str, limit: int) -> str:
        """Wrap a query so at most ``limit`` rows come back."""
        return f"WITH __table AS (\n{query}\n)\nSELECT * FROM __table LIMIT {int(limit)}"

    @property
    def materialized_table(self) -> str:
        """Table that holds managed materialized columns."""
        raise UnsupportedOperationError(
            f"Materialized columns are not supported for {self.datasource_type.value}"
        )

    def add_column_sql(self, column: MaterializedColumn) -> str:
        raise UnsupportedOperationError(
            f"Materialized columns are not supported for {self.datasource_type.value}"
        )

    def rename_column_sql(self, from_name: str, to_name: str) -> str:
        raise UnsupportedOperationError(
            f"Materialized columns are not supported for {self.datasource_type.value}"
        )

    def drop_column_sql(self, column_name: str) -> str:
        raise UnsupportedOperationError(
            f"Materialized columns are not supported for {self.datasource_type.value}"
        )

    async def __aenter__(self):
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.disconnect()


class QueryError(DataSourceError):
    """Exception raised for query execution errors."""

    code = "query_error"

    def __init__(self, message: str, query: str, error_code: str | None = None):
        super().__init__(sanitize_error_message(message))
        self.query = query
        self.error_code = error_code


class ConnectionError(DataSourceError):
    """Exception raised for connection errors."""

    code = "connection_error"

    def __init__(self, message: str, datasource_type: DataSourceType):
        super().__init__(
            sanitize_error_message(message), {"datasource_type": datasource_type.value}
        )
        self.datasource_type = datasource_type
