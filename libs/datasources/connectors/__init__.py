"""
Warehouse connectors.

Each supported warehouse has a connector implementing a common async interface
plus the dialect hooks (escaping, limit wrapping, materialized column DDL) the
rest of the package relies on.
"""

from .base import (
    ColumnInfo,
    ConnectionError,
    ConnectionStatus,
    DataWarehouseConnector,
    QueryError,
    QueryMetadata,
    QueryResult,
    TableInfo,
    sanitize_error_message,
)
from .clickhouse import (
    ClickHouseConnector,
    ManagedClickHouseConnector,
    ManagedClickHouseProvisioner,
    get_reserved_column_names,
)
from .config import (
    BigQueryConfig,
    ClickHouseConfig,
    RedshiftConfig,
    SnowflakeConfig,
    get_sensitive_param_keys,
)
from .factory import ConnectorFactory

__all__ = [
    "BigQueryConfig",
    "ClickHouseConfig",
    "ClickHouseConnector",
    "ColumnInfo",
    "ConnectionError",
    "ConnectionStatus",
    "ConnectorFactory",
    "DataWarehouseConnector",
    "ManagedClickHouseConnector",
    "ManagedClickHouseProvisioner",
    "QueryError",
    "QueryMetadata",
    "QueryResult",
    "RedshiftConfig",
    "SnowflakeConfig",
    "TableInfo",
    "get_reserved_column_names",
    "get_sensitive_param_keys",
    "sanitize_error_message",
]
