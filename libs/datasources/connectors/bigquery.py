"""
Google BigQuery warehouse connector implementation.

This module provides a connector for BigQuery using the official
google-cloud-bigquery library. Caller-chosen query ids become BigQuery job ids,
which makes in-flight queries cancellable.
"""

import asyncio
import time
from typing import Any

import structlog

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
from .config import BigQueryConfig


class BigQueryConnector(DataWarehouseConnector):
    """Google BigQuery warehouse connector."""

    def __init__(self, connection_params: dict[str, Any]):
        """Initialize BigQuery connector with configuration."""
        super().__init__(connection_params)
        self.config = BigQueryConfig(**connection_params)
        self._client = None
        self.logger = structlog.get_logger(__name__).bind(
            datasource_type="bigquery",
            project_id=self.config.project_id,
            connector_id=id(self),
        )

    def _get_datasource_type(self) -> DataSourceType:
        """Return BigQuery data source type."""
        return DataSourceType.BIGQUERY

    def _create_sync_client(self) -> Any:
        from google.cloud import bigquery
        from google.oauth2 import service_account

        credentials = None
        if self.config.credentials_path:
            credentials = service_account.Credentials.from_service_account_file(
                self.config.credentials_path
            )
        elif self.config.credentials_json:
            credentials = service_account.Credentials.from_service_account_info(
                self.config.credentials_json
            )

        return bigquery.Client(
            project=self.config.project_id,
            credentials=credentials,
            location=self.config.location,
        )

    def _get_bigquery_param_type(self, value: Any) -> str:
        """Determine BigQuery parameter type from Python value."""
        if isinstance(value, bool):
            return "BOOL"
        elif isinstance(value, int):
            return "INT64"
        elif isinstance(value, float):
            return "FLOAT64"
        return "STRING"

    def _execute_sync_query(
        self,
        query: str,
        params: dict[str, Any] | None,
        timeout: int | None,
        query_id: str | None,
    ) -> tuple[list[list[Any]], list[str], str, int | None]:
        from google.cloud import bigquery

        job_config = bigquery.QueryJobConfig()
        if self.config.maximum_bytes_billed:
            job_config.maximum_bytes_billed = self.config.maximum_bytes_billed
        if self.config.default_dataset:
            job_config.default_dataset = (
                f"{self.config.project_id}.{self.config.default_dataset}"
            )
        if params:
            job_config.query_parameters = [
                bigquery.ScalarQueryParameter(
                    key, self._get_bigquery_param_type(value), value
                )
                for key, value in params.items()
            ]

        query_job = self._client.query(query, job_config=job_config, job_id=query_id)
        result = query_job.result(timeout=timeout or self.config.job_timeout)
        columns = [field.name for field in result.schema]
        data = [list(row.values()) for row in result]
        return data, columns, query_job.job_id, query_job.total_bytes_processed

    async def connect(self) -> None:
        """Establish connection to BigQuery."""
        try:
            self._status = ConnectionStatus.CONNECTING
            loop = asyncio.get_running_loop()
            self._client = await loop.run_in_executor(None, self._create_sync_client)
            self._status = ConnectionStatus.CONNECTED
            self.logger.info("connection_successful", status="connected")

        except Exception as e:
            self._status = ConnectionStatus.ERROR
            sanitized_error = sanitize_error_message(str(e))
            self.logger.error(
                "connection_failed", status="error", error=sanitized_error
            )
            raise ConnectorConnectionError(
                f"Failed to connect to BigQuery: {sanitized_error}",
                DataSourceType.BIGQUERY,
            ) from e

    async def disconnect(self) -> None:
        """Close BigQuery connection."""
        try:
            if self._client:
                self._client.close()
                self._client = None
            self._status = ConnectionStatus.DISCONNECTED
        except Exception:
            # Log error but don't raise - disconnection should be best-effort
            self._status = ConnectionStatus.ERROR

    async def test_connection(self) -> bool:
        """Test BigQuery connection health."""
        try:
            if not self._client:
                return False
            loop = asyncio.get_running_loop()
            data, _, _, _ = await loop.run_in_executor(
                None, self._execute_sync_query, "SELECT 1 AS test", None, 30, None
            )
            return len(data) > 0
        except Exception:
            return False

    async def execute_query(
        self,
        query: str,
        params: dict[str, Any] | None = None,
        timeout: int | None = None,
        query_id: str | None = None,
    ) -> QueryResult:
        """Execute a SQL query on BigQuery."""
        if not self._client:
            raise QueryError("Not connected to BigQuery", query)

        start_time = time.time()
        try:
            loop = asyncio.get_running_loop()
            data, columns, job_id, bytes_processed = await loop.run_in_executor(
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
            query_id=job_id,
            execution_time_ms=execution_time,
            row_count=len(data),
        )
        return QueryResult(
            columns=columns,
            data=data,
            metadata=QueryMetadata(
                query_id=job_id,
                execution_time_ms=execution_time,
                bytes_scanned=bytes_processed,
            ),
            total_rows=len(data),
        )

    async def cancel_query(self, query_id: str) -> bool:
        """Cancel the BigQuery job that was started with this id."""
        if not self._client:
            return False
        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._client.cancel_job, query_id)
            return True
        except Exception as e:
            self.logger.warning(
                "query_cancel_failed",
                query_id=query_id,
                error=sanitize_error_message(str(e)),
            )
            return False

    def escape_string_literal(self, value: str) -> str:
        return value.replace("\\", "\\\\").replace("'", "\\'")

    async def get_table_info(
        self, table_name: str, schema_name: str | None = None
    ) -> TableInfo:
        """Get detailed information about a specific table."""
        dataset_id = schema_name or self.config.default_dataset
        if not dataset_id:
            raise QueryError("Dataset ID is required", "")
        if not self._client:
            raise QueryError("Not connected to BigQuery", "")

        try:
            loop = asyncio.get_running_loop()
            table = await loop.run_in_executor(
                None,
                self._client.get_table,
                f"{self.config.project_id}.{dataset_id}.{table_name}",
            )
        except Exception as e:
            raise QueryError(f"Failed to get table info: {str(e)}", "") from e

        columns = [
            ColumnInfo(
                name=field.name,
                data_type=field.field_type,
                is_nullable=field.mode != "REQUIRED",
                comment=field.description,
            )
            for field in table.schema
        ]
        return TableInfo(
            name=table.table_id,
            schema_name=dataset_id,
            columns=columns,
            row_count=table.num_rows,
        )
