"""
Preview and free-form query execution.

Both entry points compile the SQL template, wrap the result in a row limit and
run it. Warehouse failures come back in ``QueryRunResult.error`` next to the
SQL that was generated; template and input errors still raise.
"""

import time
from datetime import datetime

import structlog

from .connectors.base import ConnectionError, QueryError
from .integration import WarehouseIntegration
from .schemas import QueryRunResult
from .settings import DataSourcesConfig, get_settings
from .templates import TemplateVariables, compile_sql_template, lookback_window

logger = structlog.get_logger(__name__)


class QueryExecutionService:
    """Runs user SQL against a data source with interactive-friendly limits."""

    def __init__(self, settings: DataSourcesConfig | None = None):
        self.settings = settings or get_settings()
        self.logger = logger.bind(component="query_execution_service")

    def _compile(
        self,
        integration: WarehouseIntegration,
        sql: str,
        variables: TemplateVariables | None,
        now: datetime | None,
    ) -> str:
        start, end = lookback_window(self.settings.test_query_days, now)
        return compile_sql_template(
            sql,
            start,
            end,
            variables=variables,
            escape=integration.escape_string_literal,
        )

    def clamp_limit(self, limit: int | None) -> int:
        if limit is None or limit <= 0:
            return self.settings.free_form_default_limit
        return min(limit, self.settings.free_form_max_limit)

    async def test_query(
        self,
        integration: WarehouseIntegration,
        sql: str,
        variables: TemplateVariables | None = None,
        now: datetime | None = None,
    ) -> QueryRunResult:
        """Run a few rows of ``sql`` over the recent test window."""
        return await self._run(
            integration,
            sql,
            self.settings.test_query_row_limit,
            self.settings.test_query_timeout_seconds,
            variables,
            now,
        )

    async def run_free_form_query(
        self,
        integration: WarehouseIntegration,
        sql: str,
        limit: int | None = None,
        variables: TemplateVariables | None = None,
        now: datetime | None = None,
    ) -> QueryRunResult:
        """Run ``sql`` with a caller-controlled row limit."""
        return await self._run(
            integration, sql, self.clamp_limit(limit), None, variables, now
        )

    async def _run(
        self,
        integration: WarehouseIntegration,
        sql: str,
        limit: int,
        timeout: int | None,
        variables: TemplateVariables | None,
        now: datetime | None,
    ) -> QueryRunResult:
        if integration.decryption_error:
            return QueryRunResult(
                sql=sql,
                error="Could not decrypt data source credentials",
            )

        limited_sql = integration.limit_query(
            self._compile(integration, sql, variables, now), limit
        )

        start_time = time.time()
        try:
            result = await integration.run_query(limited_sql, timeout=timeout)
        except (ConnectionError, QueryError) as e:
            duration = int((time.time() - start_time) * 1000)
            self.logger.info(
                "query_run_failed",
                datasource_id=integration.id,
                error_code=e.code,
                duration_ms=duration,
            )
            return QueryRunResult(sql=limited_sql, duration=duration, error=e.message)

        duration = int((time.time() - start_time) * 1000)
        self.logger.info(
            "query_run_completed",
            datasource_id=integration.id,
            row_count=len(result.data),
            duration_ms=duration,
        )
        return QueryRunResult(
            results=result.to_records(), sql=limited_sql, duration=duration
        )
