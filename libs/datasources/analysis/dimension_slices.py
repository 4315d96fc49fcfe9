"""Dimension-slice discovery over an exposure query."""

from typing import Any

import structlog
from pydantic import BaseModel

from ..exceptions import NotFoundError
from ..integration import IntegrationFactory, WarehouseIntegration
from ..permissions import RequestContext
from ..sanitizer import validate_sql_identifier
from ..schemas import DimensionSlice, DimensionSlicesResult
from ..storage.models import DataSource, DimensionSlicesRun
from ..storage.repositories import (
    DataSourceRepository,
    DimensionSlicesRepository,
    QueryRepository,
)
from ..templates import compile_sql_template, lookback_window
from .base import AsyncAnalysisJob, CancellationToken, InFlightRuns

logger = structlog.get_logger(__name__)

DEFAULT_LOOKBACK_DAYS = 30
DEFAULT_MAX_SLICES = 20
MAX_LOOKBACK_DAYS = 3650


def coerce_lookback_days(
    value: Any,
    default: int = DEFAULT_LOOKBACK_DAYS,
    maximum: int = MAX_LOOKBACK_DAYS,
) -> int:
    """Positive whole number of days capped at ``maximum``, or ``default``."""
    if isinstance(value, bool):
        return default
    try:
        days = int(value)
    except (TypeError, ValueError, OverflowError):
        return default
    if days <= 0:
        return default
    return min(days, maximum)


def build_dimension_slices_sql(
    exposure_sql: str, dimension: str, user_id_type: str, max_slices: int
) -> str:
    """Top values of one dimension by distinct units, with the overall total."""
    dimension = validate_sql_identifier(dimension, "dimension")
    user_id_type = validate_sql_identifier(user_id_type, "user id type")
    return (
        f"WITH __exposures AS (\n{exposure_sql}\n),\n"
        "__slices AS (\n"
        f"  SELECT {dimension} AS dimension_value, "
        f"COUNT(DISTINCT {user_id_type}) AS units\n"
        "  FROM __exposures\n"
        f"  GROUP BY {dimension}\n"
        ")\n"
        "SELECT dimension_value, units, SUM(units) OVER () AS total_units\n"
        "FROM __slices\n"
        "ORDER BY units DESC\n"
        f"LIMIT {int(max_slices)}"
    )


def rows_to_slices(rows: list[dict[str, Any]]) -> list[DimensionSlice]:
    slices = []
    for row in rows:
        value = row.get("dimension_value")
        total = row.get("total_units") or 0
        if value is None or not total:
            continue
        slices.append(
            DimensionSlice(
                name=str(value),
                percent=round(float(row.get("units") or 0) / float(total) * 100, 2),
            )
        )
    return slices


class DimensionSlicesParams(BaseModel):
    exposure_query_id: str
    lookback_days: int = DEFAULT_LOOKBACK_DAYS


class DimensionSlicesJob(AsyncAnalysisJob[DimensionSlicesParams]):
    """Share of exposed units per value, for every dimension of an exposure query."""

    def __init__(
        self,
        integration: WarehouseIntegration,
        runs: DimensionSlicesRepository,
        queries: QueryRepository,
        in_flight: InFlightRuns,
        max_slices: int = DEFAULT_MAX_SLICES,
    ):
        super().__init__(integration, runs, queries, in_flight)
        self.max_slices = max_slices

    async def create_record(self, params: DimensionSlicesParams) -> DimensionSlicesRun:
        if not self.integration.settings.find_exposure_query(params.exposure_query_id):
            raise NotFoundError(
                f"Exposure query {params.exposure_query_id} does not exist"
            )
        return await self.runs.create(
            self.organization,
            self.integration.id,
            params.exposure_query_id,
            coerce_lookback_days(params.lookback_days),
        )

    async def run_analysis(
        self,
        record: DimensionSlicesRun,
        params: DimensionSlicesParams,
        token: CancellationToken,
    ) -> list[dict[str, Any]]:
        exposure_query = self.integration.settings.find_exposure_query(
            record.exposure_query_id
        )
        if exposure_query is None:
            raise NotFoundError(
                f"Exposure query {record.exposure_query_id} does not exist"
            )

        start, end = lookback_window(record.lookback_days)
        exposure_sql = compile_sql_template(
            exposure_query.query,
            start,
            end,
            escape=self.integration.escape_string_literal,
        )

        results = []
        for dimension in exposure_query.dimensions:
            sql = build_dimension_slices_sql(
                exposure_sql, dimension, exposure_query.user_id_type, self.max_slices
            )
            result = await self.run_query(record, sql, token)
            results.append(
                DimensionSlicesResult(
                    dimension=dimension,
                    dimension_slices=rows_to_slices(result.to_records()),
                ).model_dump()
            )
        return results


class DimensionSlicesService:
    """Request-facing entry points for dimension-slice runs."""

    def __init__(
        self,
        datasources: DataSourceRepository,
        runs: DimensionSlicesRepository,
        queries: QueryRepository,
        integration_factory: IntegrationFactory,
        in_flight: InFlightRuns | None = None,
        max_slices: int = DEFAULT_MAX_SLICES,
        default_lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        max_lookback_days: int = MAX_LOOKBACK_DAYS,
    ):
        self.datasources = datasources
        self.runs = runs
        self.queries = queries
        self.integration_factory = integration_factory
        self.in_flight = in_flight or InFlightRuns()
        self.max_slices = max_slices
        self.default_lookback_days = default_lookback_days
        self.max_lookback_days = max_lookback_days
        self.logger = logger.bind(component="dimension_slices_service")

    async def _get_datasource(
        self, ctx: RequestContext, datasource_id: str
    ) -> DataSource:
        datasource = await self.datasources.get_by_id(ctx.org_id, datasource_id)
        if datasource is None:
            raise NotFoundError(f"Could not find datasource {datasource_id}")
        if not ctx.permissions.can_run_queries(datasource.projects):
            ctx.permissions.throw_permission_error("run_queries")
        return datasource

    def _job(self, datasource: DataSource) -> DimensionSlicesJob:
        return DimensionSlicesJob(
            self.integration_factory(datasource),
            self.runs,
            self.queries,
            self.in_flight,
            max_slices=self.max_slices,
        )

    async def start(
        self,
        ctx: RequestContext,
        datasource_id: str,
        exposure_query_id: str,
        lookback_days: Any = None,
        wait: bool = False,
    ) -> DimensionSlicesRun:
        datasource = await self._get_datasource(ctx, datasource_id)
        params = DimensionSlicesParams(
            exposure_query_id=exposure_query_id,
            lookback_days=coerce_lookback_days(
                lookback_days, self.default_lookback_days, self.max_lookback_days
            ),
        )
        return await self._job(datasource).start_analysis(params, wait=wait)

    async def get(self, ctx: RequestContext, run_id: str) -> DimensionSlicesRun:
        record = await self.runs.get_by_id(ctx.org_id, run_id)
        if record is None:
            raise NotFoundError(f"Dimension slices run {run_id} does not exist")
        return record

    async def get_latest(
        self, ctx: RequestContext, datasource_id: str, exposure_query_id: str
    ) -> DimensionSlicesRun | None:
        return await self.runs.get_latest(ctx.org_id, datasource_id, exposure_query_id)

    async def cancel(self, ctx: RequestContext, run_id: str) -> DimensionSlicesRun:
        record = await self.get(ctx, run_id)
        datasource = await self._get_datasource(ctx, record.datasource)
        return await self._job(datasource).cancel(record)
