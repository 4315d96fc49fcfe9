"""Test query, free-form query and query log endpoints."""

from fastapi import APIRouter, Depends, Query

from libs.datasources.permissions import RequestContext
from libs.datasources.query_service import QueryExecutionService
from libs.datasources.registry import DataSourceRegistry
from libs.datasources.schemas import QueryRunResult
from libs.datasources.templates import TemplateVariables
from services.datasource_api.dependencies import (
    get_query_service,
    get_registry,
    get_request_context,
)
from services.datasource_api.models import (
    QueryRecordView,
    RunQueryRequest,
    TestQueryRequest,
)
from services.datasource_api.responses import StandardResponse

router = APIRouter(tags=["Queries"])


def _variables(request: TestQueryRequest) -> TemplateVariables:
    return TemplateVariables(
        event_name=request.event_name,
        experiment_id=request.experiment_id,
        value_column=request.value_column,
    )


@router.post(
    "/datasources/{datasource_id}/test-query",
    response_model=StandardResponse[QueryRunResult],
)
async def test_query(
    datasource_id: str,
    request: TestQueryRequest,
    ctx: RequestContext = Depends(get_request_context),
    registry: DataSourceRegistry = Depends(get_registry),
    query_service: QueryExecutionService = Depends(get_query_service),
) -> StandardResponse[QueryRunResult]:
    """Preview a few rows of a templated query over the recent test window."""
    integration = await registry.get_integration(ctx, datasource_id)
    result = await query_service.test_query(
        integration, request.sql, variables=_variables(request)
    )
    return StandardResponse(success=result.error is None, data=result)


@router.post(
    "/datasources/{datasource_id}/query",
    response_model=StandardResponse[QueryRunResult],
)
async def run_query(
    datasource_id: str,
    request: RunQueryRequest,
    ctx: RequestContext = Depends(get_request_context),
    registry: DataSourceRegistry = Depends(get_registry),
    query_service: QueryExecutionService = Depends(get_query_service),
) -> StandardResponse[QueryRunResult]:
    integration = await registry.get_integration(ctx, datasource_id)
    result = await query_service.run_free_form_query(
        integration, request.sql, limit=request.limit, variables=_variables(request)
    )
    return StandardResponse(success=result.error is None, data=result)


@router.get("/queries", response_model=StandardResponse[list[QueryRecordView | None]])
async def get_queries(
    ids: str = Query(..., description="Comma-separated query ids"),
    ctx: RequestContext = Depends(get_request_context),
    registry: DataSourceRegistry = Depends(get_registry),
) -> StandardResponse[list[QueryRecordView | None]]:
    """Fetch queries in the requested order; unknown ids are ``null``."""
    query_ids = [query_id.strip() for query_id in ids.split(",") if query_id.strip()]
    records = await registry.get_queries(ctx, query_ids)
    return StandardResponse(
        data=[
            QueryRecordView.model_validate(record) if record else None
            for record in records
        ]
    )
