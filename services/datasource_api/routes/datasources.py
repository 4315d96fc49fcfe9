"""
Data source API endpoints.

CRUD over data source records, exposure query edits and the read-only views
of metrics and queries attached to a data source.
"""

from typing import Any

from fastapi import APIRouter, Body, Depends, Query, status

from libs.datasources.permissions import RequestContext
from libs.datasources.registry import DataSourceRegistry, DataSourceUpdate
from libs.datasources.schemas import DataSourceView, ExposureQuery
from services.datasource_api.dependencies import get_registry, get_request_context
from services.datasource_api.models import (
    CreateDataSourceRequest,
    CreateManagedDataSourceRequest,
    MetricView,
    QueryRecordView,
)
from services.datasource_api.responses import StandardResponse

router = APIRouter(prefix="/datasources", tags=["Data Sources"])


@router.get("", response_model=StandardResponse[list[DataSourceView]])
async def list_datasources(
    ctx: RequestContext = Depends(get_request_context),
    registry: DataSourceRegistry = Depends(get_registry),
) -> StandardResponse[list[DataSourceView]]:
    """List the data sources the caller can read."""
    views = await registry.list_datasources(ctx)
    return StandardResponse(data=views, message=f"Found {len(views)} data sources")


@router.post(
    "",
    response_model=StandardResponse[DataSourceView],
    status_code=status.HTTP_201_CREATED,
)
async def create_datasource(
    request: CreateDataSourceRequest,
    ctx: RequestContext = Depends(get_request_context),
    registry: DataSourceRegistry = Depends(get_registry),
) -> StandardResponse[DataSourceView]:
    """Validate, test and store a new data source."""
    view = await registry.create_datasource(
        ctx,
        name=request.name,
        type=request.type,
        params=request.params,
        settings=request.settings,
        description=request.description,
        projects=request.projects,
    )
    return StandardResponse(data=view, message="Data source created")


@router.post(
    "/managed",
    response_model=StandardResponse[DataSourceView],
    status_code=status.HTTP_201_CREATED,
)
async def create_managed_datasource(
    request: CreateManagedDataSourceRequest = Body(
        default_factory=CreateManagedDataSourceRequest
    ),
    ctx: RequestContext = Depends(get_request_context),
    registry: DataSourceRegistry = Depends(get_registry),
) -> StandardResponse[DataSourceView]:
    view = await registry.create_managed_datasource(ctx, request.datasource_id)
    return StandardResponse(data=view, message="Managed data source provisioned")


@router.get("/{datasource_id}", response_model=StandardResponse[DataSourceView])
async def get_datasource(
    datasource_id: str,
    ctx: RequestContext = Depends(get_request_context),
    registry: DataSourceRegistry = Depends(get_registry),
) -> StandardResponse[DataSourceView]:
    view = await registry.get_datasource(ctx, datasource_id)
    return StandardResponse(data=view)


@router.put("/{datasource_id}", response_model=StandardResponse[DataSourceView])
async def update_datasource(
    datasource_id: str,
    request: DataSourceUpdate,
    ctx: RequestContext = Depends(get_request_context),
    registry: DataSourceRegistry = Depends(get_registry),
) -> StandardResponse[DataSourceView]:
    """Update name, description, projects, settings or params."""
    view = await registry.update_datasource(ctx, datasource_id, request)
    return StandardResponse(data=view, message="Data source updated")


@router.delete("/{datasource_id}", response_model=StandardResponse[dict[str, str]])
async def delete_datasource(
    datasource_id: str,
    ctx: RequestContext = Depends(get_request_context),
    registry: DataSourceRegistry = Depends(get_registry),
) -> StandardResponse[dict[str, str]]:
    await registry.delete_datasource(ctx, datasource_id)
    return StandardResponse(
        data={"id": datasource_id}, message="Data source deleted"
    )


@router.put(
    "/{datasource_id}/exposure-queries/{exposure_query_id}",
    response_model=StandardResponse[ExposureQuery],
)
async def update_exposure_query(
    datasource_id: str,
    exposure_query_id: str,
    updates: dict[str, Any] = Body(...),
    ctx: RequestContext = Depends(get_request_context),
    registry: DataSourceRegistry = Depends(get_registry),
) -> StandardResponse[ExposureQuery]:
    exposure_query = await registry.update_exposure_query(
        ctx, datasource_id, exposure_query_id, updates
    )
    return StandardResponse(data=exposure_query, message="Exposure query updated")


@router.get(
    "/{datasource_id}/metrics", response_model=StandardResponse[list[MetricView]]
)
async def get_datasource_metrics(
    datasource_id: str,
    ctx: RequestContext = Depends(get_request_context),
    registry: DataSourceRegistry = Depends(get_registry),
) -> StandardResponse[list[MetricView]]:
    metrics = await registry.get_datasource_metrics(ctx, datasource_id)
    return StandardResponse(data=[MetricView.model_validate(m) for m in metrics])


@router.get(
    "/{datasource_id}/queries", response_model=StandardResponse[list[QueryRecordView]]
)
async def get_datasource_queries(
    datasource_id: str,
    limit: int = Query(50, ge=1, le=500),
    ctx: RequestContext = Depends(get_request_context),
    registry: DataSourceRegistry = Depends(get_registry),
) -> StandardResponse[list[QueryRecordView]]:
    records = await registry.get_datasource_queries(ctx, datasource_id, limit)
    return StandardResponse(
        data=[QueryRecordView.model_validate(record) for record in records]
    )
