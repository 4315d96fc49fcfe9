"""Materialized column endpoints for a single data source."""

from fastapi import APIRouter, Depends, status

from libs.datasources.materialized_columns import MaterializedColumnManager
from libs.datasources.permissions import RequestContext
from libs.datasources.schemas import (
    DataSourceView,
    MaterializedColumn,
    MaterializedColumnReconcileReport,
)
from services.datasource_api.dependencies import (
    get_materialized_columns,
    get_request_context,
)
from services.datasource_api.models import UpdateMaterializedColumnRequest
from services.datasource_api.responses import StandardResponse

router = APIRouter(
    prefix="/datasources/{datasource_id}/materialized-columns",
    tags=["Materialized Columns"],
)


@router.post(
    "",
    response_model=StandardResponse[DataSourceView],
    status_code=status.HTTP_201_CREATED,
)
async def add_materialized_column(
    datasource_id: str,
    column: MaterializedColumn,
    ctx: RequestContext = Depends(get_request_context),
    manager: MaterializedColumnManager = Depends(get_materialized_columns),
) -> StandardResponse[DataSourceView]:
    view = await manager.add_column(ctx, datasource_id, column)
    return StandardResponse(
        data=view, message=f"Materialized column {column.column_name} added"
    )


@router.put("/{column_name}", response_model=StandardResponse[DataSourceView])
async def update_materialized_column(
    datasource_id: str,
    column_name: str,
    request: UpdateMaterializedColumnRequest,
    ctx: RequestContext = Depends(get_request_context),
    manager: MaterializedColumnManager = Depends(get_materialized_columns),
) -> StandardResponse[DataSourceView]:
    """Rename or redefine a column. Omitted fields are unchanged."""
    view = await manager.update_column(
        ctx, datasource_id, column_name, request.model_dump(exclude_none=True)
    )
    return StandardResponse(data=view, message="Materialized column updated")


@router.delete("/{column_name}", response_model=StandardResponse[DataSourceView])
async def delete_materialized_column(
    datasource_id: str,
    column_name: str,
    ctx: RequestContext = Depends(get_request_context),
    manager: MaterializedColumnManager = Depends(get_materialized_columns),
) -> StandardResponse[DataSourceView]:
    view = await manager.delete_column(ctx, datasource_id, column_name)
    return StandardResponse(
        data=view, message=f"Materialized column {column_name} deleted"
    )


@router.post(
    "/reconcile", response_model=StandardResponse[MaterializedColumnReconcileReport]
)
async def reconcile_materialized_columns(
    datasource_id: str,
    ctx: RequestContext = Depends(get_request_context),
    manager: MaterializedColumnManager = Depends(get_materialized_columns),
) -> StandardResponse[MaterializedColumnReconcileReport]:
    """Re-create declared columns missing from the warehouse table."""
    report = await manager.reconcile(ctx, datasource_id)
    return StandardResponse(data=report)
