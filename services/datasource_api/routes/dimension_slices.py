"""Dimension-slice discovery endpoints."""

from fastapi import APIRouter, Depends, status

from libs.datasources.analysis import DimensionSlicesService
from libs.datasources.permissions import RequestContext
from services.datasource_api.dependencies import (
    get_dimension_slices,
    get_request_context,
)
from services.datasource_api.models import (
    DimensionSlicesRunView,
    StartDimensionSlicesRequest,
)
from services.datasource_api.responses import StandardResponse

router = APIRouter(prefix="/dimension-slices", tags=["Dimension Slices"])


@router.post(
    "",
    response_model=StandardResponse[DimensionSlicesRunView],
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_dimension_slices(
    request: StartDimensionSlicesRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: DimensionSlicesService = Depends(get_dimension_slices),
) -> StandardResponse[DimensionSlicesRunView]:
    """Start a run in the background and return it in the ``running`` state."""
    record = await service.start(
        ctx,
        request.datasource_id,
        request.exposure_query_id,
        lookback_days=request.lookback_days,
    )
    return StandardResponse(
        data=DimensionSlicesRunView.model_validate(record),
        message="Dimension slices run started",
    )


@router.get(
    "/latest",
    response_model=StandardResponse[DimensionSlicesRunView | None],
)
async def get_latest_dimension_slices(
    datasource_id: str,
    exposure_query_id: str,
    ctx: RequestContext = Depends(get_request_context),
    service: DimensionSlicesService = Depends(get_dimension_slices),
) -> StandardResponse[DimensionSlicesRunView | None]:
    record = await service.get_latest(ctx, datasource_id, exposure_query_id)
    return StandardResponse(
        data=DimensionSlicesRunView.model_validate(record) if record else None
    )


@router.get("/{run_id}", response_model=StandardResponse[DimensionSlicesRunView])
async def get_dimension_slices(
    run_id: str,
    ctx: RequestContext = Depends(get_request_context),
    service: DimensionSlicesService = Depends(get_dimension_slices),
) -> StandardResponse[DimensionSlicesRunView]:
    record = await service.get(ctx, run_id)
    return StandardResponse(data=DimensionSlicesRunView.model_validate(record))


@router.post(
    "/{run_id}/cancel", response_model=StandardResponse[DimensionSlicesRunView]
)
async def cancel_dimension_slices(
    run_id: str,
    ctx: RequestContext = Depends(get_request_context),
    service: DimensionSlicesService = Depends(get_dimension_slices),
) -> StandardResponse[DimensionSlicesRunView]:
    record = await service.cancel(ctx, run_id)
    return StandardResponse(
        data=DimensionSlicesRunView.model_validate(record),
        message=f"Dimension slices run is {record.status}",
    )
