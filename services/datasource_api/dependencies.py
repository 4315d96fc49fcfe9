"""
Request-scoped dependencies for the data source API.

Authentication is handled upstream; the gateway forwards the caller's
organization and identity as headers, which are turned into a
``RequestContext`` here.
"""

from fastapi import Depends, Header, HTTPException, Request, status

from libs.datasources.analysis import DimensionSlicesService
from libs.datasources.materialized_columns import MaterializedColumnManager
from libs.datasources.permissions import Organization, RequestContext
from libs.datasources.query_service import QueryExecutionService
from libs.datasources.registry import DataSourceRegistry
from libs.datasources.services import DataSourceServices


def get_services(request: Request) -> DataSourceServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Data source services are not initialized",
        )
    return services


def get_request_context(
    x_organization_id: str = Header(..., alias="X-Organization-Id"),
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    x_super_admin: bool = Header(default=False, alias="X-Super-Admin"),
    x_default_datasource: str | None = Header(
        default=None, alias="X-Default-Datasource"
    ),
) -> RequestContext:
    return RequestContext(
        organization=Organization(
            id=x_organization_id, default_datasource=x_default_datasource
        ),
        user_id=x_user_id,
        super_admin=x_super_admin,
    )


def get_registry(
    services: DataSourceServices = Depends(get_services),
) -> DataSourceRegistry:
    return services.registry


def get_materialized_columns(
    services: DataSourceServices = Depends(get_services),
) -> MaterializedColumnManager:
    return services.materialized_columns


def get_query_service(
    services: DataSourceServices = Depends(get_services),
) -> QueryExecutionService:
    return services.query_service


def get_dimension_slices(
    services: DataSourceServices = Depends(get_services),
) -> DimensionSlicesService:
    return services.dimension_slices
