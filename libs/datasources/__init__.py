"""
Warehouse data sources for the analytics platform.

Connects to customer warehouses through a uniform integration, keeps
materialized columns consistent across settings, warehouse and fact tables,
runs templated SQL with interactive limits and drives cancellable analyses
such as dimension-slice discovery.
"""

from .analysis import DimensionSlicesService, InFlightRuns
from .exceptions import (
    ConflictError,
    CredentialDecryptionError,
    DataSourceError,
    NotFoundError,
    PermissionDeniedError,
    TemplateError,
    UnsupportedOperationError,
    ValidationError,
)
from .integration import WarehouseIntegration
from .materialized_columns import MaterializedColumnManager
from .permissions import (
    ActionSetPolicy,
    AllowAllPolicy,
    Organization,
    PermissionPolicy,
    RequestContext,
)
from .query_service import QueryExecutionService
from .registry import DataSourceRegistry, DataSourceUpdate
from .schemas import (
    DataSourceSettings,
    DataSourceType,
    DataSourceView,
    ExposureQuery,
    MaterializedColumn,
    QueryRunResult,
)
from .services import DataSourceServices
from .settings import DataSourcesConfig, get_settings
from .vault import CredentialVault

__all__ = [
    "ActionSetPolicy",
    "AllowAllPolicy",
    "ConflictError",
    "CredentialDecryptionError",
    "CredentialVault",
    "DataSourceError",
    "DataSourceRegistry",
    "DataSourceServices",
    "DataSourceSettings",
    "DataSourceType",
    "DataSourceUpdate",
    "DataSourceView",
    "DataSourcesConfig",
    "DimensionSlicesService",
    "ExposureQuery",
    "InFlightRuns",
    "MaterializedColumn",
    "MaterializedColumnManager",
    "NotFoundError",
    "Organization",
    "PermissionDeniedError",
    "PermissionPolicy",
    "QueryExecutionService",
    "QueryRunResult",
    "RequestContext",
    "TemplateError",
    "UnsupportedOperationError",
    "ValidationError",
    "WarehouseIntegration",
    "get_settings",
]
