"""
Business rules around data source records.

Creation validates and tests params before anything is stored; updates keep
the type immutable and merge params; deletion is refused while the data source
is the organization default or still has dependents.
"""

from collections.abc import Callable, Sequence
from typing import Any

import structlog
from pydantic import BaseModel

from .connectors.clickhouse import ManagedClickHouseProvisioner
from .connectors.factory import ConnectorFactory
from .exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from .integration import IntegrationFactory, WarehouseIntegration
from .permissions import RequestContext
from .sanitizer import validate_sql_identifier
from .schemas import (
    DataSourceEvents,
    DataSourceSettings,
    DataSourceType,
    DataSourceView,
    ExposureQuery,
)
from .storage.models import DataSource, Metric, QueryRecord, generate_id
from .storage.repositories import (
    DataSourceRepository,
    DependentsRepository,
    InformationSchemaRepository,
    QueryRepository,
)
from .vault import CredentialVault

logger = structlog.get_logger(__name__)

MANAGED_DATASOURCE_NAME = "Managed ClickHouse"
MANAGED_DIMENSIONS = [
    "country",
    "browser",
    "os",
    "device_type",
    "source",
    "medium",
    "campaign",
]


def _managed_exposure_sql(user_id_type: str, events_table: str) -> str:
    return f"""SELECT
  {user_id_type},
  timestamp,
  simpleJSONExtractString(properties_json, 'experimentId') as experiment_id,
  simpleJSONExtractString(properties_json, 'variationId') as variation_id,
  geo_country as country,
  ua_browser as browser,
  ua_os as os,
  ua_device_type as device_type,
  utm_source as source,
  utm_medium as medium,
  utm_campaign as campaign
FROM {events_table}
WHERE
  event_name = 'Experiment Viewed'
  AND timestamp BETWEEN '{{{{startDate}}}}' AND '{{{{endDate}}}}'"""


def default_managed_settings(events_table: str = "events") -> DataSourceSettings:
    """Settings every managed ClickHouse data source starts with."""
    return DataSourceSettings.model_validate(
        {
            "user_id_types": [
                {"user_id_type": "device_id"},
                {"user_id_type": "user_id"},
            ],
            "queries": {
                "exposure": [
                    {
                        "id": "device_id",
                        "name": "Device Id Experiments",
                        "user_id_type": "device_id",
                        "dimensions": MANAGED_DIMENSIONS,
                        "query": _managed_exposure_sql("device_id", events_table),
                    },
                    {
                        "id": "user_id",
                        "name": "Logged in User Id Experiments",
                        "user_id_type": "user_id",
                        "dimensions": MANAGED_DIMENSIONS,
                        "query": _managed_exposure_sql("user_id", events_table),
                    },
                ]
            },
        }
    )


class DataSourceUpdate(BaseModel):
    """Partial update of a data source; unset fields are left alone."""

    name: str | None = None
    description: str | None = None
    type: DataSourceType | None = None
    params: dict[str, Any] | None = None
    settings: dict[str, Any] | None = None
    projects: list[str] | None = None


class DataSourceRegistry:
    """CRUD over data sources with the rules that guard them."""

    def __init__(
        self,
        datasources: DataSourceRepository,
        dependents: DependentsRepository,
        information_schemas: InformationSchemaRepository,
        queries: QueryRepository,
        vault: CredentialVault,
        integration_factory: IntegrationFactory,
        provisioner_factory: Callable[[], ManagedClickHouseProvisioner] | None = None,
    ):
        self.datasources = datasources
        self.dependents = dependents
        self.information_schemas = information_schemas
        self.queries = queries
        self.vault = vault
        self.integration_factory = integration_factory
        self.provisioner_factory = provisioner_factory
        self.logger = logger.bind(component="datasource_registry")

    async def _get(self, ctx: RequestContext, datasource_id: str) -> DataSource:
        datasource = await self.datasources.get_by_id(ctx.org_id, datasource_id)
        if datasource is None:
            raise NotFoundError(f"Could not find datasource {datasource_id}")
        return datasource

    async def _get_readable(self, ctx: RequestContext, datasource_id: str) -> DataSource:
        datasource = await self._get(ctx, datasource_id)
        if not ctx.permissions.can_read_data(datasource.projects):
            ctx.permissions.throw_permission_error("read_data")
        return datasource

    def _transient_record(
        self,
        ctx: RequestContext,
        datasource_id: str,
        name: str,
        datasource_type: DataSourceType,
        params: dict[str, Any],
        settings: DataSourceSettings,
    ) -> DataSource:
        """Unsaved record used to build an integration before anything is stored."""
        return DataSource(
            id=datasource_id,
            organization=ctx.org_id,
            name=name,
            type=datasource_type.value,
            params=self.vault.encrypt(params),
            settings=settings.to_document(),
            projects=[],
        )

    @staticmethod
    def _coerce_type(value: DataSourceType | str) -> DataSourceType:
        try:
            return DataSourceType(value)
        except ValueError as e:
            raise ValidationError(
                f"Unsupported data source type: {value}", rule="datasource_type", field="type"
            ) from e

    async def list_datasources(self, ctx: RequestContext) -> list[DataSourceView]:
        """Readable data sources; undecryptable ones are flagged, not dropped."""
        records = await self.datasources.list(ctx.org_id)
        return [
            self.integration_factory(record).to_view()
            for record in records
            if ctx.permissions.can_read_data(record.projects)
        ]

    async def get_datasource(
        self, ctx: RequestContext, datasource_id: str
    ) -> DataSourceView:
        datasource = await self._get_readable(ctx, datasource_id)
        return self.integration_factory(datasource).to_view()

    async def create_datasource(
        self,
        ctx: RequestContext,
        name: str,
        type: DataSourceType | str,
        params: dict[str, Any],
        settings: dict[str, Any] | None = None,
        description: str | None = None,
        projects: list[str] | None = None,
    ) -> DataSourceView:
        """
        Validate, test and store a customer-run data source.

        Raises:
            PermissionDeniedError: If the caller cannot create data sources
            ValidationError: On an unknown or managed type, or invalid params
            ConnectionError: If the connection test fails
        """
        projects = list(projects or [])
        if not ctx.permissions.can_create_datasource(projects):
            ctx.permissions.throw_permission_error("create_datasource")

        datasource_type = self._coerce_type(type)
        if datasource_type == DataSourceType.MANAGED_CLICKHOUSE:
            raise ValidationError(
                "Managed ClickHouse data sources are provisioned, not created directly",
                rule="datasource_type",
                field="type",
            )

        ConnectorFactory.validate_config(datasource_type, params)
        datasource_settings = DataSourceSettings.model_validate(settings or {})
        if datasource_settings.events is None:
            datasource_settings.events = DataSourceEvents()
        # Columns can only be declared through the materialized column manager
        datasource_settings.materialized_columns = []

        datasource_id = generate_id("ds")
        integration = self.integration_factory(
            self._transient_record(
                ctx, datasource_id, name, datasource_type, params, datasource_settings
            )
        )
        await integration.test_connection()

        datasource = await self.datasources.create(
            ctx.org_id,
            name,
            datasource_type.value,
            self.vault.encrypt(params),
            datasource_settings.to_document(),
            id=datasource_id,
            description=description,
            projects=projects,
        )
        return self.integration_factory(datasource).to_view()

    async def create_managed_datasource(
        self, ctx: RequestContext, datasource_id: str | None = None
    ) -> DataSourceView:
        """
        Provision a managed ClickHouse data source. Super admins only.
        """
        if not ctx.super_admin:
            raise PermissionDeniedError(
                "Only super admins can add a managed data source"
            )
        if self.provisioner_factory is None:
            raise ValidationError(
                "Managed ClickHouse provisioning is not configured",
                rule="managed_clickhouse",
            )

        datasource_id = validate_sql_identifier(
            datasource_id or generate_id("ds"), "data source id"
        )
        if await self.datasources.get_by_id(ctx.org_id, datasource_id):
            raise ConflictError(f"Data source {datasource_id} already exists")

        params = await self.provisioner_factory().provision(datasource_id)
        settings = default_managed_settings(params.get("events_table", "events"))
        datasource = await self.datasources.create(
            ctx.org_id,
            MANAGED_DATASOURCE_NAME,
            DataSourceType.MANAGED_CLICKHOUSE.value,
            self.vault.encrypt(params),
            settings.to_document(),
            id=datasource_id,
        )
        return self.integration_factory(datasource).to_view()

    async def update_datasource(
        self, ctx: RequestContext, datasource_id: str, fields: DataSourceUpdate
    ) -> DataSourceView:
        """
        Raises:
            ValidationError: On a type change or invalid params/settings
            ConnectionError: If changed params fail the connection test
        """
        datasource = await self._get(ctx, datasource_id)
        if not ctx.permissions.can_update_datasource_settings(datasource.projects):
            ctx.permissions.throw_permission_error("update_datasource_settings")

        if fields.type is not None and fields.type.value != datasource.type:
            raise ValidationError(
                "Cannot change the type of an existing data source",
                rule="type_immutable",
                field="type",
            )

        updates: dict[str, Any] = {}
        if fields.name is not None:
            updates["name"] = fields.name
        if fields.description is not None:
            updates["description"] = fields.description
        if fields.projects is not None:
            if not ctx.permissions.can_update_datasource_settings(fields.projects):
                ctx.permissions.throw_permission_error("update_datasource_settings")
            updates["projects"] = list(fields.projects)

        integration = self.integration_factory(datasource)
        if fields.settings is not None:
            stored = integration.settings
            settings = DataSourceSettings.model_validate(
                {**stored.to_document(), **fields.settings}
            )
            # Managed through their own operations, never through an update
            settings.materialized_columns = list(stored.materialized_columns)
            settings.information_schema_id = stored.information_schema_id
            updates["settings"] = settings.to_document()

        if fields.params is not None:
            if not ctx.permissions.can_update_datasource_params(datasource.projects):
                ctx.permissions.throw_permission_error("update_datasource_params")
            merged = integration.merge_params(fields.params)
            ConnectorFactory.validate_config(integration.type, merged)
            candidate = self.integration_factory(
                self._transient_record(
                    ctx,
                    datasource.id,
                    datasource.name,
                    integration.type,
                    merged,
                    integration.settings,
                )
            )
            await candidate.test_connection()
            updates["params"] = self.vault.encrypt(merged)

        updated = await self.datasources.update(ctx.org_id, datasource_id, updates)
        if updated is None:
            raise NotFoundError(f"Could not find datasource {datasource_id}")
        return self.integration_factory(updated).to_view()

    async def update_exposure_query(
        self,
        ctx: RequestContext,
        datasource_id: str,
        exposure_query_id: str,
        updates: dict[str, Any],
    ) -> ExposureQuery:
        """Merge ``updates`` onto one exposure query, keeping its position."""
        datasource = await self._get(ctx, datasource_id)
        if not ctx.permissions.can_update_datasource_settings(datasource.projects):
            ctx.permissions.throw_permission_error("update_datasource_settings")

        settings = DataSourceSettings.model_validate(datasource.settings or {})
        exposure = list(settings.queries.exposure)
        for index, existing in enumerate(exposure):
            if existing.id == exposure_query_id:
                break
        else:
            raise NotFoundError(f"Exposure query {exposure_query_id} does not exist")

        merged = ExposureQuery.model_validate(
            {**existing.model_dump(), **updates, "id": existing.id}
        )
        exposure[index] = merged
        settings.queries = settings.queries.model_copy(update={"exposure": exposure})

        await self.datasources.update(
            ctx.org_id, datasource_id, {"settings": settings.to_document()}
        )
        self.logger.info(
            "exposure_query_updated",
            datasource_id=datasource_id,
            exposure_query_id=exposure_query_id,
            fields=sorted(updates.keys()),
        )
        return merged

    async def delete_datasource(self, ctx: RequestContext, datasource_id: str) -> None:
        """
        Raises:
            ConflictError: If the data source is the organization default or
                metrics, segments or dimensions still use it
        """
        datasource = await self._get(ctx, datasource_id)
        if not ctx.permissions.can_delete_datasource(datasource.projects):
            ctx.permissions.throw_permission_error("delete_datasource")

        if ctx.organization.default_datasource == datasource.id:
            raise ConflictError(
                "Cannot delete. This data source is set as the default data source."
            )

        checks = (
            ("metrics", self.dependents.count_metrics),
            ("segments", self.dependents.count_segments),
            ("dimensions", self.dependents.count_dimensions),
        )
        for label, count in checks:
            total = await count(ctx.org_id, datasource.id)
            if total > 0:
                raise ConflictError(
                    f"Cannot delete. One or more {label} are linked to this data source.",
                    {"dependents": label, "count": total},
                )

        information_schema_id = (datasource.settings or {}).get("information_schema_id")
        await self.datasources.delete(ctx.org_id, datasource.id)
        if information_schema_id:
            await self.information_schemas.delete(ctx.org_id, information_schema_id)

        self.logger.info(
            "datasource_removed",
            datasource_id=datasource.id,
            information_schema_id=information_schema_id,
        )

    async def get_datasource_metrics(
        self, ctx: RequestContext, datasource_id: str
    ) -> Sequence[Metric]:
        datasource = await self._get_readable(ctx, datasource_id)
        return await self.dependents.list_metrics(ctx.org_id, datasource.id)

    async def get_datasource_queries(
        self, ctx: RequestContext, datasource_id: str, limit: int = 50
    ) -> Sequence[QueryRecord]:
        datasource = await self._get_readable(ctx, datasource_id)
        return await self.queries.list_by_datasource(ctx.org_id, datasource.id, limit)

    async def get_queries(
        self, ctx: RequestContext, query_ids: Sequence[str]
    ) -> list[QueryRecord | None]:
        """Queries in the requested order; unknown ids come back as ``None``."""
        return await self.queries.get_by_ids(ctx.org_id, query_ids)

    def integration_for(self, datasource: DataSource) -> WarehouseIntegration:
        return self.integration_factory(datasource)

    async def get_integration(
        self, ctx: RequestContext, datasource_id: str
    ) -> WarehouseIntegration:
        """Integration for a data source the caller may run queries on."""
        datasource = await self._get(ctx, datasource_id)
        if not ctx.permissions.can_run_queries(datasource.projects):
            ctx.permissions.throw_permission_error("run_queries")
        return self.integration_factory(datasource)
