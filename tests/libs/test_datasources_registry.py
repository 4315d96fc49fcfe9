"""Tests for data source create, update and delete rules."""

import pytest
from conftest import (
    CLICKHOUSE_DATASOURCE_ID,
    CLICKHOUSE_PARAMS,
    MANAGED_DATASOURCE_ID,
    ORG_ID,
)

from libs.datasources.connectors.base import ConnectionError
from libs.datasources.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from libs.datasources.permissions import ActionSetPolicy, Organization, RequestContext
from libs.datasources.registry import DataSourceUpdate
from libs.datasources.schemas import DataSourceEvents, DataSourceType
from libs.datasources.storage.models import Metric, Segment


@pytest.fixture
def registry(services):
    return services.registry


def _ctx(*actions, projects=None, super_admin=False, default_datasource=None):
    return RequestContext(
        organization=Organization(id=ORG_ID, default_datasource=default_datasource),
        user_id="u_2",
        super_admin=super_admin,
        permissions=ActionSetPolicy(actions, projects),
    )


async def _add_dependent(database, model, datasource_id, name):
    async with database.async_session_factory() as session:
        session.add(
            model(
                id=f"{name}_id",
                organization=ORG_ID,
                datasource=datasource_id,
                name=name,
            )
        )
        await session.commit()


class TestCreate:
    @pytest.mark.asyncio
    async def test_creates_with_defaults(self, services, registry, ctx, vault):
        view = await registry.create_datasource(
            ctx,
            "Warehouse",
            "clickhouse",
            CLICKHOUSE_PARAMS,
            settings={
                "materialized_columns": [
                    {"source_field": "plan", "column_name": "plan", "datatype": "string"}
                ]
            },
            projects=["prj_a"],
        )

        assert view.id.startswith("ds_")
        assert view.type == DataSourceType.CLICKHOUSE
        assert view.settings.events == DataSourceEvents()
        assert view.settings.materialized_columns == []
        assert view.params["password"] == ""
        assert view.params["host"] == CLICKHOUSE_PARAMS["host"]

        stored = await services.datasources.get_by_id(ORG_ID, view.id)
        assert "customer-secret" not in stored.params
        assert vault.decrypt(stored.params) == CLICKHOUSE_PARAMS
        assert stored.projects == ["prj_a"]

    @pytest.mark.asyncio
    async def test_managed_type_is_rejected(self, registry, ctx):
        with pytest.raises(ValidationError) as exc_info:
            await registry.create_datasource(
                ctx, "Managed", "managed_clickhouse", CLICKHOUSE_PARAMS
            )
        assert exc_info.value.rule == "datasource_type"

    @pytest.mark.asyncio
    async def test_unknown_type_is_rejected(self, registry, ctx):
        with pytest.raises(ValidationError):
            await registry.create_datasource(ctx, "Lake", "databricks", {})

    @pytest.mark.asyncio
    async def test_invalid_params_store_nothing(self, services, registry, ctx, warehouse):
        with pytest.raises(ValidationError) as exc_info:
            await registry.create_datasource(
                ctx, "Warehouse", "clickhouse", {"host": "h", "bogus": True}
            )
        assert exc_info.value.rule == "params"
        assert warehouse.executed == []
        assert await services.datasources.list(ORG_ID) == []

    @pytest.mark.asyncio
    async def test_failed_connection_stores_nothing(
        self, services, registry, ctx, warehouse
    ):
        warehouse.healthy = False
        with pytest.raises(ConnectionError):
            await registry.create_datasource(
                ctx, "Warehouse", "clickhouse", CLICKHOUSE_PARAMS
            )
        assert await services.datasources.list(ORG_ID) == []

    @pytest.mark.asyncio
    async def test_requires_create_permission(self, registry):
        with pytest.raises(PermissionDeniedError):
            await registry.create_datasource(
                _ctx("read_data"), "Warehouse", "clickhouse", CLICKHOUSE_PARAMS
            )


class TestCreateManaged:
    @pytest.mark.asyncio
    async def test_super_admin_provisions(self, registry, warehouse):
        view = await registry.create_managed_datasource(
            _ctx(super_admin=True), "ds_new"
        )

        assert view.id == "ds_new"
        assert view.name == "Managed ClickHouse"
        assert view.type == DataSourceType.MANAGED_CLICKHOUSE
        assert view.params["username"] == "ds_new_reader"
        assert view.params["password"] == ""
        assert [q.id for q in view.settings.queries.exposure] == ["device_id", "user_id"]
        assert [t.user_id_type for t in view.settings.user_id_types] == [
            "device_id",
            "user_id",
        ]
        assert warehouse.executed[0].startswith("CREATE USER IF NOT EXISTS ds_new_reader")
        assert warehouse.executed[-1].startswith("CREATE ROW POLICY")

    @pytest.mark.asyncio
    async def test_others_are_denied(self, registry, ctx, warehouse):
        with pytest.raises(PermissionDeniedError):
            await registry.create_managed_datasource(ctx)
        assert warehouse.executed == []

    @pytest.mark.asyncio
    async def test_existing_id_conflicts(self, registry, managed_datasource, warehouse):
        with pytest.raises(ConflictError):
            await registry.create_managed_datasource(
                _ctx(super_admin=True), MANAGED_DATASOURCE_ID
            )
        assert warehouse.executed == []


class TestUpdate:
    @pytest.mark.asyncio
    async def test_type_is_immutable(self, registry, ctx, clickhouse_datasource):
        with pytest.raises(ValidationError) as exc_info:
            await registry.update_datasource(
                ctx,
                CLICKHOUSE_DATASOURCE_ID,
                DataSourceUpdate(type=DataSourceType.SNOWFLAKE),
            )
        assert exc_info.value.rule == "type_immutable"

    @pytest.mark.asyncio
    async def test_params_merge_keeps_blank_secrets(
        self, services, registry, ctx, clickhouse_datasource, vault
    ):
        view = await registry.update_datasource(
            ctx,
            CLICKHOUSE_DATASOURCE_ID,
            DataSourceUpdate(params={"host": "new.example.com", "password": ""}),
        )

        assert view.params["host"] == "new.example.com"
        stored = await services.datasources.get_by_id(ORG_ID, CLICKHOUSE_DATASOURCE_ID)
        assert vault.decrypt(stored.params) == {
            **CLICKHOUSE_PARAMS,
            "host": "new.example.com",
        }

    @pytest.mark.asyncio
    async def test_failed_params_test_keeps_old_params(
        self, services, registry, ctx, clickhouse_datasource, vault, warehouse
    ):
        warehouse.healthy = False
        with pytest.raises(ConnectionError):
            await registry.update_datasource(
                ctx, CLICKHOUSE_DATASOURCE_ID, DataSourceUpdate(params={"host": "bad"})
            )
        stored = await services.datasources.get_by_id(ORG_ID, CLICKHOUSE_DATASOURCE_ID)
        assert vault.decrypt(stored.params) == CLICKHOUSE_PARAMS

    @pytest.mark.asyncio
    async def test_settings_keep_declared_materialized_columns(
        self, services, registry, ctx, managed_datasource
    ):
        await services.materialized_columns.add_column(
            ctx,
            MANAGED_DATASOURCE_ID,
            {"source_field": "plan", "column_name": "plan", "datatype": "string"},
        )

        view = await registry.update_datasource(
            ctx,
            MANAGED_DATASOURCE_ID,
            DataSourceUpdate(
                name="Events",
                settings={"user_id_types": [{"user_id_type": "user_id"}]},
            ),
        )

        assert view.name == "Events"
        assert [t.user_id_type for t in view.settings.user_id_types] == ["user_id"]
        assert [c.column_name for c in view.settings.materialized_columns] == ["plan"]

    @pytest.mark.asyncio
    async def test_settings_update_keeps_omitted_keys(
        self, services, registry, ctx, clickhouse_datasource
    ):
        information_schema = await services.information_schemas.create(
            ORG_ID,
            CLICKHOUSE_DATASOURCE_ID,
            [{"table_schema": "default", "table_name": "orders", "columns": []}],
        )
        await services.datasources.update(
            ORG_ID,
            CLICKHOUSE_DATASOURCE_ID,
            {
                "settings": {
                    "information_schema_id": information_schema.id,
                    "user_id_types": [{"user_id_type": "user_id"}],
                }
            },
        )

        view = await registry.update_datasource(
            ctx,
            CLICKHOUSE_DATASOURCE_ID,
            DataSourceUpdate(
                settings={
                    "events": {"experiment_event": "exposure"},
                    "information_schema_id": "infosch_other",
                }
            ),
        )

        assert view.settings.information_schema_id == information_schema.id
        assert [t.user_id_type for t in view.settings.user_id_types] == ["user_id"]
        assert view.settings.events.experiment_event == "exposure"

        await registry.delete_datasource(ctx, CLICKHOUSE_DATASOURCE_ID)
        assert await services.information_schemas.count_tables(
            ORG_ID, information_schema.id
        ) == 0

    @pytest.mark.asyncio
    async def test_params_need_params_permission(self, registry, clickhouse_datasource):
        ctx = _ctx("update_datasource_settings")
        with pytest.raises(PermissionDeniedError):
            await registry.update_datasource(
                ctx, CLICKHOUSE_DATASOURCE_ID, DataSourceUpdate(params={"host": "h"})
            )

    @pytest.mark.asyncio
    async def test_moving_projects_needs_access_to_the_new_ones(
        self, registry, clickhouse_datasource
    ):
        ctx = _ctx("update_datasource_settings", projects=["prj_a"])
        with pytest.raises(PermissionDeniedError):
            await registry.update_datasource(
                ctx, CLICKHOUSE_DATASOURCE_ID, DataSourceUpdate(projects=["prj_b"])
            )

        view = await registry.update_datasource(
            ctx, CLICKHOUSE_DATASOURCE_ID, DataSourceUpdate(description="Shared")
        )
        assert view.description == "Shared"

    @pytest.mark.asyncio
    async def test_unknown_datasource(self, registry, ctx):
        with pytest.raises(NotFoundError):
            await registry.update_datasource(ctx, "ds_missing", DataSourceUpdate(name="x"))


class TestExposureQueries:
    @pytest.mark.asyncio
    async def test_merges_in_place(self, services, registry, ctx, managed_datasource):
        updated = await registry.update_exposure_query(
            ctx,
            MANAGED_DATASOURCE_ID,
            "device_id",
            {"name": "Devices", "id": "renamed", "dimensions": ["country"]},
        )

        assert updated.id == "device_id"
        assert updated.name == "Devices"
        assert updated.user_id_type == "device_id"

        view = await registry.get_datasource(ctx, MANAGED_DATASOURCE_ID)
        exposure = view.settings.queries.exposure
        assert [q.id for q in exposure] == ["device_id", "user_id"]
        assert exposure[0].dimensions == ["country"]
        assert exposure[1].name == "Logged in User Id Experiments"

    @pytest.mark.asyncio
    async def test_unknown_exposure_query(self, registry, ctx, managed_datasource):
        with pytest.raises(NotFoundError):
            await registry.update_exposure_query(
                ctx, MANAGED_DATASOURCE_ID, "missing", {"name": "x"}
            )


class TestDelete:
    @pytest.mark.asyncio
    async def test_deletes_record_and_information_schema(
        self, services, registry, ctx, clickhouse_datasource
    ):
        information_schema = await services.information_schemas.create(
            ORG_ID,
            CLICKHOUSE_DATASOURCE_ID,
            [{"table_schema": "default", "table_name": "orders", "columns": []}],
        )
        await services.datasources.update(
            ORG_ID,
            CLICKHOUSE_DATASOURCE_ID,
            {"settings": {"information_schema_id": information_schema.id}},
        )

        await registry.delete_datasource(ctx, CLICKHOUSE_DATASOURCE_ID)

        assert await services.datasources.get_by_id(ORG_ID, CLICKHOUSE_DATASOURCE_ID) is None
        assert await services.information_schemas.count_tables(
            ORG_ID, information_schema.id
        ) == 0

    @pytest.mark.asyncio
    async def test_default_datasource_cannot_be_deleted(
        self, services, registry, clickhouse_datasource
    ):
        ctx = _ctx("delete_datasource", default_datasource=CLICKHOUSE_DATASOURCE_ID)
        with pytest.raises(ConflictError) as exc_info:
            await registry.delete_datasource(ctx, CLICKHOUSE_DATASOURCE_ID)
        assert "default data source" in exc_info.value.message
        assert await services.datasources.get_by_id(ORG_ID, CLICKHOUSE_DATASOURCE_ID)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "model,label", [(Metric, "metrics"), (Segment, "segments")]
    )
    async def test_dependents_block_deletion(
        self, services, database, registry, ctx, clickhouse_datasource, model, label
    ):
        await _add_dependent(database, model, CLICKHOUSE_DATASOURCE_ID, "revenue")

        with pytest.raises(ConflictError) as exc_info:
            await registry.delete_datasource(ctx, CLICKHOUSE_DATASOURCE_ID)

        assert exc_info.value.context == {"dependents": label, "count": 1}
        assert await services.datasources.get_by_id(ORG_ID, CLICKHOUSE_DATASOURCE_ID)

    @pytest.mark.asyncio
    async def test_requires_delete_permission(self, registry, clickhouse_datasource):
        with pytest.raises(PermissionDeniedError):
            await registry.delete_datasource(_ctx("read_data"), CLICKHOUSE_DATASOURCE_ID)


class TestReads:
    @pytest.mark.asyncio
    async def test_list_flags_undecryptable_records(
        self, services, registry, ctx, managed_datasource, clickhouse_datasource
    ):
        await services.datasources.update(
            ORG_ID, CLICKHOUSE_DATASOURCE_ID, {"params": "garbage"}
        )

        views = {view.id: view for view in await registry.list_datasources(ctx)}

        assert views[CLICKHOUSE_DATASOURCE_ID].decryption_error is True
        assert views[CLICKHOUSE_DATASOURCE_ID].params == {}
        assert views[MANAGED_DATASOURCE_ID].decryption_error is False

    @pytest.mark.asyncio
    async def test_list_filters_by_read_permission(
        self, registry, managed_datasource, clickhouse_datasource
    ):
        views = await registry.list_datasources(_ctx("read_data", projects=["prj_a"]))
        assert [view.id for view in views] == [CLICKHOUSE_DATASOURCE_ID]

    @pytest.mark.asyncio
    async def test_get_requires_read_permission(self, registry, clickhouse_datasource):
        with pytest.raises(PermissionDeniedError):
            await registry.get_datasource(_ctx("run_queries"), CLICKHOUSE_DATASOURCE_ID)

    @pytest.mark.asyncio
    async def test_get_queries_preserves_order(
        self, services, registry, ctx, managed_datasource
    ):
        first = await services.queries.create(ORG_ID, MANAGED_DATASOURCE_ID, "SELECT 1")
        second = await services.queries.create(ORG_ID, MANAGED_DATASOURCE_ID, "SELECT 2")

        queries = await registry.get_queries(ctx, [second.id, "qry_missing", first.id])

        assert [q.id if q else None for q in queries] == [second.id, None, first.id]

    @pytest.mark.asyncio
    async def test_datasource_metrics(
        self, database, registry, ctx, clickhouse_datasource
    ):
        await _add_dependent(database, Metric, CLICKHOUSE_DATASOURCE_ID, "revenue")
        metrics = await registry.get_datasource_metrics(ctx, CLICKHOUSE_DATASOURCE_ID)
        assert [m.name for m in metrics] == ["revenue"]

    @pytest.mark.asyncio
    async def test_integration_requires_run_queries(self, registry, clickhouse_datasource):
        with pytest.raises(PermissionDeniedError):
            await registry.get_integration(_ctx("read_data"), CLICKHOUSE_DATASOURCE_ID)
