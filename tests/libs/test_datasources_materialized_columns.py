"""Tests for the materialized column lifecycle on managed ClickHouse."""

import pytest
import pytest_asyncio
from conftest import CLICKHOUSE_DATASOURCE_ID, MANAGED_DATASOURCE_ID, ORG_ID

from libs.datasources.connectors.base import QueryError
from libs.datasources.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    UnsupportedOperationError,
    ValidationError,
)
from libs.datasources.permissions import (
    ActionSetPolicy,
    Organization,
    RequestContext,
)


def _column(column_name, source_field=None, datatype="string"):
    return {
        "source_field": source_field or column_name,
        "column_name": column_name,
        "datatype": datatype,
    }


def _declared(view):
    return [column.column_name for column in view.settings.materialized_columns]


@pytest.fixture
def manager(services):
    return services.materialized_columns


class TestAddColumn:
    @pytest.mark.asyncio
    async def test_adds_to_warehouse_and_settings(
        self, services, manager, ctx, managed_datasource, warehouse
    ):
        view = await manager.add_column(
            ctx, MANAGED_DATASOURCE_ID, _column("plan_type", "Plan Type")
        )

        assert _declared(view) == ["plan_type"]
        assert view.params["password"] == ""
        assert "plan_type" in warehouse.column_names()
        assert warehouse.ddl() == [
            "ALTER TABLE analytics.events ADD COLUMN IF NOT EXISTS plan_type String "
            "MATERIALIZED JSONExtractString(properties_json, 'Plan Type')"
        ]

        stored = await services.datasources.get_by_id(ORG_ID, MANAGED_DATASOURCE_ID)
        assert stored.settings["materialized_columns"] == [
            {"source_field": "Plan Type", "column_name": "plan_type", "datatype": "string"}
        ]

    @pytest.mark.asyncio
    async def test_duplicate_names_conflict_case_insensitively(
        self, manager, ctx, managed_datasource, warehouse
    ):
        await manager.add_column(ctx, MANAGED_DATASOURCE_ID, _column("plan"))

        with pytest.raises(ConflictError):
            await manager.add_column(
                ctx, MANAGED_DATASOURCE_ID, _column("PLAN", source_field="other")
            )
        assert len(warehouse.ddl()) == 1

    @pytest.mark.asyncio
    async def test_physically_present_column_conflicts(
        self, services, manager, ctx, managed_datasource, warehouse
    ):
        warehouse.columns.append(("legacy_score", "Float64"))

        with pytest.raises(ConflictError):
            await manager.add_column(ctx, MANAGED_DATASOURCE_ID, _column("legacy_score"))

        assert warehouse.ddl() == []
        stored = await services.datasources.get_by_id(ORG_ID, MANAGED_DATASOURCE_ID)
        assert stored.settings["materialized_columns"] == []

    @pytest.mark.asyncio
    async def test_reserved_names_are_rejected(self, manager, ctx, managed_datasource):
        with pytest.raises(ValidationError) as exc_info:
            await manager.add_column(ctx, MANAGED_DATASOURCE_ID, _column("device_id"))
        assert exc_info.value.rule == "column_name_reserved"

    @pytest.mark.asyncio
    async def test_ddl_failure_leaves_settings_untouched(
        self, services, manager, ctx, managed_datasource, warehouse
    ):
        warehouse.fail_when = lambda sql: sql.startswith("ALTER")

        with pytest.raises(QueryError):
            await manager.add_column(ctx, MANAGED_DATASOURCE_ID, _column("plan"))

        stored = await services.datasources.get_by_id(ORG_ID, MANAGED_DATASOURCE_ID)
        assert stored.settings["materialized_columns"] == []


class TestUpdateColumn:
    @pytest_asyncio.fixture
    async def declared(self, manager, ctx, managed_datasource):
        for name in ("alpha", "beta", "gamma"):
            await manager.add_column(ctx, MANAGED_DATASOURCE_ID, _column(name))

    @pytest.mark.asyncio
    async def test_rename_keeps_position(self, manager, ctx, declared, warehouse):
        view = await manager.update_column(
            ctx, MANAGED_DATASOURCE_ID, "beta", {"column_name": "beta_renamed"}
        )

        assert _declared(view) == ["alpha", "beta_renamed", "gamma"]
        assert view.settings.materialized_columns[1].source_field == "beta"
        assert warehouse.ddl()[-1] == (
            "ALTER TABLE analytics.events RENAME COLUMN IF EXISTS beta TO beta_renamed"
        )
        assert "beta_renamed" in warehouse.column_names()
        assert "beta" not in warehouse.column_names()

    @pytest.mark.asyncio
    async def test_rename_to_current_name_conflicts(
        self, manager, ctx, declared, warehouse
    ):
        ddl_before = len(warehouse.ddl())
        with pytest.raises(ConflictError):
            await manager.update_column(
                ctx, MANAGED_DATASOURCE_ID, "beta", {"column_name": "beta"}
            )
        assert len(warehouse.ddl()) == ddl_before

    @pytest.mark.asyncio
    async def test_rename_onto_another_column_conflicts(self, manager, ctx, declared):
        with pytest.raises(ConflictError):
            await manager.update_column(
                ctx, MANAGED_DATASOURCE_ID, "beta", {"column_name": "Gamma"}
            )

    @pytest.mark.asyncio
    async def test_unknown_column(self, manager, ctx, declared):
        with pytest.raises(NotFoundError):
            await manager.update_column(
                ctx, MANAGED_DATASOURCE_ID, "delta", {"column_name": "epsilon"}
            )

    @pytest.mark.asyncio
    async def test_redefine_drops_and_re_adds(self, services, manager, ctx, declared, warehouse):
        fact_table = await services.fact_tables.create(
            ORG_ID, MANAGED_DATASOURCE_ID, "Events", "SELECT * FROM analytics.events"
        )

        view = await manager.update_column(
            ctx,
            MANAGED_DATASOURCE_ID,
            "beta",
            {"column_name": "beta_value", "datatype": "number"},
        )

        assert _declared(view) == ["alpha", "beta_value", "gamma"]
        assert warehouse.ddl()[-2:] == [
            "ALTER TABLE analytics.events DROP COLUMN IF EXISTS beta",
            "ALTER TABLE analytics.events ADD COLUMN IF NOT EXISTS beta_value "
            "Nullable(Float64) MATERIALIZED "
            "JSONExtract(properties_json, 'beta', 'Nullable(Float64)')",
        ]
        assert "beta" not in warehouse.column_names()
        assert "beta_value" in warehouse.column_names()

        refreshed = await services.fact_tables.get_by_id(ORG_ID, fact_table.id)
        cached = {column["column"]: column["datatype"] for column in refreshed.columns}
        assert cached["beta_value"] == "number"
        assert "beta" not in cached

    @pytest.mark.asyncio
    async def test_partial_input_keeps_other_fields(self, manager, ctx, declared):
        view = await manager.update_column(
            ctx, MANAGED_DATASOURCE_ID, "gamma", {"datatype": "boolean"}
        )
        column = view.settings.materialized_columns[2]
        assert (column.column_name, column.source_field, column.datatype) == (
            "gamma",
            "gamma",
            "boolean",
        )

    @pytest.mark.asyncio
    async def test_failed_redefine_restores_the_original_column(
        self, services, manager, ctx, declared, warehouse
    ):
        warehouse.fail_when = lambda sql: "ADD COLUMN" in sql and "Float64" in sql

        with pytest.raises(QueryError):
            await manager.update_column(
                ctx, MANAGED_DATASOURCE_ID, "beta", {"datatype": "number"}
            )

        assert warehouse.ddl()[-1].startswith(
            "ALTER TABLE analytics.events ADD COLUMN IF NOT EXISTS beta String"
        )
        assert "beta" in warehouse.column_names()
        stored = await services.datasources.get_by_id(ORG_ID, MANAGED_DATASOURCE_ID)
        assert stored.settings["materialized_columns"][1]["datatype"] == "string"


class TestDeleteColumn:
    @pytest.mark.asyncio
    async def test_deletes_from_warehouse_and_settings(
        self, manager, ctx, managed_datasource, warehouse
    ):
        await manager.add_column(ctx, MANAGED_DATASOURCE_ID, _column("plan"))

        view = await manager.delete_column(ctx, MANAGED_DATASOURCE_ID, "plan")

        assert _declared(view) == []
        assert "plan" not in warehouse.column_names()
        assert warehouse.ddl()[-1] == (
            "ALTER TABLE analytics.events DROP COLUMN IF EXISTS plan"
        )

    @pytest.mark.asyncio
    async def test_unknown_column(self, manager, ctx, managed_datasource, warehouse):
        with pytest.raises(NotFoundError):
            await manager.delete_column(ctx, MANAGED_DATASOURCE_ID, "plan")
        assert warehouse.ddl() == []


class TestGuards:
    @pytest.mark.asyncio
    async def test_unknown_datasource(self, manager, ctx):
        with pytest.raises(NotFoundError):
            await manager.add_column(ctx, "ds_missing", _column("plan"))

    @pytest.mark.asyncio
    async def test_unsupported_for_customer_clickhouse(
        self, manager, ctx, clickhouse_datasource, warehouse
    ):
        with pytest.raises(UnsupportedOperationError):
            await manager.add_column(ctx, CLICKHOUSE_DATASOURCE_ID, _column("plan"))
        assert warehouse.executed == []

    @pytest.mark.asyncio
    async def test_requires_settings_permission(self, manager, managed_datasource):
        ctx = RequestContext(
            organization=Organization(id=ORG_ID),
            permissions=ActionSetPolicy(["read_data"]),
        )
        with pytest.raises(PermissionDeniedError):
            await manager.add_column(ctx, MANAGED_DATASOURCE_ID, _column("plan"))


class TestReconcile:
    @pytest.mark.asyncio
    async def test_re_adds_missing_and_reports_orphans(
        self, manager, ctx, managed_datasource, warehouse
    ):
        await manager.add_column(ctx, MANAGED_DATASOURCE_ID, _column("plan"))
        await manager.add_column(ctx, MANAGED_DATASOURCE_ID, _column("tier"))
        warehouse.columns = [c for c in warehouse.columns if c[0] != "plan"]
        warehouse.columns.append(("leftover", "String"))

        report = await manager.reconcile(ctx, MANAGED_DATASOURCE_ID)

        assert report.added == ["plan"]
        assert report.orphaned == ["leftover"]
        assert "plan" in warehouse.column_names()

    @pytest.mark.asyncio
    async def test_in_sync_is_a_no_op(self, manager, ctx, managed_datasource, warehouse):
        await manager.add_column(ctx, MANAGED_DATASOURCE_ID, _column("plan"))
        ddl_before = len(warehouse.ddl())

        report = await manager.reconcile(ctx, MANAGED_DATASOURCE_ID)

        assert report.added == []
        assert report.orphaned == []
        assert len(warehouse.ddl()) == ddl_before
