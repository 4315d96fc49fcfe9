"""
Lifecycle of materialized columns.

A materialized column lives in three places: the data source's declared
settings, the physical events table and the cached columns of every fact table
on the data source. Each operation runs DDL first, persists settings only once
the DDL succeeded, then refreshes fact tables. There is no cross-store
rollback; ``reconcile`` repairs drift between settings and the warehouse.
"""

import asyncio
from typing import Any

import structlog

from .exceptions import (
    ConflictError,
    DataSourceError,
    NotFoundError,
    UnsupportedOperationError,
)
from .fact_tables import FactTableRefresher
from .integration import IntegrationFactory, WarehouseIntegration
from .permissions import RequestContext
from .sanitizer import IdentifierSanitizer
from .schemas import DataSourceView, MaterializedColumn, MaterializedColumnReconcileReport
from .storage.repositories import DataSourceRepository

logger = structlog.get_logger(__name__)


class MaterializedColumnManager:
    """Add, rename, redefine, delete and reconcile materialized columns."""

    def __init__(
        self,
        datasources: DataSourceRepository,
        integration_factory: IntegrationFactory,
        fact_table_refresher: FactTableRefresher,
        sanitizer: IdentifierSanitizer,
    ):
        self.datasources = datasources
        self.integration_factory = integration_factory
        self.fact_table_refresher = fact_table_refresher
        self.sanitizer = sanitizer
        self._locks: dict[str, asyncio.Lock] = {}
        self.logger = logger.bind(component="materialized_column_manager")

    def _lock_for(self, datasource_id: str) -> asyncio.Lock:
        # Serializes mutations per data source within this process only
        return self._locks.setdefault(datasource_id, asyncio.Lock())

    async def _load(
        self, ctx: RequestContext, datasource_id: str
    ) -> WarehouseIntegration:
        datasource = await self.datasources.get_by_id(ctx.org_id, datasource_id)
        if datasource is None:
            raise NotFoundError(f"Could not find datasource {datasource_id}")

        if not ctx.permissions.can_update_datasource_settings(datasource.projects):
            ctx.permissions.throw_permission_error("update_datasource_settings")

        integration = self.integration_factory(datasource)
        if not integration.supports_materialized_columns:
            raise UnsupportedOperationError(
                "Materialized columns are not supported for "
                f"{integration.type.value} data sources"
            )
        return integration

    @staticmethod
    def _find(columns: list[MaterializedColumn], column_name: str) -> int | None:
        for index, column in enumerate(columns):
            if column.column_name == column_name:
                return index
        return None

    @staticmethod
    def _name_taken(
        columns: list[MaterializedColumn], column_name: str, ignore_index: int | None
    ) -> bool:
        cmp = column_name.lower()
        return any(
            column.column_name.lower() == cmp
            for index, column in enumerate(columns)
            if index != ignore_index
        )

    async def _persist(
        self, integration: WarehouseIntegration, columns: list[MaterializedColumn]
    ) -> DataSourceView:
        settings = integration.settings.model_copy(
            update={"materialized_columns": columns}
        )
        datasource = await self.datasources.update(
            integration.organization,
            integration.id,
            {"settings": settings.to_document()},
        )
        if datasource is None:
            raise NotFoundError(f"Could not find datasource {integration.id}")
        await self.fact_table_refresher.refresh_for_datasource(integration)
        return self.integration_factory(datasource).to_view()

    async def add_column(
        self,
        ctx: RequestContext,
        datasource_id: str,
        column_input: MaterializedColumn | dict[str, Any],
    ) -> DataSourceView:
        """
        Declare a new column and create it in the warehouse.

        Raises:
            ConflictError: If the name is already declared or physically present
        """
        async with self._lock_for(datasource_id):
            integration = await self._load(ctx, datasource_id)
            column = self.sanitizer.sanitize_materialized_column(column_input)
            columns = list(integration.settings.materialized_columns)

            if self._name_taken(columns, column.column_name, None):
                raise ConflictError(
                    f"Materialized column {column.column_name} already exists"
                )
            physical = {
                name.lower()
                for name in await integration.get_materialized_table_columns()
            }
            if column.column_name.lower() in physical:
                raise ConflictError(
                    f"Column {column.column_name} already exists in the warehouse table"
                )

            await integration.add_materialized_column(column)
            columns.append(column)
            view = await self._persist(integration, columns)

        self.logger.info(
            "materialized_column_declared",
            datasource_id=datasource_id,
            column_name=column.column_name,
        )
        return view

    async def update_column(
        self,
        ctx: RequestContext,
        datasource_id: str,
        column_name: str,
        column_input: MaterializedColumn | dict[str, Any],
    ) -> DataSourceView:
        """
        Rename or redefine a declared column.

        Fields missing from ``column_input`` keep their current value. When
        only the name changes the column is renamed in place; any change to
        the source field or datatype drops and re-adds it.

        Raises:
            NotFoundError: If ``column_name`` is not declared
            ConflictError: On a rename to the current name or onto another
                declared column
        """
        async with self._lock_for(datasource_id):
            integration = await self._load(ctx, datasource_id)
            columns = list(integration.settings.materialized_columns)
            index = self._find(columns, column_name)
            if index is None:
                raise NotFoundError(
                    f"Materialized column {column_name} does not exist"
                )
            original = columns[index]

            updates = (
                column_input.model_dump()
                if isinstance(column_input, MaterializedColumn)
                else {k: v for k, v in column_input.items() if v is not None}
            )
            column = self.sanitizer.sanitize_materialized_column(
                {**original.model_dump(), **updates}
            )

            rename_only = (
                column.source_field == original.source_field
                and column.datatype == original.datatype
            )
            if rename_only and column.column_name == original.column_name:
                raise ConflictError(
                    f"Materialized column is already named {column.column_name}"
                )
            if self._name_taken(columns, column.column_name, index):
                raise ConflictError(
                    f"Materialized column {column.column_name} already exists"
                )

            if rename_only:
                await integration.rename_materialized_column(
                    original.column_name, column.column_name
                )
            else:
                await self._redefine(integration, original, column)

            columns[index] = column
            view = await self._persist(integration, columns)

        self.logger.info(
            "materialized_column_updated",
            datasource_id=datasource_id,
            from_name=original.column_name,
            to_name=column.column_name,
            rename_only=rename_only,
        )
        return view

    async def _redefine(
        self,
        integration: WarehouseIntegration,
        original: MaterializedColumn,
        column: MaterializedColumn,
    ) -> None:
        await integration.drop_materialized_column(original.column_name)
        try:
            await integration.add_materialized_column(column)
        except DataSourceError as add_error:
            self.logger.error(
                "materialized_column_redefine_failed",
                datasource_id=integration.id,
                column_name=column.column_name,
                error=add_error.message,
            )
            try:
                await integration.add_materialized_column(original)
            except DataSourceError as restore_error:
                self.logger.error(
                    "materialized_column_restore_failed",
                    datasource_id=integration.id,
                    column_name=original.column_name,
                    error=restore_error.message,
                )
            else:
                self.logger.warning(
                    "materialized_column_restored",
                    datasource_id=integration.id,
                    column_name=original.column_name,
                )
            raise

    async def delete_column(
        self, ctx: RequestContext, datasource_id: str, column_name: str
    ) -> DataSourceView:
        """
        Drop a declared column.

        Raises:
            NotFoundError: If ``column_name`` is not declared
        """
        async with self._lock_for(datasource_id):
            integration = await self._load(ctx, datasource_id)
            columns = list(integration.settings.materialized_columns)
            index = self._find(columns, column_name)
            if index is None:
                raise NotFoundError(
                    f"Materialized column {column_name} does not exist"
                )

            await integration.drop_materialized_column(column_name)
            del columns[index]
            view = await self._persist(integration, columns)

        self.logger.info(
            "materialized_column_deleted",
            datasource_id=datasource_id,
            column_name=column_name,
        )
        return view

    async def reconcile(
        self, ctx: RequestContext, datasource_id: str
    ) -> MaterializedColumnReconcileReport:
        """
        Heal drift between declared settings and the warehouse table.

        Declared columns missing from the table are re-added. Undeclared,
        non-reserved physical columns are reported as orphaned and left alone.
        """
        async with self._lock_for(datasource_id):
            integration = await self._load(ctx, datasource_id)
            declared = integration.settings.materialized_columns
            physical = await integration.get_materialized_table_columns()
            physical_lower = {name.lower() for name in physical}

            report = MaterializedColumnReconcileReport()
            for column in declared:
                if column.column_name.lower() not in physical_lower:
                    await integration.add_materialized_column(column)
                    report.added.append(column.column_name)

            declared_lower = {column.column_name.lower() for column in declared}
            reserved = self.sanitizer.reserved_names()
            report.orphaned = [
                name
                for name in physical
                if name.lower() not in declared_lower and name.lower() not in reserved
            ]

            await self.fact_table_refresher.refresh_for_datasource(integration)

        self.logger.info(
            "materialized_columns_reconciled",
            datasource_id=datasource_id,
            added=report.added,
            orphaned=report.orphaned,
        )
        return report
