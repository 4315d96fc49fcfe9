"""Refresh of cached fact-table columns from the warehouse."""

import re
from typing import Any

import structlog
from pydantic import BaseModel, Field

from .connectors.base import ColumnInfo
from .exceptions import DataSourceError
from .integration import WarehouseIntegration
from .schemas import FactTableColumn, FactTableColumnType
from .storage.models import FactTable
from .storage.repositories import FactTableRepository
from .templates import compile_sql_template, lookback_window

logger = structlog.get_logger(__name__)

_WRAPPER_PATTERN = re.compile(r"^(Nullable|LowCardinality)\((.*)\)$", re.IGNORECASE)


def map_warehouse_type(data_type: str) -> FactTableColumnType:
    """Collapse a warehouse column type onto the fact-table type set."""
    value = data_type.strip()
    while match := _WRAPPER_PATTERN.match(value):
        value = match.group(2).strip()
    value = value.lower()

    if value.startswith(("array", "map", "tuple", "struct", "record", "json", "variant", "object")):
        return FactTableColumnType.OTHER
    if "bool" in value:
        return FactTableColumnType.BOOLEAN
    if "date" in value or "time" in value:
        return FactTableColumnType.DATE
    if any(
        token in value
        for token in ("int", "float", "double", "decimal", "numeric", "number", "real")
    ):
        return FactTableColumnType.NUMBER
    if any(token in value for token in ("string", "char", "text", "uuid", "enum")):
        return FactTableColumnType.STRING
    return FactTableColumnType.OTHER


def merge_columns(
    existing: list[dict[str, Any]], observed: list[ColumnInfo]
) -> list[dict[str, Any]]:
    """
    Cached columns after a refresh.

    Surviving columns keep their position and user-entered name/description
    but take the observed type; new columns are appended; columns that are no
    longer observed are dropped.
    """
    observed_types = {
        column.name: map_warehouse_type(column.data_type).value for column in observed
    }
    merged: list[dict[str, Any]] = []
    seen: set[str] = set()

    for entry in existing:
        cached = FactTableColumn.model_validate(entry)
        if cached.column not in observed_types or cached.column in seen:
            continue
        seen.add(cached.column)
        merged.append(
            cached.model_copy(
                update={"datatype": observed_types[cached.column]}
            ).model_dump()
        )

    for column in observed:
        if column.name in seen:
            continue
        seen.add(column.name)
        merged.append(
            FactTableColumn(
                column=column.name,
                datatype=observed_types[column.name],
                name=column.name,
                description="",
            ).model_dump()
        )

    return merged


class FactTableRefreshReport(BaseModel):
    refreshed: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)


class FactTableRefresher:
    """Re-introspects fact tables after their warehouse schema changes."""

    def __init__(self, fact_tables: FactTableRepository, lookback_days: int = 7):
        self.fact_tables = fact_tables
        self.lookback_days = lookback_days
        self.logger = logger.bind(component="fact_table_refresher")

    async def refresh_fact_table(
        self, integration: WarehouseIntegration, fact_table: FactTable
    ) -> list[dict[str, Any]]:
        start, end = lookback_window(self.lookback_days)
        sql = compile_sql_template(
            fact_table.sql, start, end, escape=integration.escape_string_literal
        )
        observed = await integration.describe_query(sql)
        columns = merge_columns(list(fact_table.columns or []), observed)
        await self.fact_tables.update_columns(
            fact_table.organization, fact_table.id, columns
        )
        return columns

    async def refresh_for_datasource(
        self, integration: WarehouseIntegration
    ) -> FactTableRefreshReport:
        """
        Refresh every fact table of a data source.

        A table whose SQL cannot be described is reported in ``failed`` and
        keeps its previous cache; the other tables are still refreshed.
        """
        report = FactTableRefreshReport()
        fact_tables = await self.fact_tables.list_by_datasource(
            integration.organization, integration.id
        )
        for fact_table in fact_tables:
            try:
                await self.refresh_fact_table(integration, fact_table)
            except DataSourceError as e:
                self.logger.error(
                    "fact_table_refresh_failed",
                    fact_table_id=fact_table.id,
                    datasource_id=integration.id,
                    error=e.message,
                )
                report.failed[fact_table.id] = e.message
            else:
                report.refreshed.append(fact_table.id)

        self.logger.info(
            "fact_tables_refreshed",
            datasource_id=integration.id,
            refreshed=len(report.refreshed),
            failed=len(report.failed),
        )
        return report
