"""Repositories for data source storage operations.

Each repository takes a session factory and opens one short session per call,
so the same repository can be shared by request handlers and background
analysis tasks. Returned ORM objects are detached (``expire_on_commit=False``);
JSON columns are always reassigned, never mutated in place.
"""

from collections.abc import Iterable, Sequence
from typing import Any

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models import (
    DataSource,
    Dimension,
    DimensionSlicesRun,
    FactTable,
    InformationSchema,
    InformationSchemaTable,
    Metric,
    QueryRecord,
    Segment,
    generate_id,
    utcnow,
)

logger = structlog.get_logger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


class DataSourceRepository:
    """Repository for data source records."""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory
        self.logger = logger.bind(component="datasource_repository")

    async def create(
        self,
        organization: str,
        name: str,
        type: str,
        params: str,
        settings: dict[str, Any],
        id: str | None = None,
        description: str | None = None,
        projects: list[str] | None = None,
    ) -> DataSource:
        """Create a data source. ``params`` must already be encrypted."""
        now = utcnow()
        datasource = DataSource(
            id=id or generate_id("ds"),
            organization=organization,
            name=name,
            description=description,
            type=type,
            params=params,
            settings=dict(settings),
            projects=list(projects or []),
            date_created=now,
            date_updated=now,
        )
        async with self.session_factory() as session:
            try:
                session.add(datasource)
                await session.commit()
            except Exception as error:
                await session.rollback()
                self.logger.error(
                    "datasource_create_failed",
                    organization=organization,
                    error=str(error),
                )
                raise

        self.logger.info(
            "datasource_created",
            datasource_id=datasource.id,
            organization=organization,
            type=type,
        )
        return datasource

    async def get_by_id(self, organization: str, datasource_id: str) -> DataSource | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DataSource).where(
                    DataSource.organization == organization,
                    DataSource.id == datasource_id,
                )
            )
            return result.scalar_one_or_none()

    async def list(self, organization: str) -> Sequence[DataSource]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DataSource)
                .where(DataSource.organization == organization)
                .order_by(DataSource.date_created)
            )
            return result.scalars().all()

    async def update(
        self, organization: str, datasource_id: str, updates: dict[str, Any]
    ) -> DataSource | None:
        """Apply a partial update; ``date_updated`` is always bumped."""
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    select(DataSource).where(
                        DataSource.organization == organization,
                        DataSource.id == datasource_id,
                    )
                )
                datasource = result.scalar_one_or_none()
                if datasource is None:
                    return None

                for key, value in updates.items():
                    if key in ("id", "organization", "date_created"):
                        continue
                    if hasattr(datasource, key):
                        setattr(datasource, key, value)
                datasource.date_updated = utcnow()
                await session.commit()

            except Exception as error:
                await session.rollback()
                self.logger.error(
                    "datasource_update_failed",
                    datasource_id=datasource_id,
                    error=str(error),
                )
                raise

        self.logger.info(
            "datasource_updated",
            datasource_id=datasource_id,
            fields=sorted(updates.keys()),
        )
        return datasource

    async def delete(self, organization: str, datasource_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(DataSource).where(
                    DataSource.organization == organization,
                    DataSource.id == datasource_id,
                )
            )
            await session.commit()
        deleted = result.rowcount > 0
        if deleted:
            self.logger.info("datasource_deleted", datasource_id=datasource_id)
        return deleted


class FactTableRepository:
    """Repository for fact tables and their cached columns."""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory
        self.logger = logger.bind(component="fact_table_repository")

    async def create(
        self,
        organization: str,
        datasource: str,
        name: str,
        sql: str,
        columns: list[dict[str, Any]] | None = None,
        id: str | None = None,
    ) -> FactTable:
        fact_table = FactTable(
            id=id or generate_id("ftb"),
            organization=organization,
            datasource=datasource,
            name=name,
            sql=sql,
            columns=list(columns or []),
            date_updated=utcnow(),
        )
        async with self.session_factory() as session:
            session.add(fact_table)
            await session.commit()
        return fact_table

    async def get_by_id(self, organization: str, fact_table_id: str) -> FactTable | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(FactTable).where(
                    FactTable.organization == organization,
                    FactTable.id == fact_table_id,
                )
            )
            return result.scalar_one_or_none()

    async def list_by_datasource(
        self, organization: str, datasource_id: str
    ) -> Sequence[FactTable]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(FactTable)
                .where(
                    FactTable.organization == organization,
                    FactTable.datasource == datasource_id,
                )
                .order_by(FactTable.id)
            )
            return result.scalars().all()

    async def update_columns(
        self, organization: str, fact_table_id: str, columns: list[dict[str, Any]]
    ) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(FactTable)
                .where(
                    FactTable.organization == organization,
                    FactTable.id == fact_table_id,
                )
                .values(columns=list(columns), date_updated=utcnow())
            )
            await session.commit()
        self.logger.info(
            "fact_table_columns_updated",
            fact_table_id=fact_table_id,
            column_count=len(columns),
        )


class DependentsRepository:
    """Counts of entities that keep a data source from being deleted."""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    async def _count(self, model: Any, organization: str, datasource_id: str) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(model)
                .where(
                    model.organization == organization,
                    model.datasource == datasource_id,
                )
            )
            return int(result.scalar_one())

    async def count_metrics(self, organization: str, datasource_id: str) -> int:
        return await self._count(Metric, organization, datasource_id)

    async def count_segments(self, organization: str, datasource_id: str) -> int:
        return await self._count(Segment, organization, datasource_id)

    async def count_dimensions(self, organization: str, datasource_id: str) -> int:
        return await self._count(Dimension, organization, datasource_id)

    async def list_metrics(
        self, organization: str, datasource_id: str
    ) -> Sequence[Metric]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Metric)
                .where(
                    Metric.organization == organization,
                    Metric.datasource == datasource_id,
                )
                .order_by(Metric.name)
            )
            return result.scalars().all()


class InformationSchemaRepository:
    """Cached warehouse catalogs, removed together with their data source."""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory
        self.logger = logger.bind(component="information_schema_repository")

    async def create(
        self,
        organization: str,
        datasource_id: str,
        tables: Iterable[dict[str, Any]] = (),
    ) -> InformationSchema:
        information_schema = InformationSchema(
            id=generate_id("inf"),
            organization=organization,
            datasource=datasource_id,
            status="COMPLETE",
            date_created=utcnow(),
        )
        information_schema.tables = [
            InformationSchemaTable(
                id=generate_id("tbl"),
                organization=organization,
                table_schema=table["table_schema"],
                table_name=table["table_name"],
                columns=list(table.get("columns", [])),
            )
            for table in tables
        ]
        async with self.session_factory() as session:
            session.add(information_schema)
            await session.commit()
        return information_schema

    async def count_tables(self, organization: str, information_schema_id: str) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(InformationSchemaTable)
                .where(
                    InformationSchemaTable.organization == organization,
                    InformationSchemaTable.information_schema_id
                    == information_schema_id,
                )
            )
            return int(result.scalar_one())

    async def delete(self, organization: str, information_schema_id: str) -> None:
        """Delete an information schema and all of its tables."""
        async with self.session_factory() as session:
            await session.execute(
                delete(InformationSchemaTable).where(
                    InformationSchemaTable.organization == organization,
                    InformationSchemaTable.information_schema_id
                    == information_schema_id,
                )
            )
            await session.execute(
                delete(InformationSchema).where(
                    InformationSchema.organization == organization,
                    InformationSchema.id == information_schema_id,
                )
            )
            await session.commit()
        self.logger.info(
            "information_schema_deleted", information_schema_id=information_schema_id
        )


class DimensionSlicesRepository:
    """Dimension-slice run records."""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory
        self.logger = logger.bind(component="dimension_slices_repository")

    async def create(
        self,
        organization: str,
        datasource_id: str,
        exposure_query_id: str,
        lookback_days: int,
    ) -> DimensionSlicesRun:
        now = utcnow()
        run = DimensionSlicesRun(
            id=generate_id("dimslice"),
            organization=organization,
            datasource=datasource_id,
            exposure_query_id=exposure_query_id,
            lookback_days=lookback_days,
            status="created",
            results=[],
            query_ids=[],
            date_created=now,
            date_updated=now,
        )
        async with self.session_factory() as session:
            session.add(run)
            await session.commit()
        return run

    async def get_by_id(self, organization: str, run_id: str) -> DimensionSlicesRun | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DimensionSlicesRun).where(
                    DimensionSlicesRun.organization == organization,
                    DimensionSlicesRun.id == run_id,
                )
            )
            return result.scalar_one_or_none()

    async def get_latest(
        self, organization: str, datasource_id: str, exposure_query_id: str
    ) -> DimensionSlicesRun | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DimensionSlicesRun)
                .where(
                    DimensionSlicesRun.organization == organization,
                    DimensionSlicesRun.datasource == datasource_id,
                    DimensionSlicesRun.exposure_query_id == exposure_query_id,
                )
                .order_by(DimensionSlicesRun.date_created.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def update(
        self, organization: str, run_id: str, updates: dict[str, Any]
    ) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(DimensionSlicesRun)
                .where(
                    DimensionSlicesRun.organization == organization,
                    DimensionSlicesRun.id == run_id,
                )
                .values(**updates, date_updated=utcnow())
            )
            await session.commit()

    async def transition(
        self,
        organization: str,
        run_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        **fields: Any,
    ) -> bool:
        """
        Compare-and-set the run status.

        Returns:
            bool: False when the run was no longer in one of ``from_statuses``
        """
        async with self.session_factory() as session:
            result = await session.execute(
                update(DimensionSlicesRun)
                .where(
                    DimensionSlicesRun.organization == organization,
                    DimensionSlicesRun.id == run_id,
                    DimensionSlicesRun.status.in_(list(from_statuses)),
                )
                .values(status=to_status, date_updated=utcnow(), **fields)
            )
            await session.commit()
        return result.rowcount > 0


class QueryRepository:
    """Log of warehouse round-trips issued by analysis jobs."""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory
        self.logger = logger.bind(component="query_repository")

    async def create(
        self,
        organization: str,
        datasource_id: str,
        query: str,
        status: str = "running",
    ) -> QueryRecord:
        now = utcnow()
        record = QueryRecord(
            id=generate_id("qry"),
            organization=organization,
            datasource=datasource_id,
            language="sql",
            query=query,
            status=status,
            started_at=now if status == "running" else None,
            date_created=now,
        )
        async with self.session_factory() as session:
            session.add(record)
            await session.commit()
        return record

    async def finish(
        self,
        organization: str,
        query_id: str,
        status: str,
        error: str | None = None,
        row_count: int | None = None,
    ) -> bool:
        """Record the outcome of a query that is still queued or running."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(QueryRecord)
                .where(
                    QueryRecord.organization == organization,
                    QueryRecord.id == query_id,
                    QueryRecord.status.in_(["queued", "running"]),
                )
                .values(
                    status=status,
                    error=error,
                    row_count=row_count,
                    finished_at=utcnow(),
                )
            )
            await session.commit()
        return result.rowcount > 0

    async def mark_canceled(self, organization: str, query_ids: Iterable[str]) -> int:
        ids = list(query_ids)
        if not ids:
            return 0
        async with self.session_factory() as session:
            result = await session.execute(
                update(QueryRecord)
                .where(
                    QueryRecord.organization == organization,
                    QueryRecord.id.in_(ids),
                    QueryRecord.status.in_(["queued", "running"]),
                )
                .values(status="canceled", finished_at=utcnow())
            )
            await session.commit()
        return result.rowcount

    async def get_by_ids(
        self, organization: str, query_ids: Sequence[str]
    ) -> list[QueryRecord | None]:
        """Fetch queries in the order requested; unknown ids yield ``None``."""
        if not query_ids:
            return []
        async with self.session_factory() as session:
            result = await session.execute(
                select(QueryRecord).where(
                    QueryRecord.organization == organization,
                    QueryRecord.id.in_(list(query_ids)),
                )
            )
            by_id = {record.id: record for record in result.scalars().all()}
        return [by_id.get(query_id) for query_id in query_ids]

    async def list_by_datasource(
        self, organization: str, datasource_id: str, limit: int = 50
    ) -> Sequence[QueryRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(QueryRecord)
                .where(
                    QueryRecord.organization == organization,
                    QueryRecord.datasource == datasource_id,
                )
                .order_by(QueryRecord.date_created.desc())
                .limit(limit)
            )
            return result.scalars().all()
