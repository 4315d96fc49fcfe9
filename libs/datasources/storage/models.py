"""Database models for data sources and the records that hang off them."""

import secrets
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(8)}"


class DataSource(Base):  # type: ignore[misc]
    """A warehouse connection owned by an organization."""

    __tablename__ = "datasources"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    # Fernet token; plaintext params never reach the database
    params: Mapped[str] = mapped_column(Text, nullable=False)
    settings: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    projects: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    date_created: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    date_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class FactTable(Base):  # type: ignore[misc]
    """Queryable table definition with its cached column metadata."""

    __tablename__ = "fact_tables"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization: Mapped[str] = mapped_column(String(64), nullable=False)
    datasource: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sql: Mapped[str] = mapped_column(Text, nullable=False)
    columns: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, default=list, nullable=False
    )
    date_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("idx_fact_tables_org_datasource", "organization", "datasource"),
    )


class DimensionSlicesRun(Base):  # type: ignore[misc]
    """One dimension-slice discovery run."""

    __tablename__ = "dimension_slices"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization: Mapped[str] = mapped_column(String(64), nullable=False)
    datasource: Mapped[str] = mapped_column(String(64), nullable=False)
    exposure_query_id: Mapped[str] = mapped_column(String(64), nullable=False)
    lookback_days: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="created", nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    results: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, default=list, nullable=False
    )
    query_ids: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    run_started: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    date_created: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    date_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        Index(
            "idx_dimension_slices_lookup",
            "organization",
            "datasource",
            "exposure_query_id",
        ),
    )


class QueryRecord(Base):  # type: ignore[misc]
    """A single warehouse round-trip issued on behalf of an analysis."""

    __tablename__ = "queries"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization: Mapped[str] = mapped_column(String(64), nullable=False)
    datasource: Mapped[str] = mapped_column(String(64), nullable=False)
    language: Mapped[str] = mapped_column(String(16), default="sql", nullable=False)
    query: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="queued", nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    row_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    finished_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    date_created: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("idx_queries_org_datasource", "organization", "datasource"),
    )


class Metric(Base):  # type: ignore[misc]
    __tablename__ = "metrics"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization: Mapped[str] = mapped_column(String(64), nullable=False)
    datasource: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)


class Segment(Base):  # type: ignore[misc]
    __tablename__ = "segments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization: Mapped[str] = mapped_column(String(64), nullable=False)
    datasource: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)


class Dimension(Base):  # type: ignore[misc]
    __tablename__ = "dimensions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization: Mapped[str] = mapped_column(String(64), nullable=False)
    datasource: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)


class InformationSchema(Base):  # type: ignore[misc]
    """Cached warehouse catalog for a data source."""

    __tablename__ = "information_schemas"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization: Mapped[str] = mapped_column(String(64), nullable=False)
    datasource: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="PENDING", nullable=False)
    date_created: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    tables: Mapped[list["InformationSchemaTable"]] = relationship(
        back_populates="information_schema", cascade="all, delete-orphan"
    )


class InformationSchemaTable(Base):  # type: ignore[misc]
    __tablename__ = "information_schema_tables"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization: Mapped[str] = mapped_column(String(64), nullable=False)
    information_schema_id: Mapped[str] = mapped_column(
        ForeignKey("information_schemas.id", ondelete="CASCADE"), nullable=False
    )
    table_schema: Mapped[str] = mapped_column(String(255), nullable=False)
    table_name: Mapped[str] = mapped_column(String(255), nullable=False)
    columns: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, default=list, nullable=False
    )

    information_schema: Mapped[InformationSchema] = relationship(
        back_populates="tables"
    )
