"""Pydantic models for data source settings, materialized columns and results."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class DataSourceType(str, Enum):
    """Supported warehouse kinds."""

    SNOWFLAKE = "snowflake"
    BIGQUERY = "bigquery"
    REDSHIFT = "redshift"
    CLICKHOUSE = "clickhouse"
    MANAGED_CLICKHOUSE = "managed_clickhouse"


class FactTableColumnType(str, Enum):
    """Column types a fact table (and a materialized column) can declare."""

    NUMBER = "number"
    STRING = "string"
    DATE = "date"
    BOOLEAN = "boolean"
    OTHER = "other"


FACT_TABLE_COLUMN_TYPES = frozenset(t.value for t in FactTableColumnType)


class MaterializedColumn(BaseModel):
    """A warehouse column extracted from a raw event property."""

    source_field: str
    column_name: str
    datatype: FactTableColumnType

    model_config = ConfigDict(use_enum_values=True)


class UserIdType(BaseModel):
    """An identifier type exposure queries can be keyed on."""

    user_id_type: str
    description: str | None = None


class ExposureQuery(BaseModel):
    """Stored SQL identifying which units were exposed to an experiment."""

    id: str
    name: str
    user_id_type: str
    query: str
    dimensions: list[str] = Field(default_factory=list)
    description: str | None = None

    model_config = ConfigDict(extra="allow")


class DataSourceQueries(BaseModel):
    """Query definitions stored on a data source."""

    exposure: list[ExposureQuery] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")


class DataSourceEvents(BaseModel):
    """Event naming conventions used by auto-generated queries."""

    experiment_event: str = "$experiment_started"
    experiment_id_property: str = "Experiment name"
    variation_id_property: str = "Variant name"


class DataSourceSettings(BaseModel):
    """Settings document stored alongside a data source."""

    user_id_types: list[UserIdType] = Field(default_factory=list)
    queries: DataSourceQueries = Field(default_factory=DataSourceQueries)
    events: DataSourceEvents | None = None
    materialized_columns: list[MaterializedColumn] = Field(default_factory=list)
    information_schema_id: str | None = None

    model_config = ConfigDict(extra="allow")

    def find_exposure_query(self, exposure_query_id: str) -> ExposureQuery | None:
        for exposure_query in self.queries.exposure:
            if exposure_query.id == exposure_query_id:
                return exposure_query
        return None

    def to_document(self) -> dict[str, Any]:
        """JSON-safe representation for storage."""
        return self.model_dump(mode="json", exclude_none=True)


class DataSourceView(BaseModel):
    """A data source as returned to callers, with secrets blanked."""

    id: str
    organization: str
    name: str
    description: str | None = None
    type: DataSourceType
    settings: DataSourceSettings
    projects: list[str] = Field(default_factory=list)
    params: dict[str, Any] = Field(default_factory=dict)
    decryption_error: bool = False
    date_created: datetime | None = None
    date_updated: datetime | None = None


class FactTableColumn(BaseModel):
    """One cached column of a fact table."""

    column: str
    datatype: str = ""
    name: str | None = None
    description: str | None = None


class QueryRunResult(BaseModel):
    """Outcome of a preview or free-form query; errors are data, not exceptions."""

    results: list[dict[str, Any]] = Field(default_factory=list)
    sql: str = ""
    duration: int = 0
    error: str | None = None


class DimensionSlice(BaseModel):
    """A single discovered value of a dimension and its share of units."""

    name: str
    percent: float


class DimensionSlicesResult(BaseModel):
    """Discovered slices for one dimension."""

    dimension: str
    dimension_slices: list[DimensionSlice] = Field(default_factory=list)


class MaterializedColumnReconcileReport(BaseModel):
    """What a reconcile pass changed or found."""

    added: list[str] = Field(default_factory=list)
    orphaned: list[str] = Field(default_factory=list)
