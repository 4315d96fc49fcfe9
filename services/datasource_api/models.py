"""Request and response bodies for the data source API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from libs.datasources.schemas import DataSourceType, DimensionSlicesResult


class CreateDataSourceRequest(BaseModel):
    name: str
    type: DataSourceType
    params: dict[str, Any]
    settings: dict[str, Any] | None = None
    description: str | None = None
    projects: list[str] = Field(default_factory=list)


class CreateManagedDataSourceRequest(BaseModel):
    datasource_id: str | None = None


class UpdateMaterializedColumnRequest(BaseModel):
    """Partial column definition; missing fields keep their current value."""

    column_name: str | None = None
    source_field: str | None = None
    datatype: str | None = None


class TestQueryRequest(BaseModel):
    sql: str
    event_name: str | None = None
    experiment_id: str | None = None
    value_column: str | None = None


class RunQueryRequest(TestQueryRequest):
    limit: int | None = None


class StartDimensionSlicesRequest(BaseModel):
    datasource_id: str
    exposure_query_id: str
    lookback_days: Any = None


class QueryRecordView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    datasource: str
    language: str
    query: str
    status: str
    error: str | None = None
    row_count: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    date_created: datetime | None = None


class MetricView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    datasource: str
    name: str


class DimensionSlicesRunView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    datasource: str
    exposure_query_id: str
    lookback_days: int
    status: str
    error: str | None = None
    results: list[DimensionSlicesResult] = Field(default_factory=list)
    query_ids: list[str] = Field(default_factory=list)
    run_started: datetime | None = None
    date_created: datetime | None = None
    date_updated: datetime | None = None
