"""Persistence for data sources, fact tables, analysis runs and query logs."""

from .database import Base, DatabaseManager, get_database_manager, initialize_database
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
)
from .repositories import (
    DataSourceRepository,
    DependentsRepository,
    DimensionSlicesRepository,
    FactTableRepository,
    InformationSchemaRepository,
    QueryRepository,
)

__all__ = [
    "Base",
    "DataSource",
    "DataSourceRepository",
    "DatabaseManager",
    "DependentsRepository",
    "Dimension",
    "DimensionSlicesRepository",
    "DimensionSlicesRun",
    "FactTable",
    "FactTableRepository",
    "InformationSchema",
    "InformationSchemaRepository",
    "InformationSchemaTable",
    "Metric",
    "QueryRecord",
    "QueryRepository",
    "Segment",
    "get_database_manager",
    "initialize_database",
]
