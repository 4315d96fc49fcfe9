"""Long-running, cancellable analyses."""

from .base import (
    AnalysisCanceled,
    AnalysisStatus,
    AsyncAnalysisJob,
    CancellationToken,
    InFlightRuns,
)
from .dimension_slices import (
    DimensionSlicesJob,
    DimensionSlicesParams,
    DimensionSlicesService,
    build_dimension_slices_sql,
    coerce_lookback_days,
)

__all__ = [
    "AnalysisCanceled",
    "AnalysisStatus",
    "AsyncAnalysisJob",
    "CancellationToken",
    "DimensionSlicesJob",
    "DimensionSlicesParams",
    "DimensionSlicesService",
    "InFlightRuns",
    "build_dimension_slices_sql",
    "coerce_lookback_days",
]
