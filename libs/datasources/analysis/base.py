"""
Cancellable background analyses bound to a data source.

A run record moves ``created -> running -> succeeded | failed | canceled``.
Terminal transitions are compare-and-set on the stored status, so whichever of
completion and cancellation lands first wins and the other becomes a no-op.
Cancellation is cooperative: the job checks its token around every warehouse
round-trip, and in-flight warehouse queries are cancelled by id.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

import structlog

from ..connectors.base import QueryResult
from ..exceptions import DataSourceError
from ..integration import WarehouseIntegration
from ..storage.models import DimensionSlicesRun, utcnow
from ..storage.repositories import DimensionSlicesRepository, QueryRepository

logger = structlog.get_logger(__name__)

ParamsT = TypeVar("ParamsT")


class AnalysisStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STATUSES = frozenset(
    {
        AnalysisStatus.SUCCEEDED.value,
        AnalysisStatus.FAILED.value,
        AnalysisStatus.CANCELED.value,
    }
)
ACTIVE_STATUSES = frozenset(
    {AnalysisStatus.CREATED.value, AnalysisStatus.RUNNING.value}
)


class AnalysisCanceled(Exception):
    """Raised inside a job once its run has been canceled."""


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AnalysisCanceled()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class InFlightRun:
    token: CancellationToken
    task: asyncio.Task | None = None


class InFlightRuns:
    """Runs started in this process, so a later request can signal them."""

    def __init__(self) -> None:
        self._runs: dict[str, InFlightRun] = {}

    def register(self, run_id: str, token: CancellationToken) -> InFlightRun:
        entry = InFlightRun(token=token)
        self._runs[run_id] = entry
        return entry

    def get(self, run_id: str) -> InFlightRun | None:
        return self._runs.get(run_id)

    def unregister(self, run_id: str) -> None:
        self._runs.pop(run_id, None)

    def __contains__(self, run_id: str) -> bool:
        return run_id in self._runs

    def __len__(self) -> int:
        return len(self._runs)


class AsyncAnalysisJob(ABC, Generic[ParamsT]):
    """Start/cancel semantics shared by analyses that persist a run record."""

    def __init__(
        self,
        integration: WarehouseIntegration,
        runs: DimensionSlicesRepository,
        queries: QueryRepository,
        in_flight: InFlightRuns,
    ):
        self.integration = integration
        self.runs = runs
        self.queries = queries
        self.in_flight = in_flight
        self.organization = integration.organization
        self.logger = logger.bind(
            component=type(self).__name__, datasource_id=integration.id
        )

    @abstractmethod
    async def create_record(self, params: ParamsT) -> DimensionSlicesRun:
        """Validate ``params`` and persist a new run in ``created`` state."""

    @abstractmethod
    async def run_analysis(
        self, record: DimensionSlicesRun, params: ParamsT, token: CancellationToken
    ) -> list[dict[str, Any]]:
        """Do the work and return the results payload."""

    async def start_analysis(
        self, params: ParamsT, wait: bool = False
    ) -> DimensionSlicesRun:
        """
        Create a run and start it in the background.

        With ``wait`` the call returns once the run is terminal. Failures of
        the analysis itself are recorded on the run, not raised.
        """
        record = await self.create_record(params)
        token = CancellationToken()
        entry = self.in_flight.register(record.id, token)

        await self.runs.transition(
            self.organization,
            record.id,
            [AnalysisStatus.CREATED.value],
            AnalysisStatus.RUNNING.value,
            run_started=utcnow(),
        )
        entry.task = asyncio.create_task(self._execute(record, params, token))
        self.logger.info("analysis_started", run_id=record.id)

        if wait:
            await entry.task
        return await self._reload(record.id)

    async def _reload(self, run_id: str) -> DimensionSlicesRun:
        record = await self.runs.get_by_id(self.organization, run_id)
        if record is None:
            raise DataSourceError(f"Analysis run {run_id} disappeared")
        return record

    async def _execute(
        self, record: DimensionSlicesRun, params: ParamsT, token: CancellationToken
    ) -> None:
        try:
            token.raise_if_cancelled()
            results = await self.run_analysis(record, params, token)
            token.raise_if_cancelled()
        except AnalysisCanceled:
            self.logger.info("analysis_stopped_after_cancel", run_id=record.id)
            return
        except asyncio.CancelledError:
            # Task torn down (e.g. shutdown); do not leave the run active
            current = await self._reload(record.id)
            await self.queries.mark_canceled(self.organization, current.query_ids)
            interrupted = await self.runs.transition(
                self.organization,
                record.id,
                ACTIVE_STATUSES,
                AnalysisStatus.CANCELED.value,
                error="Analysis was interrupted",
            )
            self.logger.warning(
                "analysis_interrupted", run_id=record.id, recorded=interrupted
            )
            raise
        except Exception as e:
            # A failed run is an outcome, stored on the record
            message = e.message if isinstance(e, DataSourceError) else str(e)
            failed = await self.runs.transition(
                self.organization,
                record.id,
                [AnalysisStatus.RUNNING.value],
                AnalysisStatus.FAILED.value,
                error=message,
            )
            self.logger.error(
                "analysis_failed",
                run_id=record.id,
                error=message,
                error_type=type(e).__name__,
                recorded=failed,
            )
            return
        finally:
            self.in_flight.unregister(record.id)

        succeeded = await self.runs.transition(
            self.organization,
            record.id,
            [AnalysisStatus.RUNNING.value],
            AnalysisStatus.SUCCEEDED.value,
            results=results,
        )
        self.logger.info("analysis_succeeded", run_id=record.id, recorded=succeeded)

    async def run_query(
        self, record: DimensionSlicesRun, sql: str, token: CancellationToken
    ) -> QueryResult:
        """One logged, cancellable warehouse round-trip."""
        token.raise_if_cancelled()
        query = await self.queries.create(self.organization, self.integration.id, sql)
        current = await self._reload(record.id)
        await self.runs.update(
            self.organization,
            record.id,
            {"query_ids": [*current.query_ids, query.id]},
        )

        try:
            result = await self.integration.run_query(sql, query_id=query.id)
        except DataSourceError as e:
            await self.queries.finish(
                self.organization,
                query.id,
                "canceled" if token.cancelled else "failed",
                error=e.message,
            )
            if token.cancelled:
                raise AnalysisCanceled() from e
            raise

        await self.queries.finish(
            self.organization, query.id, "succeeded", row_count=len(result.data)
        )
        token.raise_if_cancelled()
        return result

    async def cancel(self, record: DimensionSlicesRun) -> DimensionSlicesRun:
        """
        Cancel a run. Canceling a terminal run returns it unchanged.
        """
        if record.status in TERMINAL_STATUSES:
            return record

        entry = self.in_flight.get(record.id)
        if entry:
            entry.token.cancel()

        current = await self._reload(record.id)
        query_records = await self.queries.get_by_ids(
            self.organization, current.query_ids
        )
        in_flight_ids = [
            query.id
            for query in query_records
            if query is not None and query.status in ("queued", "running")
        ]
        for query_id in in_flight_ids:
            try:
                await self.integration.cancel_query(query_id)
            except DataSourceError as e:
                self.logger.warning(
                    "warehouse_cancel_failed",
                    run_id=record.id,
                    query_id=query_id,
                    error=e.message,
                )
        await self.queries.mark_canceled(self.organization, in_flight_ids)

        canceled = await self.runs.transition(
            self.organization,
            record.id,
            ACTIVE_STATUSES,
            AnalysisStatus.CANCELED.value,
        )
        self.logger.info("analysis_canceled", run_id=record.id, recorded=canceled)
        return await self._reload(record.id)
