import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from libs.datasources.logging import (
    configure_structured_logging,
    reset_correlation_id,
    set_correlation_id,
)
from libs.datasources.services import DataSourceServices
from libs.datasources.settings import get_settings
from libs.datasources.storage.database import initialize_database
from services.datasource_api.errors import register_exception_handlers
from services.datasource_api.responses import HealthStatus, StandardResponse
from services.datasource_api.routes import (
    datasources,
    dimension_slices,
    materialized_columns,
    queries,
)

logger = structlog.get_logger(__name__)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds a request id to every log line emitted while handling a request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id
        token = set_correlation_id(request_id)
        start_time = time.time()
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = str(
            round((time.time() - start_time) * 1000, 2)
        )
        return response


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan management."""
    settings = get_settings()
    configure_structured_logging(settings.logging)

    db_manager = initialize_database(settings.database_url, settings.echo_sql)
    app.state.db_manager = db_manager
    app.state.services = DataSourceServices.from_database(db_manager, settings)
    app.state.start_time = time.time()
    logger.info("datasource_api_started")

    yield

    await db_manager.close()
    logger.info("datasource_api_stopped")


app = FastAPI(
    title="Data Source API",
    description="Warehouse data sources, materialized columns, query execution and dimension-slice analysis",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(datasources.router, prefix="/v1")
app.include_router(materialized_columns.router, prefix="/v1")
app.include_router(queries.router, prefix="/v1")
app.include_router(dimension_slices.router, prefix="/v1")


@app.get("/health", response_model=StandardResponse[HealthStatus], tags=["Health"])
async def health_check(request: Request) -> StandardResponse[HealthStatus]:
    """Basic health check, including product database connectivity."""
    start_time = getattr(app.state, "start_time", None)
    uptime = time.time() - start_time if start_time else None

    db_manager = getattr(app.state, "db_manager", None)
    database_ok = await db_manager.health_check() if db_manager else False

    return StandardResponse(
        data=HealthStatus(
            status="healthy" if database_ok else "unhealthy",
            checks={"database": "connected" if database_ok else "disconnected"},
            version=app.version,
            uptime=uptime,
        ),
        message="Service is healthy" if database_ok else "Database is unreachable",
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8010)
