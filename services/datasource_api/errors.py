"""Translation of data source errors into standardized error responses."""

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from libs.datasources.connectors.base import ConnectionError, QueryError
from libs.datasources.exceptions import (
    ConflictError,
    CredentialDecryptionError,
    DataSourceError,
    NotFoundError,
    PermissionDeniedError,
    TemplateError,
    UnsupportedOperationError,
    ValidationError,
)

from .responses import APIMetadata, ErrorDetail, ErrorResponse

logger = structlog.get_logger(__name__)

# First match wins, so subclasses go before their bases
STATUS_CODES: list[tuple[type[DataSourceError], int]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (TemplateError, status.HTTP_400_BAD_REQUEST),
    (CredentialDecryptionError, status.HTTP_400_BAD_REQUEST),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (UnsupportedOperationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ConnectionError, status.HTTP_502_BAD_GATEWAY),
    (QueryError, status.HTTP_502_BAD_GATEWAY),
]


def status_code_for(error: DataSourceError) -> int:
    for error_type, status_code in STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def datasource_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, DataSourceError)
    status_code = status_code_for(exc)
    request_id = getattr(request.state, "request_id", None)

    log = logger.warning if status_code < 500 else logger.error
    log(
        "request_failed",
        path=request.url.path,
        error_code=exc.code,
        status_code=status_code,
        error=exc.message,
    )

    context = dict(exc.context)
    detail = ErrorDetail(
        code=exc.code,
        message=exc.message,
        field=getattr(exc, "field", None),
        rule=getattr(exc, "rule", None),
        context=context,
    )
    metadata = APIMetadata(request_id=request_id) if request_id else APIMetadata()
    body = ErrorResponse(error=detail, metadata=metadata)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json"),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DataSourceError, datasource_error_handler)
