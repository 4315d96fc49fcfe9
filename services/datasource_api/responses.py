"""Standardized response models for all API endpoints."""

from datetime import datetime, timezone
from typing import Any, Generic, TypeVar
from uuid import uuid4

from pydantic import BaseModel, Field

T = TypeVar("T")


class APIMetadata(BaseModel):
    """Metadata included in all API responses."""

    request_id: str = Field(
        default_factory=lambda: str(uuid4()), description="Unique request identifier"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Response timestamp (UTC)",
    )
    version: str = Field(default="v1", description="API version")


class StandardResponse(BaseModel, Generic[T]):
    """Standard response format for all API endpoints."""

    success: bool = Field(default=True, description="Whether the request was successful")
    data: T | None = Field(default=None, description="Response data")
    message: str | None = Field(default=None, description="Human-readable message")
    metadata: APIMetadata = Field(
        default_factory=APIMetadata, description="Response metadata"
    )


class ErrorDetail(BaseModel):
    """Detailed error information."""

    code: str = Field(description="Error code")
    message: str = Field(description="Error message")
    field: str | None = Field(
        default=None, description="Field that caused the error (for validation errors)"
    )
    rule: str | None = Field(default=None, description="Validation rule that failed")
    context: dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Standard error response format."""

    success: bool = Field(default=False, description="Always false for errors")
    error: ErrorDetail = Field(description="Error details")
    metadata: APIMetadata = Field(
        default_factory=APIMetadata, description="Response metadata"
    )


class HealthStatus(BaseModel):
    """Health check response model."""

    status: str = Field(
        description="Overall health status", examples=["healthy", "unhealthy"]
    )
    checks: dict[str, Any] = Field(
        default_factory=dict, description="Individual health check results"
    )
    version: str = Field(description="Application version")
    uptime: float | None = Field(
        default=None, description="Application uptime in seconds"
    )
