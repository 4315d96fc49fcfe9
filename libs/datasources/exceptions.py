"""
Error taxonomy for data source operations.

Every failure raised by this package carries a stable ``code`` so the request
layer can map it to a status code without inspecting messages.

Exception Hierarchy:
    DataSourceError (base)
    ├── ValidationError
    ├── ConflictError
    ├── NotFoundError
    ├── UnsupportedOperationError
    ├── PermissionDeniedError
    ├── TemplateError
    ├── CredentialDecryptionError
    ├── ConnectionError   (connectors.base)
    └── QueryError        (connectors.base)
"""

from typing import Any


class DataSourceError(Exception):
    """Base exception for all data source errors."""

    code = "datasource_error"

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for API payloads."""
        return {"code": self.code, "message": self.message, **self.context}


class ValidationError(DataSourceError):
    """Malformed or forbidden identifiers, parameters or settings."""

    code = "validation_error"

    def __init__(
        self,
        message: str,
        rule: str | None = None,
        field: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context)
        self.rule = rule
        self.field = field


class ConflictError(DataSourceError):
    """Duplicate names or a rename onto the current name."""

    code = "conflict"


class NotFoundError(DataSourceError):
    """A referenced entity does not exist."""

    code = "not_found"


class UnsupportedOperationError(DataSourceError):
    """The operation is not available for this warehouse kind."""

    code = "unsupported_operation"


class PermissionDeniedError(DataSourceError):
    """The permission policy denied the action."""

    code = "permission_denied"


class TemplateError(DataSourceError):
    """A SQL template references variables that have no value."""

    code = "template_error"

    def __init__(self, message: str, missing: list[str] | None = None):
        super().__init__(message, {"missing": missing or []})
        self.missing = missing or []


class CredentialDecryptionError(DataSourceError):
    """Stored connection parameters could not be decrypted."""

    code = "decryption_error"
