"""
Type-safe connection parameter models for warehouse connectors.

Each data source type validates its decrypted params through one of these
classes before a connector is built. Secret fields are ``SecretStr`` so they
never show up in reprs or logs; ``SENSITIVE_FIELDS`` lists the keys that must
be blanked whenever params are shown to a user.
"""

from abc import ABC
from enum import Enum
from typing import Any, ClassVar

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)

from ..schemas import DataSourceType


class SSLMode(str, Enum):
    """SSL connection modes for database connections."""

    REQUIRE = "require"
    PREFER = "prefer"
    ALLOW = "allow"
    DISABLE = "disable"


class BaseConnectionConfig(BaseModel, ABC):
    """
    Base configuration class for all warehouse connectors.

    Provides common validation and configuration patterns.
    """

    SENSITIVE_FIELDS: ClassVar[frozenset[str]] = frozenset()

    connection_timeout: int = Field(
        default=60, ge=1, le=300, description="Connection timeout in seconds"
    )

    model_config = ConfigDict(
        extra="forbid",
        str_strip_whitespace=True,
        validate_assignment=True,
    )

    def get_connection_params(self) -> dict[str, Any]:
        """Plain dict of params with secrets unwrapped, for the driver."""
        params = self.model_dump(exclude_none=True)
        for key, value in list(params.items()):
            if isinstance(value, SecretStr):
                params[key] = value.get_secret_value()
            elif isinstance(value, Enum):
                params[key] = value.value
        return params


class SnowflakeConfig(BaseConnectionConfig):
    """Configuration for Snowflake connection."""

    SENSITIVE_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"password", "private_key", "private_key_passphrase"}
    )

    account: str = Field(..., min_length=1, description="Snowflake account identifier")
    user: str = Field(..., min_length=1, description="Username for authentication")
    password: SecretStr | None = Field(
        default=None, description="Password for authentication"
    )
    private_key: SecretStr | None = Field(
        default=None, description="Private key for key-pair authentication"
    )
    private_key_passphrase: SecretStr | None = Field(
        default=None, description="Passphrase for encrypted private key"
    )
    database: str | None = Field(default=None, min_length=1)
    schema_name: str | None = Field(default=None, min_length=1, alias="schema")
    warehouse: str | None = Field(default=None, min_length=1)
    role: str | None = Field(default=None, min_length=1)
    network_timeout: int = Field(default=300, ge=30, le=3600)

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def validate_authentication(self) -> "SnowflakeConfig":
        """Ensure either password or private key is provided."""
        if not self.password and not self.private_key:
            raise ValueError("Either password or private_key must be provided")
        return self

    def get_connection_params(self) -> dict[str, Any]:
        """Get connection parameters for snowflake-connector-python."""
        params: dict[str, Any] = {
            "account": self.account,
            "user": self.user,
            "login_timeout": self.connection_timeout,
            "network_timeout": self.network_timeout,
        }

        if self.password:
            params["password"] = self.password.get_secret_value()
        elif self.private_key:
            params["private_key"] = self.private_key.get_secret_value()
            if self.private_key_passphrase:
                params["private_key_passphrase"] = (
                    self.private_key_passphrase.get_secret_value()
                )

        if self.database:
            params["database"] = self.database
        if self.schema_name:
            params["schema"] = self.schema_name
        if self.warehouse:
            params["warehouse"] = self.warehouse
        if self.role:
            params["role"] = self.role

        return params


class BigQueryConfig(BaseConnectionConfig):
    """Configuration for BigQuery connection."""

    SENSITIVE_FIELDS: ClassVar[frozenset[str]] = frozenset({"credentials_json"})

    project_id: str = Field(..., min_length=1, description="Google Cloud project ID")
    credentials_path: str | None = Field(
        default=None, description="Path to service account JSON file"
    )
    credentials_json: dict[str, Any] | None = Field(
        default=None, description="Service account credentials as JSON object"
    )
    location: str = Field(default="US", min_length=1)
    default_dataset: str | None = Field(default=None, min_length=1)
    maximum_bytes_billed: int | None = Field(default=None, ge=0)
    job_timeout: int = Field(default=300, ge=1, le=3600)

    @model_validator(mode="after")
    def validate_credentials(self) -> "BigQueryConfig":
        """Ensure credentials are provided in some form."""
        if not self.credentials_path and not self.credentials_json:
            raise ValueError(
                "Either credentials_path or credentials_json must be provided"
            )
        return self

    @field_validator("credentials_path")
    @classmethod
    def validate_credentials_path(cls, v: str | None) -> str | None:
        """Validate credentials file path."""
        if v is not None and not v.endswith(".json"):
            raise ValueError("credentials_path must be a JSON file")
        return v


class RedshiftConfig(BaseConnectionConfig):
    """Configuration for Redshift connection."""

    SENSITIVE_FIELDS: ClassVar[frozenset[str]] = frozenset({"password"})

    host: str = Field(..., min_length=1, description="Redshift cluster endpoint")
    database: str = Field(..., min_length=1, description="Database name")
    user: str = Field(..., min_length=1, description="Username for authentication")
    port: int = Field(default=5439, ge=1, le=65535)
    password: SecretStr | None = Field(default=None)
    cluster_identifier: str | None = Field(default=None, min_length=1)
    db_user: str | None = Field(default=None, min_length=1)
    iam: bool = Field(default=False, description="Use IAM authentication")
    sslmode: SSLMode = Field(default=SSLMode.REQUIRE)
    schema_name: str = Field(default="public", min_length=1, alias="schema")

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def validate_authentication(self) -> "RedshiftConfig":
        """Validate authentication configuration."""
        if self.iam:
            if not self.cluster_identifier:
                raise ValueError(
                    "cluster_identifier is required for IAM authentication"
                )
            if not self.db_user:
                raise ValueError("db_user is required for IAM authentication")
        elif not self.password:
            raise ValueError("password is required for non-IAM authentication")
        return self

    def get_connection_params(self) -> dict[str, Any]:
        """Get connection parameters for redshift_connector."""
        params: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "user": self.user,
            "ssl": self.sslmode != SSLMode.DISABLE,
            "timeout": self.connection_timeout,
        }

        if self.iam:
            params.update(
                {
                    "cluster_identifier": self.cluster_identifier,
                    "db_user": self.db_user,
                    "iam": True,
                }
            )
        else:
            params["password"] = self.password.get_secret_value()

        return params


class ClickHouseConfig(BaseConnectionConfig):
    """Configuration for ClickHouse connection (customer-run or managed)."""

    SENSITIVE_FIELDS: ClassVar[frozenset[str]] = frozenset({"password"})

    host: str = Field(..., min_length=1, description="ClickHouse HTTP(S) host")
    port: int = Field(default=8443, ge=1, le=65535)
    username: str = Field(default="default", min_length=1)
    password: SecretStr | None = Field(default=None)
    database: str = Field(default="default", min_length=1)
    secure: bool = Field(default=True, description="Use HTTPS")
    events_table: str = Field(
        default="events", min_length=1, description="Table holding raw events"
    )
    max_execution_time: int | None = Field(default=None, ge=1)

    def get_connection_params(self) -> dict[str, Any]:
        """Get connection parameters for clickhouse_connect.get_client."""
        params: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "database": self.database,
            "secure": self.secure,
            "connect_timeout": self.connection_timeout,
        }
        if self.password:
            params["password"] = self.password.get_secret_value()
        if self.max_execution_time:
            params["settings"] = {"max_execution_time": self.max_execution_time}
        return params


# Type alias for any connector configuration
ConnectorConfig = SnowflakeConfig | BigQueryConfig | RedshiftConfig | ClickHouseConfig

# Mapping from data source types to config classes
DATASOURCE_CONFIG_MAP: dict[DataSourceType, type[BaseConnectionConfig]] = {
    DataSourceType.SNOWFLAKE: SnowflakeConfig,
    DataSourceType.BIGQUERY: BigQueryConfig,
    DataSourceType.REDSHIFT: RedshiftConfig,
    DataSourceType.CLICKHOUSE: ClickHouseConfig,
    DataSourceType.MANAGED_CLICKHOUSE: ClickHouseConfig,
}


def get_sensitive_param_keys(datasource_type: DataSourceType) -> frozenset[str]:
    """Param keys whose values must never be shown back to a user."""
    config_class = DATASOURCE_CONFIG_MAP.get(datasource_type)
    if not config_class:
        return frozenset()
    return config_class.SENSITIVE_FIELDS
