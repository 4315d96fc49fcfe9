"""
Factory for creating warehouse connectors.

This module maps each data source type to its connector class and validates
connection params through the type's pydantic config before a connector is
built.
"""

from typing import Any

import pydantic
import structlog

from ..exceptions import ValidationError
from ..schemas import DataSourceType
from .base import DataWarehouseConnector
from .bigquery import BigQueryConnector
from .clickhouse import ClickHouseConnector, ManagedClickHouseConnector
from .config import DATASOURCE_CONFIG_MAP, BaseConnectionConfig
from .redshift import RedshiftConnector
from .snowflake import SnowflakeConnector


def _format_validation_error(error: pydantic.ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(loc) for loc in item.get("loc", ()))
        parts.append(f"{location}: {item['msg']}" if location else item["msg"])
    return "; ".join(parts)


class ConnectorFactory:
    """Factory for creating warehouse connectors."""

    logger = structlog.get_logger(__name__)

    _connectors: dict[DataSourceType, type[DataWarehouseConnector]] = {
        DataSourceType.SNOWFLAKE: SnowflakeConnector,
        DataSourceType.BIGQUERY: BigQueryConnector,
        DataSourceType.REDSHIFT: RedshiftConnector,
        DataSourceType.CLICKHOUSE: ClickHouseConnector,
        DataSourceType.MANAGED_CLICKHOUSE: ManagedClickHouseConnector,
    }

    @classmethod
    def _coerce_type(cls, datasource_type: DataSourceType | str) -> DataSourceType:
        if isinstance(datasource_type, DataSourceType):
            return datasource_type
        try:
            return DataSourceType(datasource_type)
        except ValueError as e:
            supported = ", ".join(t.value for t in cls._connectors)
            raise ValidationError(
                f"Unsupported data source type: {datasource_type}. "
                f"Supported types: {supported}",
                rule="datasource_type",
                field="type",
            ) from e

    @classmethod
    def validate_config(
        cls, datasource_type: DataSourceType | str, connection_params: dict[str, Any]
    ) -> BaseConnectionConfig:
        """
        Validate connection parameters against the typed configuration.

        Raises:
            ValidationError: If the type is unknown or the params are invalid
        """
        datasource_type = cls._coerce_type(datasource_type)
        if not isinstance(connection_params, dict):
            raise ValidationError(
                f"connection params must be an object, got {type(connection_params).__name__}",
                rule="params_type",
                field="params",
            )

        config_class = DATASOURCE_CONFIG_MAP[datasource_type]
        try:
            return config_class(**connection_params)
        except pydantic.ValidationError as e:
            cls.logger.warning(
                "config_validation_failed",
                datasource_type=datasource_type.value,
                config_class=config_class.__name__,
                error_count=e.error_count(),
            )
            raise ValidationError(
                f"Invalid {datasource_type.value} params: {_format_validation_error(e)}",
                rule="params",
                field="params",
            ) from e

    @classmethod
    def create_connector_from_dict(
        cls, datasource_type: DataSourceType | str, connection_params: dict[str, Any]
    ) -> DataWarehouseConnector:
        """
        Create a connector after validating params through the typed config.

        Args:
            datasource_type: Type of data source
            connection_params: Decrypted connection params

        Returns:
            DataWarehouseConnector: Configured, not yet connected, connector

        Raises:
            ValidationError: If the type is unsupported or params are invalid
        """
        datasource_type = cls._coerce_type(datasource_type)
        cls.validate_config(datasource_type, connection_params)

        connector_class = cls._connectors.get(datasource_type)
        if connector_class is None:
            raise ValidationError(
                f"No connector registered for {datasource_type.value}",
                rule="datasource_type",
                field="type",
            )

        connector = connector_class(connection_params)
        cls.logger.debug(
            "connector_created",
            datasource_type=datasource_type.value,
            connector_class=connector_class.__name__,
            connector_id=id(connector),
        )
        return connector

    @classmethod
    def register_connector(
        cls,
        datasource_type: DataSourceType,
        connector_class: type[DataWarehouseConnector],
    ) -> None:
        """
        Register a connector class for a data source type.

        Raises:
            TypeError: If inputs are not of the correct type
            ValueError: If connector_class is not a DataWarehouseConnector subclass
        """
        if not isinstance(datasource_type, DataSourceType):
            raise TypeError(
                f"datasource_type must be DataSourceType enum, got {type(datasource_type)}"
            )
        if not isinstance(connector_class, type):
            raise TypeError(
                f"connector_class must be a class, got {type(connector_class)}"
            )
        if not issubclass(connector_class, DataWarehouseConnector):
            raise ValueError(
                "connector_class must be a subclass of DataWarehouseConnector, "
                f"got {connector_class.__name__}"
            )

        if datasource_type in cls._connectors:
            cls.logger.warning(
                "overwriting_existing_connector",
                datasource_type=datasource_type.value,
                old_connector=cls._connectors[datasource_type].__name__,
                new_connector=connector_class.__name__,
            )

        cls._connectors[datasource_type] = connector_class
        cls.logger.info(
            "connector_registered",
            datasource_type=datasource_type.value,
            connector_class=connector_class.__name__,
        )

    @classmethod
    def get_supported_types(cls) -> list[DataSourceType]:
        """Get list of supported data source types."""
        return list(cls._connectors.keys())

    @classmethod
    def get_config_schema(cls, datasource_type: DataSourceType | str) -> dict[str, Any]:
        """JSON schema of the params a data source type expects."""
        datasource_type = cls._coerce_type(datasource_type)
        return DATASOURCE_CONFIG_MAP[datasource_type].model_json_schema()
