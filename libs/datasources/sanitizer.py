"""
Validation of user-supplied SQL identifiers and materialized column input.

Everything here is pure: input is either accepted unchanged or rejected with a
``ValidationError`` naming the rule that failed. Nothing is partially cleaned
up, so callers can run these checks before touching the warehouse or stored
settings.
"""

import re
from collections.abc import Callable, Iterable
from typing import Any

from .exceptions import ValidationError
from .schemas import FACT_TABLE_COLUMN_TYPES, MaterializedColumn

COLUMN_NAME_PATTERN = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")
SOURCE_FIELD_PATTERN = re.compile(r"[a-zA-Z0-9 _-]*")
SQL_IDENTIFIER_PATTERN = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)*")

# Most of these are legal column names in some warehouses, but they make
# generated and hand-written SQL confusing to read.
SQL_KEYWORDS = frozenset(
    {
        "select",
        "from",
        "where",
        "order",
        "having",
        "limit",
        "offset",
        "join",
        "on",
        "using",
        "as",
        "distinct",
        "union",
        "if",
        "then",
        "else",
        "end",
        "case",
        "when",
        "and",
        "or",
        "not",
        "true",
        "false",
        "null",
        "is",
        "in",
        "between",
        "exists",
        "like",
        "array",
        "tuple",
        "map",
        "cast",
        "inf",
        "infinity",
        "nan",
        "default",
        "current_date",
        "current_timestamp",
        "sysdate",
    }
)

ReservedNameProvider = Callable[[], Iterable[str]]


def _no_reserved_names() -> Iterable[str]:
    return ()


class IdentifierSanitizer:
    """Validates materialized column definitions against a reserved-name set."""

    def __init__(self, reserved_names: ReservedNameProvider = _no_reserved_names):
        self._reserved_names = reserved_names

    def reserved_names(self) -> frozenset[str]:
        return frozenset(name.lower() for name in self._reserved_names())

    def validate_column_name(self, column_name: str) -> str:
        if not isinstance(column_name, str) or not COLUMN_NAME_PATTERN.fullmatch(
            column_name
        ):
            raise ValidationError(
                "Invalid input. Column names must start with a letter or underscore "
                "and only use alphanumeric characters or '_'",
                rule="column_name_format",
                field="column_name",
            )

        cmp = column_name.lower()
        if cmp in self.reserved_names():
            raise ValidationError(
                f'Column name "{column_name}" is reserved and cannot be used',
                rule="column_name_reserved",
                field="column_name",
            )
        if cmp in SQL_KEYWORDS:
            raise ValidationError(
                f'Column name "{column_name}" is a SQL keyword and cannot be used',
                rule="column_name_keyword",
                field="column_name",
            )
        return column_name

    def validate_source_field(self, source_field: str) -> str:
        if not isinstance(source_field, str) or not SOURCE_FIELD_PATTERN.fullmatch(
            source_field
        ):
            raise ValidationError(
                "Invalid input. Source field must only use alphanumeric characters, "
                "' ', '_', or '-'",
                rule="source_field_characters",
                field="source_field",
            )
        if not re.search(r"[a-zA-Z]", source_field):
            raise ValidationError(
                "Invalid input. Source field must contain at least one letter",
                rule="source_field_letter",
                field="source_field",
            )
        if source_field.startswith(" ") or source_field.endswith(" "):
            raise ValidationError(
                "Invalid input. Source field must not have leading or trailing spaces",
                rule="source_field_whitespace",
                field="source_field",
            )
        return source_field

    def validate_datatype(self, datatype: Any) -> str:
        value = getattr(datatype, "value", datatype)
        if value not in FACT_TABLE_COLUMN_TYPES:
            raise ValidationError(
                "Invalid datatype",
                rule="datatype",
                field="datatype",
                context={"allowed": sorted(FACT_TABLE_COLUMN_TYPES)},
            )
        return value

    def sanitize_materialized_column(
        self, user_input: MaterializedColumn | dict[str, Any]
    ) -> MaterializedColumn:
        """Validate every field of a column definition or reject the whole input."""
        if isinstance(user_input, MaterializedColumn):
            user_input = user_input.model_dump()

        datatype = self.validate_datatype(user_input.get("datatype"))
        source_field = self.validate_source_field(user_input.get("source_field"))
        column_name = self.validate_column_name(user_input.get("column_name"))
        return MaterializedColumn(
            source_field=source_field, column_name=column_name, datatype=datatype
        )


def validate_sql_identifier(
    identifier: str, identifier_type: str = "identifier"
) -> str:
    """
    Validate an identifier that will be interpolated into generated SQL.

    Dotted names (``schema.table``) are allowed; quoting characters, comments,
    whitespace and statement separators are not.

    Raises:
        ValidationError: If the identifier is invalid
    """
    if not identifier:
        raise ValidationError(
            f"Empty {identifier_type} not allowed", rule="identifier_empty"
        )

    if len(identifier) > 128:
        raise ValidationError(
            f"{identifier_type} too long: {identifier}", rule="identifier_length"
        )

    if not SQL_IDENTIFIER_PATTERN.fullmatch(identifier):
        raise ValidationError(
            f"Invalid {identifier_type}: {identifier}. Only alphanumeric characters, "
            "underscores, and dots allowed",
            rule="identifier_format",
        )

    return identifier
