"""
SQL template variables.

Stored SQL may reference ``{{ name }}`` placeholders. Date placeholders are
always available; ``eventName`` and ``experimentId`` are escaped as string
literal bodies by the warehouse dialect, and ``valueColumn`` must be a plain
identifier. A placeholder with no value fails the whole compile.
"""

import re
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel

from .exceptions import TemplateError
from .sanitizer import validate_sql_identifier

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*\}\}")

SQL_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class TemplateVariables(BaseModel):
    """Caller-supplied values for the non-date placeholders."""

    event_name: str | None = None
    experiment_id: str | None = None
    value_column: str | None = None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _default_escape(value: str) -> str:
    return value.replace("'", "''")


def lookback_window(days: int, end: datetime | None = None) -> tuple[datetime, datetime]:
    """``(start, end)`` covering the last ``days`` days up to ``end`` (now)."""
    end = _as_utc(end) if end else datetime.now(timezone.utc)
    return end - timedelta(days=days), end


def get_date_variables(start_date: datetime, end_date: datetime) -> dict[str, str]:
    start = _as_utc(start_date)
    end = _as_utc(end_date)
    return {
        "startDate": start.strftime(SQL_DATE_FORMAT),
        "endDate": end.strftime(SQL_DATE_FORMAT),
        "startDateUnix": str(int(start.timestamp())),
        "endDateUnix": str(int(end.timestamp())),
        "startYear": start.strftime("%Y"),
        "startMonth": start.strftime("%m"),
        "startDay": start.strftime("%d"),
        "endYear": end.strftime("%Y"),
        "endMonth": end.strftime("%m"),
        "endDay": end.strftime("%d"),
    }


def find_placeholders(sql: str) -> list[str]:
    """Distinct placeholder names in order of first appearance."""
    return list(dict.fromkeys(PLACEHOLDER_PATTERN.findall(sql)))


def compile_sql_template(
    sql: str,
    start_date: datetime,
    end_date: datetime | None = None,
    variables: TemplateVariables | None = None,
    escape: Callable[[str], str] = _default_escape,
) -> str:
    """
    Substitute every placeholder in ``sql``.

    Raises:
        TemplateError: If any placeholder has no value; nothing is substituted
        ValidationError: If ``value_column`` is not a valid identifier
    """
    values = get_date_variables(start_date, end_date or datetime.now(timezone.utc))

    if variables:
        if variables.event_name is not None:
            values["eventName"] = escape(variables.event_name)
        if variables.experiment_id is not None:
            values["experimentId"] = escape(variables.experiment_id)
        if variables.value_column is not None:
            values["valueColumn"] = validate_sql_identifier(
                variables.value_column, "value column"
            )

    missing = [name for name in find_placeholders(sql) if name not in values]
    if missing:
        raise TemplateError(
            f"Missing value for template variable(s): {', '.join(missing)}",
            missing=missing,
        )

    return PLACEHOLDER_PATTERN.sub(lambda match: values[match.group(1)], sql)
