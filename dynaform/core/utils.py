"""
Shared utility functions for the dynaform engine.
"""

import re
from datetime import date, datetime
from typing import Any

from dateutil import parser as dateutil_parser

ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_date(value: str) -> date | None:
    """Parse a date string into a date object.

    Supports ISO 8601 formats (YYYY-MM-DD) and datetime strings.
    Returns None if the value cannot be parsed.

    Args:
        value: The date string to parse.

    Returns:
        A date object, or None if parsing fails.
    """
    if not value or not isinstance(value, str):
        return None

    try:
        parsed = dateutil_parser.parse(value)
        # If the input is a datetime, extract just the date part
        if isinstance(parsed, datetime):
            return parsed.date()
        return parsed
    except (ValueError, TypeError, OverflowError):
        return None


def parse_calendar_date(value: str) -> date | None:
    """Parse a strict YYYY-MM-DD calendar date, or return None.

    Rejects other layouts even when dateutil could read them, and
    impossible dates such as 2026-02-30.
    """
    if not isinstance(value, str) or not ISO_DATE_PATTERN.match(value):
        return None
    return parse_date(value)


def is_blank(value: Any) -> bool:
    """True for values that count as "not answered": None, '' and []."""
    if value is None:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (list, tuple)):
        return len(value) == 0
    return False


def is_truthy(value: str | None, default: bool = False) -> bool:
    """Interpret an environment variable as a boolean flag."""
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}
