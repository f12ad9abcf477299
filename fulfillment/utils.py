"""Utility functions shared across the fulfillment service.

Provides input validation for the business key and label count, filename
template rendering for archived documents, and A1 cell addressing for the
record store. All functions are pure and handle string conversion of loosely
typed JSON / spreadsheet values.
"""

from __future__ import annotations

import math
import re
from string import Formatter
from typing import Any

from .errors import ValidationError

FORM_ID_PATTERN = re.compile(r"[0-9]{12}")

# Hard ceiling on bags per order; configuration may only lower it
MAX_LABEL_COUNT = 5

# Template formatter for extracting field names from format strings
_FORMATTER = Formatter()


def string_or_empty(value: Any) -> str:
    """Safely convert value to string, returning empty string for None/NaN.

    Parameters
    ----------
    value : Any
        Value to convert (may be None, NaN, empty string, or any type)

    Returns
    -------
    str
        Stringified, trimmed value or empty string for None/NaN values
    """
    if value is None:
        return ""
    if isinstance(value, float) and math.isnan(value):
        return ""
    return str(value).strip()


def validate_form_id(form_id: Any) -> str:
    """Return the form id as a string if it is exactly 12 digits.

    Raises
    ------
    ValidationError
        If the value is missing or not 12 digits.
    """
    text = "" if form_id is None else str(form_id)
    if not FORM_ID_PATTERN.fullmatch(text):
        raise ValidationError("Invalid or missing Form ID (must be 12 digits).")
    return text


def validate_count(count: Any, max_count: int = MAX_LABEL_COUNT) -> int:
    """Return the label count as an int within 1..max_count.

    Integers and integral numeric strings ("2") are accepted. Booleans,
    fractional numbers and anything non-numeric are rejected. ``max_count``
    is capped at MAX_LABEL_COUNT.

    Raises
    ------
    ValidationError
        If the value is not an integer in range.
    """
    max_count = min(max_count, MAX_LABEL_COUNT)
    message = f"Label count must be between 1 and {max_count}."
    if isinstance(count, bool) or count is None:
        raise ValidationError(message)
    if isinstance(count, float):
        if not count.is_integer():
            raise ValidationError(message)
        count = int(count)
    elif isinstance(count, str):
        text = count.strip()
        if not (text.isascii() and text.isdigit()):
            raise ValidationError(message)
        count = int(text)
    elif not isinstance(count, int):
        raise ValidationError(message)

    if not 1 <= count <= max_count:
        raise ValidationError(message)
    return count


def to_bool(value: Any) -> bool:
    """Interpret JSON/spreadsheet truthiness ('y', 'yes', 'true', '1')."""
    if isinstance(value, bool):
        return value
    return string_or_empty(value).lower() in {"y", "yes", "true", "1"}


def to_count(value: Any) -> int:
    """Parse a non-negative integer count, defaulting to 0."""
    if isinstance(value, bool):
        return 0
    try:
        number = float(string_or_empty(value) or 0)
    except ValueError:
        return 0
    if math.isnan(number) or number < 0:
        return 0
    return int(number)


def column_letter(index: int) -> str:
    """Convert a zero-based column index to its A1 letter(s).

    Examples
    --------
    >>> column_letter(0)
    'A'
    >>> column_letter(27)
    'AB'
    """
    if index < 0:
        raise ValueError("column index must be non-negative")
    letters = ""
    n = index + 1
    while n > 0:
        n, remainder = divmod(n - 1, 26)
        letters = chr(65 + remainder) + letters
    return letters


def a1_address(sheet_title: str, column_index: int, row_number: int) -> str:
    """Build an A1 address such as ``'Form Responses'!C14``."""
    quoted = sheet_title.replace("'", "''")
    return f"'{quoted}'!{column_letter(column_index)}{row_number}"


def extract_template_fields(template: str) -> set[str]:
    """Extract placeholder names from a format string template.

    Raises
    ------
    ValueError
        If template contains invalid format string syntax

    Examples
    --------
    >>> sorted(extract_template_fields("{form_id}_{index}of{total}.pdf"))
    ['form_id', 'index', 'total']
    """
    try:
        return {
            field_name
            for _, field_name, _, _ in _FORMATTER.parse(template)
            if field_name
        }
    except ValueError as exc:
        raise ValueError(f"Invalid template format: {exc}") from exc


def validate_and_format_template(
    template: str,
    context: dict[str, Any],
    allowed_fields: set[str] | None = None,
) -> str:
    """Format template and validate placeholders against allowed set.

    Parameters
    ----------
    template : str
        Format string template with placeholders
    context : dict[str, Any]
        Context dict with placeholder values
    allowed_fields : set[str] | None
        Set of allowed placeholder names. If None, allows any placeholder
        that exists in context.

    Returns
    -------
    str
        Rendered template

    Raises
    ------
    KeyError
        If template contains placeholders not in context
    ValueError
        If template contains disallowed placeholders (when allowed_fields provided)
    """
    placeholders = extract_template_fields(template)

    unknown_fields = placeholders - context.keys()
    if unknown_fields:
        raise KeyError(
            f"Unknown placeholder(s) {sorted(unknown_fields)} in template. "
            f"Available: {sorted(context.keys())}"
        )

    if allowed_fields is not None:
        disallowed = placeholders - allowed_fields
        if disallowed:
            raise ValueError(
                f"Disallowed placeholder(s) {sorted(disallowed)} in template. "
                f"Allowed: {sorted(allowed_fields)}"
            )

    return template.format(**context)


def safe_filename_part(value: str, default: str) -> str:
    """Strip path separators from a name fragment; fall back to default if empty."""
    cleaned = re.sub(r"[\\/]+", "-", string_or_empty(value))
    return cleaned or default
