"""Input validation for habitsync.

- ``sanitize_name``: habit/todo name validation + control-char stripping
- ``validate_month``: ``YYYY-MM`` month scope parsing
"""

import re
from calendar import monthrange
from typing import Any, Tuple

MAX_HABIT_NAME_LENGTH = 100
MAX_TODO_TITLE_LENGTH = 200

_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")


def sanitize_name(value: Any, field_name: str, max_length: int) -> str:
    """Sanitize and validate a user-entered name.

    Args:
        value: The value to sanitize.
        field_name: Name of the field for error messages.
        max_length: Maximum allowed length after trimming.

    Returns:
        Trimmed string without control characters.

    Raises:
        ValueError: If validation fails.
    """
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string, got {type(value).__name__}")

    # Remove null bytes and control characters except newlines and tabs
    sanitized = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", value).strip()

    if not sanitized:
        raise ValueError(f"{field_name} cannot be empty")

    if len(sanitized) > max_length:
        raise ValueError(f"{field_name} must be {max_length} characters or less (got {len(sanitized)})")

    return sanitized


def validate_month(month: str) -> Tuple[str, str]:
    """Parse a ``YYYY-MM`` month into its first and last day (ISO dates).

    Raises:
        ValueError: If ``month`` is not a valid month.
    """
    match = _MONTH_RE.match(month or "")
    if not match:
        raise ValueError(f"Month must look like YYYY-MM, got {month!r}")
    year, mon = int(match.group(1)), int(match.group(2))
    if not 1 <= mon <= 12:
        raise ValueError(f"Month out of range: {month!r}")
    last_day = monthrange(year, mon)[1]
    return f"{year:04d}-{mon:02d}-01", f"{year:04d}-{mon:02d}-{last_day:02d}"

