"""
Small helpers shared across the pipeline.

This module provides helper functions for:
- Ensuring directories exist for local storage and the SQLite file
- Producing and parsing timezone-aware UTC timestamps
- Coercing opaque quota values into a print count
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def deserialize_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 string, treating naive values as UTC.

    Args:
        value: ISO string as written by serialize_datetime, or None

    Returns:
        Timezone-aware datetime, or None when value is empty
    """
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def coerce_print_quota(value: Any) -> int:
    """
    Turn an opaque quota value into a whole number of prints.

    Anything that is not a finite number becomes 0.

    Example:
        >>> coerce_print_quota("5")
        5
        >>> coerce_print_quota("abc")
        0
        >>> coerce_print_quota(None)
        0
    """
    if value is None or isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return int(number)
