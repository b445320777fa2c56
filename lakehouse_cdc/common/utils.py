"""Common utility functions."""

import re
from datetime import datetime, timezone
from typing import Any, Optional

_SHORT_OFFSET_RE = re.compile(r"([+-]\d{2})$")


def parse_cdc_timestamp(ts_value: Any) -> Optional[datetime]:
    """
    Parse CDC timestamp from various formats.

    Args:
        ts_value: Timestamp value (datetime, int epoch milliseconds, ISO
            string or PostgreSQL text such as ``2024-01-02 10:00:00.5+00``)

    Returns:
        Parsed datetime object, or None if the value cannot be parsed
    """
    if ts_value is None:
        return None

    if isinstance(ts_value, datetime):
        return ts_value

    if isinstance(ts_value, int):
        # Assume epoch milliseconds
        return datetime.fromtimestamp(ts_value / 1000.0, tz=timezone.utc)

    if isinstance(ts_value, str):
        text = _SHORT_OFFSET_RE.sub(r"\1:00", ts_value.strip())
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            return None

    return None


def format_bytes(size_bytes: float) -> str:
    """Format bytes to human-readable string."""
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size_bytes < 1024.0:
            return f"{size_bytes:.2f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.2f} PB"


def split_table_identifier(identifier: str) -> tuple:
    """
    Split ``namespace.table`` into its parts.

    Raises:
        ValueError: If the identifier has no namespace
    """
    namespace, _, table = identifier.rpartition(".")
    if not namespace or not table:
        raise ValueError(f"Table identifier must be namespace.table: {identifier!r}")
    return namespace, table
