"""
Utility functions for the memory store
Copyright 2025 Jurden Bruce
"""

import sqlite3
import logging
from datetime import datetime, timezone
from typing import Union, Optional

logger = logging.getLogger("memory-mcp.utils")


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime"""
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Fixed-width ISO form so stored timestamps compare correctly as text"""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Union[str, bytes, datetime]) -> datetime:
    """Parse an ISO timestamp into an aware UTC datetime.

    Naive values are taken to be UTC. A trailing 'Z' is accepted.

    Raises:
        ValueError: value is not a recognisable ISO timestamp
    """
    if isinstance(value, datetime):
        dt = value
    else:
        decoded = value.decode() if isinstance(value, bytes) else value
        if not isinstance(decoded, str):
            raise ValueError(f"Not a timestamp: {value!r}")
        decoded = decoded.strip()
        if decoded.endswith(("Z", "z")):
            decoded = decoded[:-1] + "+00:00"
        dt = datetime.fromisoformat(decoded)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_optional_timestamp(value: Optional[Union[str, bytes, datetime]]) -> Optional[datetime]:
    if value is None:
        return None
    return parse_timestamp(value)


def _adapt_datetime(dt: datetime) -> str:
    """Convert datetime to ISO format string for SQLite storage"""
    return format_timestamp(dt)


def register_sqlite_adapters():
    """Register the datetime adapter (the built-in one is deprecated since Python 3.12)"""
    sqlite3.register_adapter(datetime, _adapt_datetime)
