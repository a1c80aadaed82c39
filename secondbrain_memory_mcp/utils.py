"""
Utility functions for SecondBrain Memory System
Copyright 2025 Jurden Bruce
"""

import hashlib
import sqlite3
import logging
from datetime import datetime
from typing import Union, Optional

logger = logging.getLogger("secondbrain-memory.utils")

PREVIEW_LENGTH = 300


def _adapt_datetime(dt: datetime) -> str:
    """Convert datetime to ISO format string for SQLite storage"""
    return dt.isoformat()


def _convert_timestamp(val: Union[str, bytes]) -> Optional[datetime]:
    """Convert timestamp string to datetime with error handling"""
    try:
        decoded = val.decode() if isinstance(val, bytes) else val
        return parse_timestamp(decoded, strict=True)
    except (ValueError, AttributeError) as e:
        # Log warning but don't crash - return None for malformed timestamps
        logger.warning(f"Failed to convert timestamp: {val}, error: {e}")
        return None


def register_sqlite_adapters():
    """Register SQLite adapters for datetime handling"""
    sqlite3.register_adapter(datetime, _adapt_datetime)
    sqlite3.register_converter("TIMESTAMP", _convert_timestamp)


def parse_timestamp(value, strict: bool = False) -> Optional[datetime]:
    """Parse a datetime or ISO string into a naive local datetime.

    Aware timestamps (e.g. trailing 'Z') are converted to local time so they
    can be compared with datetime.now().
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            if strict:
                raise
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def hash_content(content: str) -> str:
    """Short SHA-256 digest of the exact text that gets embedded"""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


def days_since(value, now: Optional[datetime] = None) -> int:
    """Whole days elapsed since a timestamp (0 when unparseable)"""
    parsed = parse_timestamp(value)
    if parsed is None:
        return 0
    now = now or datetime.now()
    return int((now - parsed).total_seconds() // 86400)


def preview(text: Optional[str], length: int = PREVIEW_LENGTH) -> str:
    """Truncate text for transport in tool responses"""
    if not text:
        return ""
    return text[:length]
