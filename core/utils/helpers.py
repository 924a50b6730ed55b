"""
Helper utilities for common operations
"""
import re
import time
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional


PERIOD_DAYS = {
    '7d': 7,
    '30d': 30,
    '90d': 90,
    '1y': 365,
}


def generate_stored_filename(original_filename: str) -> str:
    """
    Generate a random storage name that keeps the original extension

    Args:
        original_filename: Name supplied by the client

    Returns:
        '<uuid>-<epoch ms><ext>'
    """
    extension = file_extension(original_filename)
    return f"{uuid.uuid4()}-{int(time.time() * 1000)}{extension}"


def generate_execution_id(prefix: str = "exec") -> str:
    """Fallback execution id when n8n does not return one"""
    return f"{prefix}_{int(time.time() * 1000)}"


def file_extension(filename: str) -> str:
    """Lower-cased extension including the dot ('' when absent)"""
    return Path(filename or '').suffix.lower()


def parse_date(date_str: str) -> Optional[datetime]:
    """
    Parse date string in various formats

    Args:
        date_str: Date string

    Returns:
        Datetime object or None if parsing fails
    """
    if not date_str or not isinstance(date_str, str):
        return None

    value = date_str.strip()
    try:
        # ISO 8601, including a trailing 'Z'
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        pass

    formats = [
        '%Y-%m-%d',
        '%m/%d/%Y',
        '%d/%m/%Y',
        '%Y/%m/%d',
        '%d-%m-%Y',
        '%m-%d-%Y',
        '%d.%m.%Y',
        '%B %d, %Y',
        '%d %B %Y'
    ]

    for fmt in formats:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue

    return None


def normalize_date(value: Any) -> Optional[str]:
    """
    Normalize an extracted date value to an ISO 8601 string

    Unparseable strings are kept as-is so no extracted information is lost.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    parsed = parse_date(str(value))
    if parsed is None:
        return str(value)
    return parsed.isoformat()


def period_start(period: str, now: Optional[datetime] = None) -> datetime:
    """
    Start of a trailing reporting period

    Args:
        period: One of 7d, 30d, 90d, 1y (unknown values fall back to 30d)
        now: Reference time, defaults to utcnow

    Returns:
        Datetime at the start of the period
    """
    now = now or datetime.utcnow()
    return now - timedelta(days=PERIOD_DAYS.get(period, 30))


def duration_ms(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    """Milliseconds between two timestamps, None unless both are set"""
    if not start or not end:
        return None
    return int((end - start).total_seconds() * 1000)


def to_float(value: Any) -> float:
    """Coerce an extracted amount to float, 0.0 when missing or malformed"""
    if value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def sanitize_filename(filename: str) -> str:
    """
    Sanitize filename by removing invalid characters

    Args:
        filename: Original filename

    Returns:
        Sanitized filename
    """
    # Remove invalid characters
    sanitized = re.sub(r'[<>:"/\\|?*]', '_', filename)
    # Remove leading/trailing spaces and dots
    sanitized = sanitized.strip('. ')
    return sanitized


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
