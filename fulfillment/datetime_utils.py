"""
DateTime utility functions for the application.

Timestamps are stored as naive UTC datetimes.
"""
from datetime import datetime, timezone


def utcnow():
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(dt):
    """
    Format a stored datetime as an ISO-8601 UTC string.

    Args:
        dt: datetime object, ISO string, or None

    Returns:
        str: ISO formatted string with a trailing 'Z', or None if dt is None
    """
    if not dt:
        return None

    if isinstance(dt, str):
        return dt

    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)

    return dt.isoformat() + "Z"


def parse_datetime(value):
    """
    Parse a provider timestamp into a naive UTC datetime.

    Accepts ISO strings (with or without 'Z'), epoch seconds, or datetimes.
    Returns None for empty or unparseable input.
    """
    if value in (None, ""):
        return None

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None

    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt
