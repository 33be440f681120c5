"""
Small coercion and time helpers shared by the prefetch and aggregation code.
"""
from datetime import datetime, timezone
from typing import Any, Optional


def safe_lower(value: Any) -> str:
    """Lowercased string form of value ("" for None)."""
    if value is None:
        return ""
    return str(value).lower()


def safe_strip(value: Any) -> str:
    """Whitespace-stripped string form of value ("" for None)."""
    if value is None:
        return ""
    return str(value).strip()


def safe_int(value: Any, default: int = 0) -> int:
    """
    Convert a cached counter to int.

    Args:
        value: Raw value, possibly None or a non-numeric string
        default: Returned when the value cannot be converted

    Returns:
        Integer or default
    """
    if value is None:
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def iso_now() -> str:
    """Current UTC time as an ISO string with a Z suffix."""
    return utcnow().strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a provider timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings (with or without a Z suffix) and epoch
    seconds or milliseconds, as numbers or numeric strings.

    Returns:
        The parsed datetime, or None if the value cannot be parsed
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)

    if isinstance(value, (int, float)):
        seconds = float(value)
        # Values this large are epoch milliseconds
        if abs(seconds) > 1e11:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    return None
