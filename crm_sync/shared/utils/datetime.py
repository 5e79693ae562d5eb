"""
UTC datetime utilities.

Every timestamp crossing a provider or persistence boundary is normalized
to a timezone-aware UTC datetime with these helpers.
"""

import re
from datetime import UTC, datetime, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

# Graph and some other APIs emit 7 fractional digits; Python keeps 6.
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def utc_now() -> datetime:
    """Return the current UTC datetime with timezone info."""
    return datetime.now(UTC)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """
    Ensure a datetime is UTC-aware.

    - If None, returns None
    - If naive, assumes UTC and attaches timezone
    - If aware, converts to UTC
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def from_timestamp_utc(timestamp: float) -> datetime:
    """Create a UTC-aware datetime from a Unix timestamp in seconds."""
    return datetime.fromtimestamp(timestamp, tz=UTC)


def from_timestamp_ms_utc(timestamp_ms: int) -> datetime:
    """
    Create a UTC-aware datetime from a millisecond Unix timestamp.

    Gmail's internalDate is already in milliseconds; Nylas epoch seconds are
    multiplied by 1000 before they reach this helper.
    """
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC)


def resolve_timezone(name: str | None) -> tzinfo:
    """Return a tzinfo for an IANA name, falling back to UTC for unknown names."""
    if not name or name.upper() == "UTC":
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def parse_iso_datetime(value: str, timezone_name: str | None = None) -> datetime:
    """
    Parse an ISO 8601 timestamp into UTC.

    Naive values are interpreted in ``timezone_name`` (UTC when missing or
    unknown). A trailing ``Z`` and more than six fractional digits are accepted.

    Raises:
        ValueError: If the value is not an ISO 8601 timestamp.
    """
    text = _FRACTION_RE.sub(r"\1", value.strip())
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=resolve_timezone(timezone_name))
    return parsed.astimezone(UTC)
