"""UTC clock and provider datetime helpers."""

import re
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]

# Graph returns up to seven fractional digits, which fromisoformat rejects
# on older interpreters
_FRACTION = re.compile(r"\.(\d+)")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_provider_datetime(value: datetime) -> str:
    """Format a datetime the way the provider expects (ISO-8601, UTC, ``Z``)."""
    value = ensure_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_provider_datetime(value: str) -> datetime:
    """
    Parse an ISO-8601 datetime returned by the provider.

    Accepts a ``Z`` suffix or explicit offset and truncates the fractional
    part to microseconds.
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    return ensure_utc(datetime.fromisoformat(text))
