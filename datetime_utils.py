from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional


UTC = timezone.utc


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def _normalize_fraction(s: str) -> str:
    """Pad or trim fractional seconds to 6 digits."""

    digits = s[:6]
    if len(digits) < 6:
        digits = digits + "0" * (6 - len(digits))
    return digits


def parse_rfc3339(s: Optional[str]) -> Optional[datetime]:
    """Parse a RFC3339 string and return a timezone-aware UTC datetime."""

    if not s:
        return None

    value = s.strip()
    if not value:
        return None

    if value.endswith("Z"):
        value = value[:-1] + "+00:00"

    if "." in value:
        head, tail = value.split(".", 1)
        tz_sign = "+"
        tz_suffix = "00:00"
        if "+" in tail:
            frac, tz_suffix = tail.split("+", 1)
        elif "-" in tail:
            frac, tz_suffix = tail.split("-", 1)
            tz_sign = "-"
        else:
            frac = tail
        value = f"{head}.{_normalize_fraction(frac)}{tz_sign}{tz_suffix}"
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None

    return ensure_utc(dt)


def to_rfc3339_utc(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to RFC3339 in UTC, keeping microseconds."""

    value = ensure_utc(dt)
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}" if count == 1 else f"{count} {unit}s"


def format_elapsed(delta: timedelta) -> str:
    """Human readable duration used by the offline banner."""

    seconds = max(0, int(delta.total_seconds()))
    if seconds < 60:
        return "less than a minute"
    minutes = seconds // 60
    if minutes < 60:
        return _plural(minutes, "minute")
    hours = minutes // 60
    if hours < 24:
        return _plural(hours, "hour")
    return _plural(hours // 24, "day")


__all__ = [
    "UTC",
    "ensure_utc",
    "format_elapsed",
    "parse_rfc3339",
    "to_rfc3339_utc",
    "utc_now",
]
