"""Timezone helpers. Everything inside the service is UTC-aware."""
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

# Gateway statements are reported in Western Indonesia Time (UTC+7, no DST)
WIB = timezone(timedelta(hours=7), "WIB")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime], assume: timezone = timezone.utc) -> Optional[datetime]:
    """
    Normalize a datetime to UTC.

    Naive values (SQLite round-trips, gateway strings without offset) are
    interpreted in ``assume``.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=assume)
    return value.astimezone(timezone.utc)


_FORMATS = (
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%d-%m-%Y %H:%M:%S",
    "%d-%m-%Y %H:%M",
)


def _from_epoch(seconds: float) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def parse_timestamp(value: Any, assume: timezone = WIB) -> Optional[datetime]:
    """
    Parse a gateway timestamp into an aware UTC datetime.

    Handles ISO-8601 (with or without offset), the day-first formats used by
    Indonesian statement APIs and unix epoch seconds. Values without an
    offset are local to ``assume``. Returns None for anything unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value, assume)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _from_epoch(value)

    text = str(value).strip()
    if text.isascii() and text.isdigit():
        return _from_epoch(float(text))

    try:
        return as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")), assume)
    except ValueError:
        pass

    for fmt in _FORMATS:
        try:
            return as_utc(datetime.strptime(text, fmt), assume)
        except ValueError:
            continue
    return None
