"""Timestamp parsing shared by the mappers, aggregator and calendar math.

Stored values are ISO-8601 strings, but older rows carry plain dates
(``2025-03-01``) and naive timestamps. Everything here is tolerant: a value
that cannot be read yields ``None`` instead of raising.
"""

from __future__ import annotations

from datetime import date, datetime, time, timezone, tzinfo

UTC = timezone.utc


def now_utc() -> datetime:
    return datetime.now(UTC)


def parse_instant(value: object, tz: tzinfo = UTC) -> datetime | None:
    """Return an aware datetime for *value*, or None when it is not date-like.

    Naive values (and bare dates, taken as midnight) are placed in *tz*.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime.combine(value, time.min)
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        if raw.endswith("Z") or raw.endswith("z"):
            raw = raw[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(raw)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz)
    return dt


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.isoformat()


def within(value: object, start: datetime, end: datetime, tz: tzinfo = UTC) -> bool:
    """Inclusive ``start <= value <= end``; unparsable or missing values are outside."""
    dt = parse_instant(value, tz)
    if dt is None:
        return False
    return start <= dt <= end
