"""Calendar window math for the activities agenda (day / week / month views).

Weeks start on Monday. Windows are inclusive of their last instant.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta
from typing import Iterable, TypeVar

from .dates import UTC, parse_instant
from .types import Activity

VIEWS = ("day", "week", "month")
DEFAULT_DURATION = timedelta(minutes=60)

A = TypeVar("A", bound=Activity)


def _start_of_day(d: datetime) -> datetime:
    return datetime.combine(d.date(), time.min, tzinfo=d.tzinfo)


def _end_of_day(d: datetime) -> datetime:
    return datetime.combine(d.date(), time.max, tzinfo=d.tzinfo)


def start_of_week(anchor: datetime) -> datetime:
    return _start_of_day(anchor - timedelta(days=anchor.weekday()))


def range_for(view: str, anchor: datetime) -> tuple[datetime, datetime]:
    if view == "day":
        return _start_of_day(anchor), _end_of_day(anchor)
    if view == "week":
        start = start_of_week(anchor)
        return start, _end_of_day(start + timedelta(days=6))
    if view == "month":
        start = _start_of_day(anchor.replace(day=1))
        last = calendar.monthrange(anchor.year, anchor.month)[1]
        return start, _end_of_day(start.replace(day=last))
    raise ValueError(f"Unknown calendar view: {view!r}")


def in_visible_range(
    start: object,
    end: object,
    window_start: datetime,
    window_end: datetime,
) -> bool:
    """True when the event touches the window.

    A missing end means a 60 minute event. The event is visible when it starts
    inside the window, ends inside it, or spans it entirely.
    """
    tz = window_start.tzinfo or UTC
    s = parse_instant(start, tz)
    if s is None:
        return False
    e = parse_instant(end, tz) or s + DEFAULT_DURATION
    return (
        window_start <= s <= window_end
        or window_start <= e <= window_end
        or (s < window_start and e > window_end)
    )


def visible_activities(
    activities: Iterable[A], window_start: datetime, window_end: datetime
) -> list[A]:
    out = [a for a in activities if in_visible_range(a.fecha_hora, a.fecha_hora_fin, window_start, window_end)]
    return sorted(out, key=lambda a: parse_instant(a.fecha_hora, window_start.tzinfo or UTC) or window_start)


def days_of_week(anchor: datetime) -> list[date]:
    start = start_of_week(anchor).date()
    return [start + timedelta(days=i) for i in range(7)]


def grid_of_month(anchor: datetime) -> list[date]:
    # 6 rows x 7 columns starting on the Monday on or before the 1st
    first = anchor.replace(day=1)
    start = start_of_week(first).date()
    return [start + timedelta(days=i) for i in range(42)]
