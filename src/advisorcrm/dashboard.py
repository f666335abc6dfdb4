from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, time, timedelta, tzinfo
from typing import Iterable, Mapping

from .config import CrmConfig
from .dates import UTC, within
from .types import CALL, CLOSING_MEETING, INITIAL_MEETING, Activity, Client, Policy

RANGE_KEYS = ("week", "month", "q3", "all")


@dataclass(frozen=True)
class DashboardRange:
    start: datetime
    end: datetime


@dataclass(frozen=True)
class DashboardSnapshot:
    new_prospects: int
    calls_completed: int
    appointments_scheduled: int
    policies_entered: int
    points_today: int

    def as_dict(self) -> dict[str, int]:
        return {
            "new_prospects": self.new_prospects,
            "calls_completed": self.calls_completed,
            "appointments_scheduled": self.appointments_scheduled,
            "policies_entered": self.policies_entered,
            "points_today": self.points_today,
        }


def _end_of_day(d: datetime) -> datetime:
    return datetime.combine(d.date(), time.max, tzinfo=d.tzinfo)


def range_for_preset(key: str, now: datetime, config: CrmConfig) -> DashboardRange:
    """Selected dashboard window ending at *now* (``month`` ends at month end).

    ``now`` should already be expressed in the business timezone.
    """
    if key == "month":
        first = datetime.combine(now.date().replace(day=1), time.min, tzinfo=now.tzinfo)
        last_day = calendar.monthrange(now.year, now.month)[1]
        return DashboardRange(first, _end_of_day(first.replace(day=last_day)))
    if key == "all":
        return DashboardRange(datetime(1970, 1, 1, tzinfo=now.tzinfo), now)
    if key in config.range_presets:
        return DashboardRange(now - timedelta(days=config.range_presets[key]), now)
    raise ValueError(f"Unknown range preset: {key!r}")


def today_window(now: datetime) -> DashboardRange:
    start = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)
    return DashboardRange(start, _end_of_day(now))


def activity_points(activity: Activity, points: Mapping[str, int]) -> int:
    return int(points.get(activity.tipo, 0))


def compute_snapshot(
    clients: Iterable[Client],
    policies: Iterable[Policy],
    activities: Iterable[Activity],
    selected: DashboardRange,
    today: DashboardRange,
    points: Mapping[str, int],
    tz: tzinfo | None = None,
) -> DashboardSnapshot:
    """Funnel counts for *selected* plus points earned in the *today* window.

    Bounds are inclusive; a missing or unparsable date is outside every range.
    Naive stored timestamps are read in *tz* (defaults to the range's zone).
    """
    tz = tz or selected.start.tzinfo or UTC
    activities = list(activities)

    def in_range(value: object) -> bool:
        return within(value, selected.start, selected.end, tz)

    def in_today(value: object) -> bool:
        return within(value, today.start, today.end, tz)

    new_prospects = sum(1 for c in clients if in_range(c.created_at))
    calls_completed = sum(
        1 for a in activities if a.tipo == CALL and a.realizada and in_range(a.fecha_hora)
    )
    appointments = sum(
        1 for a in activities if a.tipo in (INITIAL_MEETING, CLOSING_MEETING) and in_range(a.fecha_hora)
    )
    policies_entered = sum(1 for p in policies if in_range(p.fecha_ingreso))
    points_today = sum(
        activity_points(a, points) for a in activities if a.realizada and in_today(a.fecha_hora)
    )
    return DashboardSnapshot(
        new_prospects=new_prospects,
        calls_completed=calls_completed,
        appointments_scheduled=appointments,
        policies_entered=policies_entered,
        points_today=points_today,
    )


def daily_progress(points_today: int, target: int = 25) -> float:
    """Fraction of the daily points target reached, clamped to [0, 1]."""
    if target <= 0:
        return 1.0
    return max(0.0, min(1.0, points_today / target))


def localize(now: datetime | None, tz: tzinfo) -> datetime:
    if now is None:
        return datetime.now(tz)
    if now.tzinfo is None:
        now = now.replace(tzinfo=tz)
    return now.astimezone(tz)
