"""Time sources and the season calendar.

Nothing in the pipeline reads the wall clock directly. The scheduler and
the hourly distributor take a Clock so tests can drive them without real
delays.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Protocol, Tuple

from .errors import ValidationError
from .models import check_day, check_hour
from .project_constants import NUM_DAYS


class Clock(Protocol):
    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


def parse_close_time(raw: str) -> time:
    try:
        hh, mm = raw.strip().split(":")
        return time(int(hh), int(mm), tzinfo=timezone.utc)
    except ValueError:
        raise ValidationError(f"Invalid close time {raw!r} (expected HH:MM)") from None


@dataclass(frozen=True)
class SeasonCalendar:
    """Maps UTC dates to advent days (season_start is day 1)."""

    season_start: date
    num_days: int = NUM_DAYS

    def advent_day_for_date(self, d: date) -> Optional[int]:
        day = (d - self.season_start).days + 1
        if 1 <= day <= self.num_days:
            return day
        return None

    def date_for_day(self, day: int) -> date:
        check_day(day)
        return self.season_start + timedelta(days=day - 1)

    def day_window(self, day: int) -> Tuple[datetime, datetime]:
        """[start, end) of the UTC calendar day backing an advent day."""
        start = datetime.combine(self.date_for_day(day), time(0), tzinfo=timezone.utc)
        return start, start + timedelta(days=1)

    def hour_window(self, day: int, hour: int) -> Tuple[datetime, datetime]:
        check_hour(hour)
        start = self.day_window(day)[0] + timedelta(hours=hour)
        return start, start + timedelta(hours=1)

    def day_to_execute(self, now: datetime) -> Optional[int]:
        """The daily run at ``now`` settles the previous UTC date."""
        return self.advent_day_for_date((now.astimezone(timezone.utc) - timedelta(days=1)).date())

    def previous_hour_target(self, now: datetime) -> Optional[Tuple[int, int]]:
        """Last fully elapsed (day, hour), or None outside the season.

        At 00:xx on day 1 there is no earlier hour in the season, so the
        result is None.
        """
        current = now.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)
        prev = current - timedelta(hours=1)
        day = self.advent_day_for_date(prev.date())
        if day is None:
            return None
        return day, prev.hour


def previous_hour(day: int, hour: int) -> Optional[Tuple[int, int]]:
    """Hour 0 of day N rolls back to hour 23 of day N-1; day 1 hour 0 has no predecessor."""
    check_day(day)
    check_hour(hour)
    if hour > 0:
        return day, hour - 1
    if day == 1:
        return None
    return day - 1, 23


def next_fire_time(now: datetime, at: time) -> datetime:
    """The next instant strictly after ``now`` whose UTC time of day is ``at``."""
    now = now.astimezone(timezone.utc)
    candidate = datetime.combine(now.date(), at.replace(tzinfo=None), tzinfo=timezone.utc)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def next_hour_boundary(now: datetime, offset: timedelta = timedelta(0)) -> datetime:
    now = now.astimezone(timezone.utc)
    boundary = now.replace(minute=0, second=0, microsecond=0) + offset
    while boundary <= now:
        boundary += timedelta(hours=1)
    return boundary
