# chat_digest/services/schedule.py

"""Daily wall-clock firing rules for chat digests.

The next fire time is recomputed from the chat's zone on every cycle, so
DST changes never shift a report. On transition days:

- a time that does not exist (spring forward) fires once, at the same
  distance past the gap (02:30 becomes 03:30);
- a time that occurs twice (fall back) fires once, at its first occurrence.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.base import BaseTrigger

from chat_digest.core.config import is_valid_report_time
from chat_digest.core.errors import InvalidScheduleError


@dataclass(frozen=True)
class DailySchedule:
    hour: int
    minute: int
    timezone: str

    @classmethod
    def parse(cls, report_time: str, tz_name: str) -> "DailySchedule":
        """Validate a chat's HH:MM and IANA zone. Raises InvalidScheduleError."""
        if not isinstance(report_time, str) or not is_valid_report_time(report_time):
            raise InvalidScheduleError(f"Invalid report time {report_time!r}, expected HH:MM")
        try:
            ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError, TypeError, OSError) as e:
            raise InvalidScheduleError(f"Unknown timezone {tz_name!r}") from e

        hours, minutes = report_time.split(":")
        return cls(hour=int(hours), minute=int(minutes), timezone=tz_name)

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def report_time(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


def local_fire_time(day: date, schedule: DailySchedule) -> datetime:
    """The instant ``schedule`` fires on the local ``day``, in UTC.

    Kept in UTC: an aware datetime inside a repeated hour never compares
    equal to one in another zone.
    """
    # fold=0 picks the first of two ambiguous instants and shifts
    # nonexistent wall times forward by the size of the gap
    wall = datetime.combine(day, time(schedule.hour, schedule.minute), tzinfo=schedule.zone)
    return wall.astimezone(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_fire_time(schedule: DailySchedule, after: datetime, inclusive: bool = False) -> datetime:
    """First fire strictly after ``after`` (or at it, when ``inclusive``)"""
    after = _as_utc(after)
    day = after.astimezone(schedule.zone).date() - timedelta(days=1)
    while True:
        candidate = local_fire_time(day, schedule)
        if candidate > after or (inclusive and candidate == after):
            return candidate
        day += timedelta(days=1)


def last_fire_day(schedule: DailySchedule, at: datetime) -> date:
    """Local day of the latest fire at or before ``at``.

    A fire that runs late (within the misfire grace) still maps to the day
    it was scheduled for, not the day the clock shows when it runs.
    """
    at = _as_utc(at)
    day = at.astimezone(schedule.zone).date() + timedelta(days=1)
    while local_fire_time(day, schedule) > at:
        day -= timedelta(days=1)
    return day


class DailyLocalTimeTrigger(BaseTrigger):
    """APScheduler trigger firing once a day at a wall-clock time in a zone"""

    __slots__ = ("schedule",)

    def __init__(self, schedule: DailySchedule):
        self.schedule = schedule

    def get_next_fire_time(
        self, previous_fire_time: Optional[datetime], now: datetime
    ) -> Optional[datetime]:
        if previous_fire_time is not None:
            return next_fire_time(self.schedule, previous_fire_time)
        return next_fire_time(self.schedule, now, inclusive=True)

    def __str__(self):
        return f"daily[{self.schedule.report_time} {self.schedule.timezone}]"

    def __repr__(self):
        return (
            f"<{self.__class__.__name__} (time='{self.schedule.report_time}', "
            f"timezone='{self.schedule.timezone}')>"
        )
