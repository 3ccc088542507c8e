"""Cadence arithmetic and due-schedule selection."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .schemas import Schedule

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/New_York"
RUN_HOUR = 9


def _zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r; using %s", name, DEFAULT_TIMEZONE)
        return ZoneInfo(DEFAULT_TIMEZONE)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _at_run_hour(day, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, time(RUN_HOUR), tzinfo=tz).astimezone(timezone.utc)


def next_run_at(cadence: str, now: datetime, tz_name: str | None = None) -> datetime:
    """Return the next run time for ``cadence`` strictly after ``now``, in UTC.

    Calendar cadences land on 09:00 in ``tz_name``. Naive ``now`` values are
    read as UTC. Unknown cadences fall back to one week later.
    """

    now_utc = _as_utc(now)
    tz = _zone(tz_name)
    local_day = now_utc.astimezone(tz).date()

    if cadence == "once":
        return now_utc + timedelta(hours=1)
    if cadence == "daily":
        return _at_run_hour(local_day + timedelta(days=1), tz)
    if cadence == "weekly":
        # Monday is weekday 0; a Monday input moves to the following Monday.
        days_ahead = (7 - local_day.weekday()) % 7 or 7
        return _at_run_hour(local_day + timedelta(days=days_ahead), tz)
    if cadence == "biweekly":
        return _at_run_hour(local_day + timedelta(days=14), tz)
    if cadence == "monthly":
        if local_day.month == 12:
            first = local_day.replace(year=local_day.year + 1, month=1, day=1)
        else:
            first = local_day.replace(month=local_day.month + 1, day=1)
        return _at_run_hour(first, tz)

    logger.warning("Unknown cadence %r; scheduling one week out", cadence)
    return now_utc + timedelta(days=7)


class Scheduler:
    """Decide which schedules are due and advance them after a run."""

    def __init__(self, default_timezone: str = DEFAULT_TIMEZONE):
        self.default_timezone = default_timezone

    def next_run_at(self, cadence: str, now: datetime, tz_name: str | None = None) -> datetime:
        return next_run_at(cadence, now, tz_name or self.default_timezone)

    def is_due(self, schedule: Schedule, now: datetime) -> bool:
        if not schedule.is_active or schedule.next_run_at is None:
            return False
        return _as_utc(schedule.next_run_at) <= _as_utc(now)

    def due(self, schedules: Iterable[Schedule], now: datetime) -> list[Schedule]:
        ready = [s for s in schedules if self.is_due(s, now)]
        ready.sort(key=lambda s: _as_utc(s.next_run_at))
        return ready

    def advance(self, schedule: Schedule, now: datetime) -> Schedule:
        """Return a copy of ``schedule`` updated after a run at ``now``."""

        now_utc = _as_utc(now)
        if schedule.cadence == "once":
            return schedule.model_copy(
                update={"last_run_at": now_utc, "next_run_at": None, "is_active": False}
            )
        return schedule.model_copy(
            update={
                "last_run_at": now_utc,
                "next_run_at": self.next_run_at(schedule.cadence, now_utc, schedule.timezone),
            }
        )
