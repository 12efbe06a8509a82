"""Availability resolver: weekly working pattern plus exception dates decide which days are bookable."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Iterator

from . import config
from .models import Practitioner, PractitionerSchedule, weekday_name

NOT_WORKING_DAY = "not a working day"
ON_EXCEPTION_LIST = "practitioner unavailable on this date"


def is_workable(schedule: PractitionerSchedule, day: date) -> tuple[bool, str | None]:
    """
    Return (True, None) if the practitioner works on `day`, else (False, reason).

    The weekday pattern is checked before the exception list, so an exception date
    that also falls on a non-working weekday reports NOT_WORKING_DAY.
    """
    if weekday_name(day) not in schedule.working_days:
        return False, NOT_WORKING_DAY
    if day in schedule.exception_dates:
        return False, ON_EXCEPTION_LIST
    return True, None


def workable_dates(
    schedule: PractitionerSchedule,
    from_date: date,
    horizon_days: int = 30,
) -> Iterator[date]:
    """Yield workable dates in [from_date, from_date + horizon_days), ascending."""
    for i in range(max(horizon_days, 0)):
        d = from_date + timedelta(days=i)
        ok, _ = is_workable(schedule, d)
        if ok:
            yield d


def next_workable_date(schedule: PractitionerSchedule, from_date: date, horizon_days: int = 30) -> date | None:
    return next(workable_dates(schedule, from_date, horizon_days), None)


def clinic_today(now: datetime | None = None) -> date:
    """Today's date in the clinic's timezone."""
    tz = config.clinic_timezone()
    return (now or datetime.now(tz)).astimezone(tz).date()


def booking_window(today: date | None = None, horizon_days: int | None = None) -> tuple[date, int]:
    """(first bookable date, horizon). Booking opens the day after today."""
    today = today or clinic_today()
    horizon = config.booking_horizon_days() if horizon_days is None else horizon_days
    return today + timedelta(days=1), horizon


def describe_unavailability(practitioner: Practitioner, day: date, reason: str | None) -> str:
    """Human-readable message for a non-workable day, naming the weekday or the excepted date."""
    if reason == NOT_WORKING_DAY:
        return f"{practitioner.name} is not available on {weekday_name(day)}s ({NOT_WORKING_DAY})"
    if reason == ON_EXCEPTION_LIST:
        return f"{practitioner.name} is on leave on {day.isoformat()} ({ON_EXCEPTION_LIST})"
    return f"{practitioner.name} is not available on {day.isoformat()}"
