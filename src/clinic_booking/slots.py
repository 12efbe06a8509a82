"""Slot generator: fixed 30-minute slots across a practitioner's working hours."""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, time
from typing import Iterable

from .availability import is_workable
from .models import SLOT_MINUTES, PractitionerSchedule, Slot

# Peak windows in minutes since midnight, inclusive start and exclusive end: 09:00-11:00, 14:00-16:00
PEAK_WINDOWS: tuple[tuple[int, int], ...] = ((9 * 60, 11 * 60), (14 * 60, 16 * 60))

_TIME_FORMATS = ("%H:%M", "%I:%M %p", "%I:%M%p")


def _minutes(t: time) -> int:
    return t.hour * 60 + t.minute


def _from_minutes(m: int) -> time:
    return time(m // 60, m % 60)


def is_peak(t: time) -> bool:
    m = _minutes(t)
    return any(start <= m < end for start, end in PEAK_WINDOWS)


def generate_slots(schedule: PractitionerSchedule, day: date) -> list[Slot]:
    """
    Enumerate slots for `day`, strictly increasing by time.

    Returns [] when the day is not workable. A trailing period shorter than
    SLOT_MINUTES is dropped. Reservation state is not known here; every slot
    comes back with is_reserved=False (see overlay_reservations).
    """
    ok, _ = is_workable(schedule, day)
    if not ok:
        return []
    start = _minutes(schedule.working_hours.start)
    end = _minutes(schedule.working_hours.end)
    slots: list[Slot] = []
    m = start
    while m + SLOT_MINUTES <= end:
        t = _from_minutes(m)
        slots.append(Slot(time=t, is_peak=is_peak(t)))
        m += SLOT_MINUTES
    return slots


def slot_times(schedule: PractitionerSchedule, day: date) -> set[time]:
    return {s.time for s in generate_slots(schedule, day)}


def overlay_reservations(slots: Iterable[Slot], taken: Iterable[time]) -> list[Slot]:
    """Mark slots whose time is in `taken` as reserved."""
    taken_set = set(taken)
    return [replace(s, is_reserved=s.time in taken_set) for s in slots]


def parse_time(value: str | time) -> time:
    """Parse 'HH:MM' or 12-hour '9:30 AM'. Raises ValueError."""
    if isinstance(value, time):
        return value
    text = str(value).strip().upper()
    for fmt in _TIME_FORMATS:
        try:
            return datetime.strptime(text, fmt).time()
        except ValueError:
            continue
    raise ValueError(f"Unrecognized time: {value!r}")


def format_slot_time(t: time) -> str:
    """'9:00 AM' style, as shown on the booking screens."""
    return Slot(time=t, is_peak=False).label
