"""Scheduling entities: branches, practitioners, schedules, slots and appointments."""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Iterable

WEEKDAYS: tuple[str, ...] = tuple(calendar.day_name)  # Monday .. Sunday
SLOT_MINUTES = 30


def weekday_name(day: date) -> str:
    return WEEKDAYS[day.weekday()]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_days(days: Iterable[str]) -> frozenset[str]:
    out = set()
    for raw in days:
        name = str(raw).strip().title()
        if name not in WEEKDAYS:
            raise ValueError(f"Unknown weekday: {raw!r}")
        out.add(name)
    return frozenset(out)


def _as_date(value: date | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _as_time(value: time | str) -> time:
    if isinstance(value, time):
        return value
    return time.fromisoformat(str(value))


class AppointmentStatus(str, Enum):
    confirmed = "confirmed"
    pending = "pending"
    completed = "completed"
    cancelled = "cancelled"


ACTIVE_STATUSES = frozenset({AppointmentStatus.confirmed, AppointmentStatus.pending})


@dataclass(frozen=True)
class WorkingHours:
    """Daily window, inclusive start and exclusive end."""
    start: time
    end: time

    def __post_init__(self) -> None:
        for t in (self.start, self.end):
            if t.second or t.microsecond:
                raise ValueError(f"working hours must be whole minutes, got {t}")
        if not self.start < self.end:
            raise ValueError(f"working hours start {self.start} must be before end {self.end}")


@dataclass(frozen=True)
class PractitionerSchedule:
    """Weekly working pattern plus dates the practitioner is away."""
    practitioner_id: str
    working_days: frozenset[str]
    working_hours: WorkingHours
    exception_dates: frozenset[date] = frozenset()

    def __post_init__(self) -> None:
        # Accept any iterable of names/dates and store normalized frozensets.
        object.__setattr__(self, "working_days", _normalize_days(self.working_days))
        object.__setattr__(self, "exception_dates", frozenset(_as_date(d) for d in self.exception_dates))

    @classmethod
    def from_dict(cls, practitioner_id: str, d: dict[str, Any]) -> "PractitionerSchedule":
        hours = d.get("working_hours") or d.get("available_hours") or {}
        return cls(
            practitioner_id=practitioner_id,
            working_days=d.get("working_days") or d.get("available_days") or [],
            working_hours=WorkingHours(_as_time(hours["start"]), _as_time(hours["end"])),
            exception_dates=d.get("exception_dates") or d.get("unavailable_dates") or [],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "working_days": [day for day in WEEKDAYS if day in self.working_days],
            "working_hours": {
                "start": self.working_hours.start.strftime("%H:%M"),
                "end": self.working_hours.end.strftime("%H:%M"),
            },
            "exception_dates": sorted(d.isoformat() for d in self.exception_dates),
        }


@dataclass(frozen=True)
class Branch:
    id: str
    name: str
    code: str  # e.g. "CLB"; printed in appointment tokens
    location: str = ""
    phone: str = ""
    operating_hours: str = ""
    facilities: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "location": self.location,
            "phone": self.phone,
            "operating_hours": self.operating_hours,
            "facilities": list(self.facilities),
        }


@dataclass(frozen=True)
class Practitioner:
    id: str
    name: str
    specialization: str
    branch_id: str
    schedule: PractitionerSchedule

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "specialization": self.specialization,
            "branch_id": self.branch_id,
            "schedule": self.schedule.to_dict(),
        }


@dataclass(frozen=True)
class SlotKey:
    """Identity of a bookable slot: (practitioner, date, time)."""
    practitioner_id: str
    date: date
    time: time

    def __str__(self) -> str:
        return f"{self.practitioner_id}#{self.date.isoformat()}#{self.time.strftime('%H:%M')}"


@dataclass(frozen=True)
class Slot:
    time: time
    is_peak: bool
    is_reserved: bool = False

    @property
    def label(self) -> str:
        """12-hour display label, e.g. '9:00 AM'."""
        hour12 = self.time.hour % 12 or 12
        period = "PM" if self.time.hour >= 12 else "AM"
        return f"{hour12}:{self.time.minute:02d} {period}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "time": self.time.strftime("%H:%M"),
            "label": self.label,
            "is_peak": self.is_peak,
            "is_reserved": self.is_reserved,
        }


@dataclass
class Appointment:
    """Durable booking record. Cancellation is a status change, never a delete."""
    id: str
    patient_id: str
    practitioner_id: str
    branch_id: str
    date: date
    time: time
    token: str
    status: AppointmentStatus = AppointmentStatus.confirmed
    duration_minutes: int = SLOT_MINUTES
    notes: str | None = None
    reason: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> SlotKey:
        return SlotKey(self.practitioner_id, self.date, self.time)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> dict[str, Any]:
        """Plain-JSON form used by the stores and the API."""
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "practitioner_id": self.practitioner_id,
            "branch_id": self.branch_id,
            "date": self.date.isoformat(),
            "time": self.time.strftime("%H:%M"),
            "token": self.token,
            "status": self.status.value,
            "duration_minutes": self.duration_minutes,
            "notes": self.notes,
            "reason": self.reason,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Appointment":
        return cls(
            id=str(d["id"]),
            patient_id=str(d["patient_id"]),
            practitioner_id=str(d["practitioner_id"]),
            branch_id=str(d["branch_id"]),
            date=_as_date(d["date"]),
            time=_as_time(d["time"]),
            token=str(d["token"]),
            status=AppointmentStatus(d.get("status", AppointmentStatus.confirmed.value)),
            duration_minutes=int(d.get("duration_minutes", SLOT_MINUTES)),
            notes=d.get("notes"),
            reason=d.get("reason"),
            created_at=datetime.fromisoformat(d["created_at"]) if d.get("created_at") else utcnow(),
            updated_at=datetime.fromisoformat(d["updated_at"]) if d.get("updated_at") else utcnow(),
        )
