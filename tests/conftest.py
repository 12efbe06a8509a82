"""Shared fixtures: a small clinic directory, in-memory store/guard and a controllable clock."""

from __future__ import annotations

from datetime import date, time

import pytest

from clinic_booking.errors import StoreUnavailableError
from clinic_booking.models import Branch, Practitioner, PractitionerSchedule, WorkingHours
from clinic_booking.reservations import InMemoryReservationGuard
from clinic_booking.session import BookingSession
from clinic_booking.store import ClinicDirectory, InMemoryAppointmentStore

TODAY = date(2024, 12, 10)  # Tuesday


class FakeClock:
    """Monotonic-style clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def schedule() -> PractitionerSchedule:
    """Mon/Wed/Fri 09:00-12:00, away on Friday 2024-12-20."""
    return PractitionerSchedule(
        practitioner_id="practitioner-1",
        working_days={"Monday", "Wednesday", "Friday"},
        working_hours=WorkingHours(time(9, 0), time(12, 0)),
        exception_dates={date(2024, 12, 20)},
    )


@pytest.fixture
def directory(schedule) -> ClinicDirectory:
    branches = [
        Branch(id="branch-1", name="Colombo Main Hospital", code="CLB"),
        Branch(id="branch-2", name="Kandy Wellness Center", code="KDY"),
    ]
    practitioners = [
        Practitioner(
            id="practitioner-1",
            name="Dr. Sarah Johnson",
            specialization="Wellness & Nutrition",
            branch_id="branch-1",
            schedule=schedule,
        ),
        Practitioner(
            id="practitioner-2",
            name="Dr. Michael Chen",
            specialization="Fitness & Rehabilitation",
            branch_id="branch-2",
            schedule=PractitionerSchedule(
                practitioner_id="practitioner-2",
                working_days={"Tuesday", "Thursday"},
                working_hours=WorkingHours(time(14, 0), time(16, 0)),
            ),
        ),
    ]
    return ClinicDirectory(branches, practitioners)


@pytest.fixture
def store() -> InMemoryAppointmentStore:
    return InMemoryAppointmentStore()


@pytest.fixture
def guard() -> InMemoryReservationGuard:
    return InMemoryReservationGuard(ttl_seconds=300)


@pytest.fixture
def make_session(directory, guard, store):
    def _make(patient_id: str = "patient-1", **kwargs) -> BookingSession:
        kwargs.setdefault("notifier", None)
        kwargs.setdefault("today", lambda: TODAY)
        kwargs.setdefault("sleep", lambda seconds: None)
        kwargs.setdefault("store", store)
        return BookingSession(patient_id=patient_id, directory=directory, guard=guard, **kwargs)
    return _make


@pytest.fixture
def fail_first():
    """Wrap a callable so its first `times` calls raise `exc` (a throttled backend by default)."""

    def _wrap(real, times: int = 1, exc: Exception | None = None):
        calls = {"n": 0}

        def wrapper(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] <= times:
                raise exc or StoreUnavailableError("backend throttled")
            return real(*args, **kwargs)

        return wrapper

    return _wrap
