"""Booking session state machine: transitions, validation, conflicts, persistence retries."""

from __future__ import annotations

import threading
from datetime import date, datetime, time, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from clinic_booking.errors import (
    InvalidTransitionError,
    SelectionError,
    SlotConflictError,
    StoreUnavailableError,
)
from clinic_booking.models import Appointment, AppointmentStatus, SlotKey
from clinic_booking.reservations import COMMITTED, FREE, RESERVED
from clinic_booking.session import (
    Abandoned,
    Confirmed,
    SelectBranch,
    SelectDateTime,
    SelectPractitioner,
    SessionRegistry,
)
from clinic_booking.store import InMemoryAppointmentStore
from clinic_booking.tokens import is_valid_token

MONDAY = date(2024, 12, 16)
TUESDAY = date(2024, 12, 17)
LEAVE_DAY = date(2024, 12, 20)


class FlakyStore(InMemoryAppointmentStore):
    """Fails the first `failures` writes with a transient error."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.put_calls = 0

    def put(self, appointment):
        self.put_calls += 1
        if self.put_calls <= self.failures:
            raise StoreUnavailableError("store down")
        super().put(appointment)


def _at_date_step(session):
    session.select_branch("branch-1")
    session.select_practitioner("practitioner-1")
    return session


def test_happy_path_books_and_commits(make_session, guard, store):
    notifier = MagicMock()
    session = make_session(notifier=notifier)
    assert isinstance(session.state, SelectBranch)
    assert [b.code for b in session.branches()] == ["CLB", "KDY"]

    practitioners = session.select_branch("branch-1")
    assert [p.id for p in practitioners] == ["practitioner-1"]
    assert isinstance(session.state, SelectPractitioner)

    dates = session.select_practitioner("practitioner-1")
    assert dates[0] == date(2024, 12, 11)
    assert LEAVE_DAY not in dates and TUESDAY not in dates
    assert isinstance(session.state, SelectDateTime)

    slots = session.select_date(MONDAY)
    assert len(slots) == 6
    assert session.state.day == MONDAY

    appt = session.confirm(MONDAY, time(9, 0), notes="first visit")
    assert isinstance(session.state, Confirmed)
    assert appt.key == SlotKey("practitioner-1", MONDAY, time(9, 0))
    assert appt.status == AppointmentStatus.confirmed
    assert appt.branch_id == "branch-1" and appt.patient_id == "patient-1"
    assert appt.duration_minutes == 30
    assert is_valid_token(appt.token) and appt.token.startswith("CLB-")
    assert guard.state(appt.key) == COMMITTED
    assert store.get(appt.id).token == appt.token
    notifier.assert_called_once_with(appt)


def test_unworkable_date_keeps_state_and_explains(make_session):
    session = _at_date_step(make_session())
    session.select_date(MONDAY)
    with pytest.raises(SelectionError) as exc:
        session.select_date(TUESDAY)
    assert "Tuesdays" in exc.value.reason
    assert "not a working day" in exc.value.reason
    assert isinstance(session.state, SelectDateTime)
    assert session.state.day is None


def test_exception_date_reports_leave(make_session):
    session = _at_date_step(make_session())
    with pytest.raises(SelectionError) as exc:
        session.select_date(LEAVE_DAY)
    assert "practitioner unavailable on this date" in exc.value.reason


def test_dates_outside_window_are_rejected(make_session):
    session = _at_date_step(make_session())
    with pytest.raises(SelectionError):
        session.select_date(date(2024, 12, 9))  # past Monday
    with pytest.raises(SelectionError):
        session.select_date(date(2025, 3, 3))  # Monday beyond 30 days


def test_unknown_branch_is_recoverable(make_session):
    session = make_session()
    with pytest.raises(SelectionError):
        session.select_branch("branch-99")
    assert isinstance(session.state, SelectBranch)
    session.select_branch("branch-1")
    assert isinstance(session.state, SelectPractitioner)


def test_practitioner_must_work_at_branch(make_session):
    session = make_session()
    session.select_branch("branch-1")
    with pytest.raises(SelectionError) as exc:
        session.select_practitioner("practitioner-2")
    assert "Colombo Main Hospital" in exc.value.reason
    assert isinstance(session.state, SelectPractitioner)


def test_reselecting_branch_resets_later_choices(make_session):
    session = _at_date_step(make_session())
    session.select_date(MONDAY)
    session.select_branch("branch-2")
    assert isinstance(session.state, SelectPractitioner)
    assert session.state.branch.id == "branch-2"
    assert [p.id for p in session.practitioners()] == ["practitioner-2"]


def test_out_of_order_operations_are_rejected(make_session):
    session = make_session()
    with pytest.raises(InvalidTransitionError):
        session.select_date(MONDAY)
    with pytest.raises(InvalidTransitionError):
        session.select_practitioner("practitioner-1")
    with pytest.raises(InvalidTransitionError):
        session.confirm(MONDAY, time(9, 0))


def test_misaligned_time_is_rejected(make_session, guard):
    session = _at_date_step(make_session())
    with pytest.raises(SelectionError):
        session.confirm(MONDAY, time(9, 15))
    with pytest.raises(SelectionError):
        session.confirm(MONDAY, time(12, 0))
    assert guard.state(SlotKey("practitioner-1", MONDAY, time(9, 15))) == FREE


def test_lost_race_stays_in_date_step_then_next_slot_succeeds(make_session, guard):
    session = _at_date_step(make_session())
    session.select_date(MONDAY)
    guard.try_reserve(SlotKey("practitioner-1", MONDAY, time(9, 0)))  # concurrent booker
    with pytest.raises(SlotConflictError) as exc:
        session.confirm(MONDAY, time(9, 0))
    assert "9:00 AM" in exc.value.reason
    assert isinstance(session.state, SelectDateTime)
    appt = session.confirm(MONDAY, time(9, 30))
    assert appt.time == time(9, 30)


def test_booked_slot_shows_reserved_for_next_patient(make_session):
    _at_date_step(make_session()).confirm(MONDAY, time(10, 0))
    other = _at_date_step(make_session("patient-2"))
    slots = other.select_date(MONDAY)
    reserved = [s.time for s in slots if s.is_reserved]
    assert reserved == [time(10, 0)]
    with pytest.raises(SlotConflictError):
        other.confirm(MONDAY, time(10, 0))


def test_two_sessions_racing_get_one_booking(make_session):
    sessions = [_at_date_step(make_session(f"patient-{i}")) for i in range(2)]
    barrier = threading.Barrier(2)
    outcomes: list[object] = [None, None]

    def attempt(i: int) -> None:
        barrier.wait()
        try:
            outcomes[i] = sessions[i].confirm(MONDAY, time(9, 0))
        except SlotConflictError as exc:
            outcomes[i] = exc

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    conflicts = [o for o in outcomes if isinstance(o, SlotConflictError)]
    assert len(conflicts) == 1
    loser = sessions[outcomes.index(conflicts[0])]
    assert loser.confirm(MONDAY, time(9, 30)).time == time(9, 30)


def test_store_write_is_retried(make_session, guard):
    store = FlakyStore(failures=2)
    sleeps: list[float] = []
    session = _at_date_step(make_session(store=store, sleep=sleeps.append))
    appt = session.confirm(MONDAY, time(11, 0))
    assert store.put_calls == 3
    assert len(sleeps) == 2 and sleeps[1] == sleeps[0] * 2
    assert store.get(appt.id) is not None
    assert guard.state(appt.key) == COMMITTED


def test_exhausted_retries_free_the_slot(make_session, guard):
    store = FlakyStore(failures=100)
    session = _at_date_step(make_session(store=store))
    with pytest.raises(StoreUnavailableError):
        session.confirm(MONDAY, time(11, 0))
    assert guard.state(SlotKey("practitioner-1", MONDAY, time(11, 0))) == FREE
    assert isinstance(session.state, SelectDateTime)


def test_failing_notifier_does_not_break_booking(make_session):
    notifier = MagicMock(side_effect=RuntimeError("sms gateway down"))
    session = _at_date_step(make_session(notifier=notifier))
    appt = session.confirm(MONDAY, time(9, 0))
    assert isinstance(session.state, Confirmed)
    assert appt.status == AppointmentStatus.confirmed


def test_abandon_is_terminal_and_idempotent(make_session):
    session = _at_date_step(make_session())
    session.abandon()
    session.abandon()
    assert isinstance(session.state, Abandoned)
    with pytest.raises(InvalidTransitionError):
        session.confirm(MONDAY, time(9, 0))


def test_confirmed_session_cannot_be_abandoned_or_reused(make_session):
    session = _at_date_step(make_session())
    session.confirm(MONDAY, time(9, 0))
    with pytest.raises(InvalidTransitionError):
        session.abandon()
    with pytest.raises(InvalidTransitionError):
        session.select_branch("branch-1")


def test_snapshot_reflects_state(make_session):
    session = _at_date_step(make_session())
    session.select_date(MONDAY)
    snap = session.snapshot()
    assert snap["state"] == "select_date_time"
    assert snap["branch"]["code"] == "CLB"
    assert snap["practitioner"]["id"] == "practitioner-1"
    assert snap["date"] == "2024-12-16"
    assert [s["time"] for s in snap["slots"]][:2] == ["09:00", "09:30"]


def test_registry_sweeps_idle_sessions(make_session, clock):
    registry = SessionRegistry(idle_seconds=60, clock=clock)
    idle = registry.add(_at_date_step(make_session()))
    idle.last_active = clock() - 120
    busy = registry.add(make_session("patient-2"))
    busy.last_active = clock()
    assert registry.sweep() == 1
    assert registry.get(idle.id) is None
    assert isinstance(idle.state, Abandoned)
    assert registry.get(busy.id) is busy


def test_non_transient_write_error_frees_the_slot(make_session, guard):
    store = InMemoryAppointmentStore()
    store.put = MagicMock(side_effect=ClientError({"Error": {"Code": "ValidationException"}}, "PutItem"))
    session = _at_date_step(make_session(store=store))
    with pytest.raises(ClientError):
        session.confirm(MONDAY, time(9, 0))
    assert guard.state(SlotKey("practitioner-1", MONDAY, time(9, 0))) == FREE
    assert store.put.call_count == 1
    assert isinstance(session.state, SelectDateTime)


def test_failed_commit_releases_hold_and_retry_succeeds(make_session, guard, fail_first, monkeypatch):
    monkeypatch.setattr(guard, "commit", fail_first(guard.commit))
    session = _at_date_step(make_session())
    key = SlotKey("practitioner-1", MONDAY, time(9, 0))
    with pytest.raises(StoreUnavailableError):
        session.confirm(MONDAY, time(9, 0))
    assert guard.state(key) == FREE
    assert isinstance(session.state, SelectDateTime)
    appt = session.confirm(MONDAY, time(9, 0))
    assert guard.state(key) == COMMITTED
    assert appt.key == key


def test_abandon_releases_hold_left_by_interrupted_confirm(make_session, guard, fail_first, monkeypatch):
    monkeypatch.setattr(guard, "commit", fail_first(guard.commit))
    monkeypatch.setattr(guard, "release", fail_first(guard.release))
    session = _at_date_step(make_session())
    key = SlotKey("practitioner-1", MONDAY, time(9, 0))
    with pytest.raises(StoreUnavailableError):
        session.confirm(MONDAY, time(9, 0))
    assert guard.state(key) == RESERVED
    session.abandon()
    assert isinstance(session.state, Abandoned)
    assert guard.state(key) == FREE


def test_retry_after_failed_release_reuses_the_slot(make_session, guard, fail_first, monkeypatch):
    monkeypatch.setattr(guard, "commit", fail_first(guard.commit))
    monkeypatch.setattr(guard, "release", fail_first(guard.release))
    session = _at_date_step(make_session())
    with pytest.raises(StoreUnavailableError):
        session.confirm(MONDAY, time(9, 0))
    assert session.confirm(MONDAY, time(9, 0)).time == time(9, 0)


def test_exhausted_token_space_is_store_unavailable(make_session, guard, store):
    taken = Appointment("x", "p", "practitioner-1", "branch-1", MONDAY, time(11, 30), "CLB-2024-1210-1000")
    store.find_by_token = lambda token: taken
    session = _at_date_step(make_session())
    with pytest.raises(StoreUnavailableError):
        session.confirm(MONDAY, time(9, 0))
    assert guard.state(SlotKey("practitioner-1", MONDAY, time(9, 0))) == FREE
    assert isinstance(session.state, SelectDateTime)


def test_concurrent_token_clash_is_redrawn(make_session, store, monkeypatch):
    issued = datetime(2024, 12, 10, 4, 0, tzinfo=timezone.utc)
    monkeypatch.setattr("clinic_booking.session.utcnow", lambda: issued)
    draws = iter([3821, 1234])
    monkeypatch.setattr("clinic_booking.tokens.secrets.randbelow", lambda n: next(draws))
    other = Appointment(
        "other", "patient-9", "practitioner-1", "branch-1", date(2024, 12, 18), time(9, 0), "CLB-2024-1210-4821",
    )
    store.put(other)
    # The other booking was written after this one checked for clashes.
    monkeypatch.setattr(store, "find_by_token", lambda token: None)

    session = _at_date_step(make_session())
    appt = session.confirm(MONDAY, time(9, 0))
    assert appt.token == "CLB-2024-1210-2234"
    assert store.get(appt.id).token == "CLB-2024-1210-2234"
    assert session.state.appointment.token == appt.token
    assert store.get("other").token == "CLB-2024-1210-4821"


def test_sweep_skips_session_confirmed_meanwhile(make_session, clock):
    registry = SessionRegistry(idle_seconds=60, clock=clock)
    session = registry.add(_at_date_step(make_session()))
    session.confirm(MONDAY, time(9, 0))
    session.last_active = clock() - 120
    assert registry.sweep() == 1
    assert isinstance(session.state, Confirmed)
