"""
Booking session: branch -> practitioner -> date/time -> confirmed.

Each state is its own dataclass carrying exactly the selections made so far, so
a session can never hold a practitioner without a branch or a slot without a
practitioner. Any non-terminal state can be abandoned.
"""

from __future__ import annotations

import logging
import threading
import time as _time
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, time
from typing import Any, Callable, ClassVar, Union

from . import config, notifications
from .appointments import conflict_message, free_or_log, persist_with_retry, validate_slot
from .availability import booking_window, clinic_today, workable_dates
from .errors import (
    InvalidTransitionError,
    ReservationNotHeldError,
    SelectionError,
    SlotConflictError,
    StoreUnavailableError,
)
from .models import Appointment, AppointmentStatus, Branch, Practitioner, Slot, SlotKey, utcnow
from .reservations import Reservation, ReservationGuard, release_quietly
from .slots import generate_slots, overlay_reservations
from .store import AppointmentStore, ClinicDirectory
from .tokens import issue_unique_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SelectBranch:
    name: ClassVar[str] = "select_branch"


@dataclass(frozen=True)
class SelectPractitioner:
    branch: Branch
    name: ClassVar[str] = "select_practitioner"


@dataclass(frozen=True)
class SelectDateTime:
    branch: Branch
    practitioner: Practitioner
    day: date | None = None
    slots: tuple[Slot, ...] = ()
    name: ClassVar[str] = "select_date_time"


@dataclass(frozen=True)
class Confirmed:
    appointment: Appointment
    name: ClassVar[str] = "confirmed"


@dataclass(frozen=True)
class Abandoned:
    name: ClassVar[str] = "abandoned"


SessionState = Union[SelectBranch, SelectPractitioner, SelectDateTime, Confirmed, Abandoned]
TERMINAL = (Confirmed, Abandoned)
TOKEN_SETTLE_ROUNDS = 5


def available_slots(
    guard: ReservationGuard,
    store: AppointmentStore,
    practitioner: Practitioner,
    day: date,
) -> list[Slot]:
    """Generated slots for the day with guard holds and stored appointments overlaid."""
    slots = generate_slots(practitioner.schedule, day)
    if not slots:
        return []
    taken = guard.reserved_times(practitioner.id, day) | store.taken_times(practitioner.id, day)
    return overlay_reservations(slots, taken)


@dataclass
class BookingSession:
    """One patient's in-progress booking. Transitions on a session run one at a time."""

    patient_id: str
    directory: ClinicDirectory
    guard: ReservationGuard
    store: AppointmentStore
    notifier: notifications.Notifier | None = notifications.notify_booked
    today: Callable[[], date] = clinic_today
    sleep: Callable[[float], None] = _time.sleep
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: SessionState = field(default_factory=SelectBranch)
    last_active: float = field(default_factory=_time.monotonic)
    _hold: Reservation | None = field(default=None, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    # ------------------------------------------------------------------ helpers

    def _require(self, *allowed: type, action: str) -> None:
        if not isinstance(self.state, allowed):
            raise InvalidTransitionError(f"Cannot {action} while session is in state '{self.state.name}'")

    def _touch(self) -> None:
        self.last_active = _time.monotonic()

    @property
    def is_terminal(self) -> bool:
        return isinstance(self.state, TERMINAL)

    def _window(self) -> tuple[date, int]:
        return booking_window(self.today(), config.booking_horizon_days())

    # ------------------------------------------------------------------ choices

    def branches(self) -> list[Branch]:
        return self.directory.branches()

    def practitioners(self) -> list[Practitioner]:
        self._require(SelectPractitioner, SelectDateTime, action="list practitioners")
        return self.directory.practitioners_at(self.state.branch.id)

    def workable_dates(self) -> list[date]:
        self._require(SelectDateTime, action="list dates")
        first, horizon = self._window()
        return list(workable_dates(self.state.practitioner.schedule, first, horizon))

    def available_slots(self, practitioner: Practitioner, day: date) -> list[Slot]:
        return available_slots(self.guard, self.store, practitioner, day)

    # ------------------------------------------------------------------ transitions

    def select_branch(self, branch_id: str) -> list[Practitioner]:
        with self._lock:
            self._touch()
            self._require(SelectBranch, SelectPractitioner, SelectDateTime, action="select a branch")
            branch = self.directory.branch(branch_id)
            if branch is None:
                raise SelectionError(f"Unknown branch: {branch_id}")
            self.state = SelectPractitioner(branch=branch)
            return self.directory.practitioners_at(branch.id)

    def select_practitioner(self, practitioner_id: str) -> list[date]:
        with self._lock:
            self._touch()
            self._require(SelectPractitioner, SelectDateTime, action="select a practitioner")
            branch = self.state.branch
            practitioner = self.directory.practitioner(practitioner_id)
            if practitioner is None:
                raise SelectionError(f"Unknown practitioner: {practitioner_id}")
            if practitioner.branch_id != branch.id:
                raise SelectionError(f"{practitioner.name} does not consult at {branch.name}")
            self.state = SelectDateTime(branch=branch, practitioner=practitioner)
            first, horizon = self._window()
            return list(workable_dates(practitioner.schedule, first, horizon))

    def select_date(self, day: date) -> list[Slot]:
        """Validate `day` and return its slots. On failure the day selection is cleared and the reason raised."""
        with self._lock:
            self._touch()
            self._require(SelectDateTime, action="select a date")
            current: SelectDateTime = self.state
            today = self.today()
            try:
                validate_slot(current.practitioner, day, None, today, config.booking_horizon_days())
            except SelectionError:
                self.state = SelectDateTime(branch=current.branch, practitioner=current.practitioner)
                raise
            slots = self.available_slots(current.practitioner, day)
            self.state = SelectDateTime(
                branch=current.branch,
                practitioner=current.practitioner,
                day=day,
                slots=tuple(slots),
            )
            return slots

    def _issue_token(self, branch: Branch, issued_on: date) -> str:
        try:
            return issue_unique_token(
                branch.code,
                issued_on,
                exists=lambda tok: self.store.find_by_token(tok) is not None,
            )
        except RuntimeError as exc:
            raise StoreUnavailableError("Could not issue a unique appointment token; please try again") from exc

    def _settle_token(self, appointment: Appointment, branch: Branch, issued_on: date) -> Appointment:
        """
        Re-draw the token while another stored appointment carries it.

        The uniqueness check before the write cannot see a concurrent booking that
        has not been written yet, so the later writer sees the clash here and moves.
        """
        for _ in range(TOKEN_SETTLE_ROUNDS):
            clashes = [a for a in self.store.with_token(appointment.token) if a.id != appointment.id]
            if not clashes:
                return appointment
            logger.warning("Token %s of appointment %s clashes with %s; re-drawing",
                           appointment.token, appointment.id, clashes[0].id)
            appointment = replace(appointment, token=self._issue_token(branch, issued_on), updated_at=utcnow())
            persist_with_retry(self.store, appointment, sleep=self.sleep)
        logger.error("Appointment %s kept clashing token %s", appointment.id, appointment.token)
        return appointment

    def _release_hold(self) -> None:
        # A failed release keeps _hold so the next confirm or abandon tries again.
        if self._hold is not None and release_quietly(self.guard, self._hold):
            self._hold = None

    def confirm(self, day: date, t: time, notes: str | None = None, reason: str | None = None) -> Appointment:
        """Reserve, commit and persist the chosen slot; returns the confirmed Appointment."""
        with self._lock:
            self._touch()
            self._require(SelectDateTime, action="confirm a booking")
            current: SelectDateTime = self.state
            practitioner = current.practitioner
            validate_slot(practitioner, day, t, self.today(), config.booking_horizon_days())
            self._release_hold()

            key = SlotKey(practitioner.id, day, t)
            if self.store.active_at(key) is not None:
                raise SlotConflictError(conflict_message(practitioner, key))
            now = utcnow()
            issued_on = now.astimezone(config.clinic_timezone()).date()
            token = self._issue_token(current.branch, issued_on)
            hold = self.guard.try_reserve(key)
            if hold is None:
                logger.warning("Session %s lost race on %s", self.id, key)
                raise SlotConflictError(conflict_message(practitioner, key))
            self._hold = hold

            appointment_id = uuid.uuid4().hex
            try:
                self.guard.commit(hold, appointment_id)
            except ReservationNotHeldError:
                logger.error("Session %s could not commit its own hold on %s", self.id, key, exc_info=True)
                self._hold = None
                raise
            except Exception:
                logger.error("Session %s: commit of %s failed; releasing the hold", self.id, key, exc_info=True)
                self._release_hold()
                raise
            self._hold = None

            appointment = Appointment(
                id=appointment_id,
                patient_id=self.patient_id,
                practitioner_id=practitioner.id,
                branch_id=current.branch.id,
                date=day,
                time=t,
                token=token,
                status=AppointmentStatus.confirmed,
                notes=notes,
                reason=reason,
                created_at=now,
                updated_at=now,
            )
            try:
                persist_with_retry(self.store, appointment, sleep=self.sleep)
            except Exception:
                # No record was written, so the committed claim must not outlive this attempt.
                logger.error("Session %s: appointment write for %s failed; freeing the slot", self.id, key,
                             exc_info=True)
                free_or_log(self.guard, key, appointment_id, sleep=self.sleep)
                raise

            # The booking exists from here on.
            self.state = Confirmed(appointment=appointment)
            try:
                appointment = self._settle_token(appointment, current.branch, issued_on)
            except StoreUnavailableError:
                logger.error("Session %s: token check for %s failed; keeping %s",
                             self.id, appointment.id, appointment.token, exc_info=True)
            self.state = Confirmed(appointment=appointment)
            logger.info("Booked %s for patient %s on %s (session %s)", appointment.token, self.patient_id, key, self.id)
        notifications.dispatch(self.notifier, appointment)
        return appointment

    def abandon(self) -> None:
        with self._lock:
            if isinstance(self.state, Abandoned):
                return
            self._require(SelectBranch, SelectPractitioner, SelectDateTime, action="abandon")
            self._release_hold()
            self.state = Abandoned()
            logger.debug("Session %s abandoned", self.id)

    # ------------------------------------------------------------------ views

    def snapshot(self) -> dict[str, Any]:
        """JSON-friendly view of the current state and its payload."""
        state = self.state
        out: dict[str, Any] = {"session_id": self.id, "patient_id": self.patient_id, "state": state.name}
        if isinstance(state, (SelectPractitioner, SelectDateTime)):
            out["branch"] = state.branch.to_dict()
        if isinstance(state, SelectDateTime):
            out["practitioner"] = state.practitioner.to_dict()
            out["date"] = state.day.isoformat() if state.day else None
            out["slots"] = [s.to_dict() for s in state.slots]
        if isinstance(state, Confirmed):
            out["appointment"] = state.appointment.to_dict()
        return out


class SessionRegistry:
    """In-process map of live sessions; idle ones are abandoned after `idle_seconds`."""

    def __init__(self, idle_seconds: float | None = None, clock: Callable[[], float] = _time.monotonic):
        self.idle_seconds = config.hold_ttl_seconds() if idle_seconds is None else idle_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: dict[str, BookingSession] = {}

    def add(self, session: BookingSession) -> BookingSession:
        with self._lock:
            self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> BookingSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def sweep(self) -> int:
        """Abandon and drop sessions idle for longer than idle_seconds. Returns how many."""
        cutoff = self._clock() - self.idle_seconds
        with self._lock:
            stale = [s for s in self._sessions.values() if s.last_active < cutoff]
            for s in stale:
                del self._sessions[s.id]
        for s in stale:
            try:
                s.abandon()
            except InvalidTransitionError:
                # Confirmed after it was picked as stale.
                logger.debug("Session %s finished before it could be swept", s.id)
        return len(stale)
