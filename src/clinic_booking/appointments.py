"""Appointment lifecycle after booking: lookup, cancel, reschedule and status changes."""

from __future__ import annotations

import logging
import time as _time
from dataclasses import replace
from datetime import date, time, timedelta
from typing import Callable, TypeVar

from . import config, notifications
from .availability import booking_window, clinic_today, describe_unavailability, is_workable
from .errors import (
    AppointmentNotFoundError,
    SelectionError,
    SlotConflictError,
    StoreUnavailableError,
)
from .models import Appointment, AppointmentStatus, Practitioner, SlotKey, utcnow
from .reservations import ReservationGuard, release_quietly
from .slots import format_slot_time, slot_times
from .store import AppointmentStore, ClinicDirectory

logger = logging.getLogger(__name__)

T = TypeVar("T")


def validate_slot(
    practitioner: Practitioner,
    day: date,
    t: time | None,
    today: date,
    horizon_days: int,
) -> None:
    """
    Raise SelectionError unless `day` (and `t`, when given) is bookable for the practitioner.

    Bookable means: within the booking window that opens the day after `today`,
    workable per the schedule, and `t` aligned to a generated slot.
    """
    first, horizon = booking_window(today, horizon_days)
    if day < first:
        raise SelectionError(f"{day.isoformat()} is in the past or today; the earliest bookable date is {first.isoformat()}")
    if day >= first + timedelta(days=horizon):
        raise SelectionError(f"{day.isoformat()} is beyond the {horizon}-day booking window")
    ok, reason = is_workable(practitioner.schedule, day)
    if not ok:
        raise SelectionError(describe_unavailability(practitioner, day, reason))
    if t is not None and t not in slot_times(practitioner.schedule, day):
        raise SelectionError(
            f"{format_slot_time(t)} is not a bookable slot for {practitioner.name} on {day.isoformat()}"
        )


def conflict_message(practitioner: Practitioner, key: SlotKey) -> str:
    return (
        f"{format_slot_time(key.time)} on {key.date.isoformat()} with {practitioner.name} "
        "was just taken. Please pick another slot."
    )


def with_retry(
    action: Callable[[], T],
    what: str,
    attempts: int | None = None,
    base_delay: float | None = None,
    sleep: Callable[[float], None] = _time.sleep,
) -> T:
    """Run `action`, retrying StoreUnavailableError with exponential backoff. Other errors propagate at once."""
    attempts = config.store_write_attempts() if attempts is None else max(1, attempts)
    base_delay = config.store_retry_base_delay() if base_delay is None else base_delay
    attempt = 0
    while True:
        try:
            return action()
        except StoreUnavailableError:
            attempt += 1
            if attempt >= attempts:
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning("%s failed (attempt %d/%d); retrying in %.2fs", what, attempt, attempts, delay)
            sleep(delay)


def persist_with_retry(
    store: AppointmentStore,
    appointment: Appointment,
    attempts: int | None = None,
    base_delay: float | None = None,
    sleep: Callable[[float], None] = _time.sleep,
) -> None:
    """Write the appointment, retrying transient store failures."""
    with_retry(
        lambda: store.put(appointment),
        f"Appointment {appointment.id} write",
        attempts=attempts,
        base_delay=base_delay,
        sleep=sleep,
    )


def free_with_retry(
    guard: ReservationGuard,
    key: SlotKey,
    appointment_id: str,
    sleep: Callable[[float], None] = _time.sleep,
) -> bool:
    """Return a committed key to the pool, retrying transient guard failures."""
    return with_retry(lambda: guard.free(key, appointment_id), f"Freeing {key}", sleep=sleep)


def free_or_log(
    guard: ReservationGuard,
    key: SlotKey,
    appointment_id: str,
    sleep: Callable[[float], None] = _time.sleep,
) -> bool:
    """free_with_retry for cleanup paths: an exhausted retry is logged rather than raised."""
    try:
        return free_with_retry(guard, key, appointment_id, sleep=sleep)
    except StoreUnavailableError:
        logger.error("Could not free %s for appointment %s; it stays blocked until freed", key, appointment_id,
                     exc_info=True)
        return False


class AppointmentService:
    """Reschedule/cancel go through the same guard and validation as new bookings."""

    def __init__(
        self,
        store: AppointmentStore,
        guard: ReservationGuard,
        directory: ClinicDirectory,
        notifier_cancelled: notifications.Notifier | None = notifications.notify_cancelled,
        notifier_rescheduled: notifications.Notifier | None = notifications.notify_rescheduled,
        today: Callable[[], date] = clinic_today,
        sleep: Callable[[float], None] = _time.sleep,
    ):
        self.store = store
        self.guard = guard
        self.directory = directory
        self.notifier_cancelled = notifier_cancelled
        self.notifier_rescheduled = notifier_rescheduled
        self._today = today
        self._sleep = sleep

    def get(self, appointment_id: str) -> Appointment:
        appt = self.store.get(appointment_id)
        if appt is None:
            raise AppointmentNotFoundError(f"Appointment {appointment_id} not found")
        return appt

    def list_for_patient(self, patient_id: str, day: date | None = None) -> list[Appointment]:
        return self.store.query(patient_id=patient_id, date=day)

    def list_for_practitioner(self, practitioner_id: str, day: date | None = None) -> list[Appointment]:
        return self.store.query(practitioner_id=practitioner_id, date=day)

    def list_for_branch(self, branch_id: str, day: date | None = None) -> list[Appointment]:
        return self.store.query(branch_id=branch_id, date=day)

    def _save(self, appt: Appointment) -> None:
        persist_with_retry(self.store, appt, sleep=self._sleep)

    def _free(self, key: SlotKey, appointment_id: str) -> bool:
        return free_with_retry(self.guard, key, appointment_id, sleep=self._sleep)

    def cancel(self, appointment_id: str) -> Appointment:
        """
        Mark cancelled and return the slot to the pool.

        Cancelling again is a no-op apart from freeing the key, so a retry after a
        failed free finishes the job.
        """
        appt = self.get(appointment_id)
        if appt.status == AppointmentStatus.cancelled:
            if self._free(appt.key, appt.id):
                logger.info("Freed %s left behind by an interrupted cancel of %s", appt.key, appt.id)
                notifications.dispatch(self.notifier_cancelled, appt)
            return appt
        updated = replace(appt, status=AppointmentStatus.cancelled, updated_at=utcnow())
        self._save(updated)
        self._free(appt.key, appt.id)
        logger.info("Cancelled appointment %s (%s)", appt.id, appt.token)
        notifications.dispatch(self.notifier_cancelled, updated)
        return updated

    def reschedule(self, appointment_id: str, day: date, t: time) -> Appointment:
        """
        Move an appointment to a new (date, time).

        The new key is reserved and committed before the record is rewritten; the
        old key is freed only after the write succeeds. Any failure before that
        leaves the original appointment as it was and the new key free.
        """
        appt = self.get(appointment_id)
        if not appt.is_active:
            raise SelectionError(f"A {appt.status.value} appointment cannot be rescheduled")
        practitioner = self.directory.practitioner(appt.practitioner_id)
        if practitioner is None:
            raise SelectionError(f"Practitioner {appt.practitioner_id} is no longer listed")
        if (day, t) == (appt.date, appt.time):
            return appt
        validate_slot(practitioner, day, t, self._today(), config.booking_horizon_days())

        key = SlotKey(appt.practitioner_id, day, t)
        if self.store.active_at(key) is not None:
            raise SlotConflictError(conflict_message(practitioner, key))
        hold = self.guard.try_reserve(key)
        if hold is None:
            logger.warning("Reschedule of %s lost race on %s", appt.id, key)
            raise SlotConflictError(conflict_message(practitioner, key))

        try:
            self.guard.commit(hold, appt.id)
        except Exception:
            release_quietly(self.guard, hold)
            logger.error("Reschedule of %s could not commit %s", appt.id, key, exc_info=True)
            raise
        updated = replace(appt, date=day, time=t, status=AppointmentStatus.confirmed, updated_at=utcnow())
        try:
            self._save(updated)
        except Exception:
            free_or_log(self.guard, key, appt.id, sleep=self._sleep)
            logger.error("Reschedule of %s abandoned: appointment write failed", appt.id, exc_info=True)
            raise
        free_or_log(self.guard, appt.key, appt.id, sleep=self._sleep)
        logger.info("Rescheduled appointment %s from %s to %s", appt.id, appt.key, key)
        notifications.dispatch(self.notifier_rescheduled, updated)
        return updated

    def update_status(self, appointment_id: str, status: AppointmentStatus | str) -> Appointment:
        status = AppointmentStatus(status)
        if status == AppointmentStatus.cancelled:
            return self.cancel(appointment_id)
        appt = self.get(appointment_id)
        if appt.status == AppointmentStatus.cancelled:
            raise SelectionError("A cancelled appointment cannot change status; book a new one instead")
        if appt.status == status:
            return appt
        updated = replace(appt, status=status, updated_at=utcnow())
        self._save(updated)
        logger.info("Appointment %s status %s -> %s", appt.id, appt.status.value, status.value)
        return updated
