"""Booking error taxonomy. Every error carries a user-facing reason string."""

from __future__ import annotations


class BookingError(Exception):
    """Base class for scheduling-core errors."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class SelectionError(BookingError):
    """Invalid or stale selection (unknown branch, unworkable date, bad slot). Recoverable."""


class SlotConflictError(BookingError):
    """The slot was claimed by another booker between listing and confirming."""


class StoreUnavailableError(BookingError):
    """The record store kept failing after bounded retries."""


class ReservationNotHeldError(BookingError):
    """Commit attempted on a reservation the caller does not hold (invariant violation)."""


class InvalidTransitionError(BookingError):
    """Operation not allowed in the session's current state."""


class SessionNotFoundError(BookingError):
    pass


class AppointmentNotFoundError(BookingError):
    pass
