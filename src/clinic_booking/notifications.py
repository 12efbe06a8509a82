"""Notify the clinic desk via SMS when an appointment is booked, moved or cancelled."""

from __future__ import annotations

import logging
from typing import Callable

from . import config, twilio_handler
from .models import Appointment
from .slots import format_slot_time

logger = logging.getLogger(__name__)

Notifier = Callable[[Appointment], object]


def format_appointment_for_sms(appointment: Appointment) -> str:
    """Human-readable slot for SMS (e.g. 'Mon 12/16, 9:00 AM')."""
    return f"{appointment.date.strftime('%a %m/%d')}, {format_slot_time(appointment.time)}"


def _send(kind: str, appointment: Appointment) -> bool:
    phone = config.notify_phone()
    if not phone:
        logger.info("CLINIC_NOTIFY_PHONE not set; skipping %s SMS for %s", kind, appointment.token)
        return False
    body = (
        f"[Clinic] {kind.upper()}: {appointment.token} | patient {appointment.patient_id} | "
        f"practitioner {appointment.practitioner_id} | {format_appointment_for_sms(appointment)}"
    )
    sid = twilio_handler.send_sms(phone, body)
    if sid:
        logger.info("%s alert for %s sent (SID %s)", kind, appointment.token, sid)
    return sid is not None


def notify_booked(appointment: Appointment) -> bool:
    return _send("booked", appointment)


def notify_cancelled(appointment: Appointment) -> bool:
    return _send("cancelled", appointment)


def notify_rescheduled(appointment: Appointment) -> bool:
    return _send("rescheduled", appointment)


def dispatch(notifier: Notifier | None, appointment: Appointment) -> None:
    """Fire-and-forget: a failing notifier is logged, never raised to the booking flow."""
    if notifier is None:
        return
    try:
        notifier(appointment)
    except Exception:
        logger.exception("Notification for appointment %s failed", appointment.id)
