"""FastAPI app: drive booking sessions and manage appointments over HTTP."""

from __future__ import annotations

import logging
from datetime import date
from pathlib import Path
from typing import Callable

from dotenv import load_dotenv

# Load .env when running locally (repo root .env / .env.local)
_repo_root = Path(__file__).resolve().parent.parent.parent
load_dotenv(_repo_root / ".env")
load_dotenv(_repo_root / ".env.local")

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import config, notifications
from .appointments import AppointmentService, validate_slot
from .availability import booking_window, clinic_today, workable_dates
from .errors import (
    AppointmentNotFoundError,
    BookingError,
    InvalidTransitionError,
    ReservationNotHeldError,
    SelectionError,
    SessionNotFoundError,
    SlotConflictError,
    StoreUnavailableError,
)
from .models import Practitioner
from .reservations import ReservationGuard, build_guard
from .session import BookingSession, SessionRegistry, available_slots
from .slots import parse_time
from .store import AppointmentStore, ClinicDirectory, build_store

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type, int] = {
    SelectionError: 422,
    SlotConflictError: 409,
    InvalidTransitionError: 409,
    StoreUnavailableError: 503,
    SessionNotFoundError: 404,
    AppointmentNotFoundError: 404,
    ReservationNotHeldError: 500,
}


class NewSession(BaseModel):
    patient_id: str


class BranchChoice(BaseModel):
    branch_id: str


class PractitionerChoice(BaseModel):
    practitioner_id: str


class DateChoice(BaseModel):
    date: date


class SlotChoice(BaseModel):
    date: date
    time: str
    notes: str | None = None
    reason: str | None = None


class StatusChange(BaseModel):
    status: str


def _parse_time(text: str):
    try:
        return parse_time(text)
    except ValueError as exc:
        raise SelectionError(str(exc)) from exc


def create_app(
    directory: ClinicDirectory | None = None,
    store: AppointmentStore | None = None,
    guard: ReservationGuard | None = None,
    notifier: notifications.Notifier | None = notifications.notify_booked,
    today: Callable[[], date] = clinic_today,
) -> FastAPI:
    logging.basicConfig(level=config.log_level(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    directory = directory or ClinicDirectory.load()
    store = store or build_store()
    guard = guard or build_guard()
    registry = SessionRegistry()
    service = AppointmentService(store, guard, directory, today=today)

    app = FastAPI(title="Clinic Booking", version="0.1.0")
    app.state.directory = directory
    app.state.store = store
    app.state.guard = guard
    app.state.sessions = registry
    app.state.appointments = service

    @app.exception_handler(BookingError)
    async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
        status = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 400)
        if status >= 500:
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.reason)
        return JSONResponse(status_code=status, content={"detail": exc.reason, "error": type(exc).__name__})

    def _session(session_id: str) -> BookingSession:
        session = registry.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Booking session {session_id} not found or expired")
        return session

    def _practitioner(practitioner_id: str) -> Practitioner:
        practitioner = directory.practitioner(practitioner_id)
        if practitioner is None:
            raise SelectionError(f"Unknown practitioner: {practitioner_id}")
        return practitioner

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/branches")
    def list_branches() -> list[dict]:
        return [b.to_dict() for b in directory.branches()]

    @app.get("/api/practitioners/{practitioner_id}/dates")
    def practitioner_dates(practitioner_id: str) -> dict:
        practitioner = _practitioner(practitioner_id)
        first, horizon = booking_window(today(), config.booking_horizon_days())
        return {"dates": [d.isoformat() for d in workable_dates(practitioner.schedule, first, horizon)]}

    @app.get("/api/practitioners/{practitioner_id}/slots")
    def practitioner_slots(practitioner_id: str, date: date) -> dict:
        practitioner = _practitioner(practitioner_id)
        validate_slot(practitioner, date, None, today(), config.booking_horizon_days())
        slots = available_slots(guard, store, practitioner, date)
        return {"date": date.isoformat(), "slots": [s.to_dict() for s in slots]}

    @app.post("/api/sessions", status_code=201)
    def create_session(body: NewSession) -> dict:
        swept = registry.sweep()
        if swept:
            logger.info("Swept %d idle booking sessions", swept)
        session = registry.add(BookingSession(
            patient_id=body.patient_id,
            directory=directory,
            guard=guard,
            store=store,
            notifier=notifier,
            today=today,
        ))
        out = session.snapshot()
        out["branches"] = [b.to_dict() for b in session.branches()]
        return out

    @app.get("/api/sessions/{session_id}")
    def get_session(session_id: str) -> dict:
        return _session(session_id).snapshot()

    @app.post("/api/sessions/{session_id}/branch")
    def choose_branch(session_id: str, body: BranchChoice) -> dict:
        session = _session(session_id)
        practitioners = session.select_branch(body.branch_id)
        out = session.snapshot()
        out["practitioners"] = [p.to_dict() for p in practitioners]
        return out

    @app.post("/api/sessions/{session_id}/practitioner")
    def choose_practitioner(session_id: str, body: PractitionerChoice) -> dict:
        session = _session(session_id)
        dates = session.select_practitioner(body.practitioner_id)
        out = session.snapshot()
        out["dates"] = [d.isoformat() for d in dates]
        return out

    @app.post("/api/sessions/{session_id}/date")
    def choose_date(session_id: str, body: DateChoice) -> dict:
        session = _session(session_id)
        session.select_date(body.date)
        return session.snapshot()

    @app.post("/api/sessions/{session_id}/confirm")
    def confirm(session_id: str, body: SlotChoice) -> dict:
        session = _session(session_id)
        appointment = session.confirm(body.date, _parse_time(body.time), notes=body.notes, reason=body.reason)
        registry.remove(session_id)
        return {"state": session.state.name, "appointment": appointment.to_dict()}

    @app.delete("/api/sessions/{session_id}")
    def abandon(session_id: str) -> dict:
        session = _session(session_id)
        session.abandon()
        registry.remove(session_id)
        return {"session_id": session_id, "state": session.state.name}

    @app.get("/api/appointments")
    def list_appointments(
        patient_id: str | None = None,
        practitioner_id: str | None = None,
        branch_id: str | None = None,
        date: date | None = None,
    ) -> list[dict]:
        if patient_id:
            appts = service.list_for_patient(patient_id, date)
        elif practitioner_id:
            appts = service.list_for_practitioner(practitioner_id, date)
        elif branch_id:
            appts = service.list_for_branch(branch_id, date)
        else:
            raise SelectionError("Provide patient_id, practitioner_id or branch_id")
        return [a.to_dict() for a in appts]

    @app.get("/api/appointments/{appointment_id}")
    def get_appointment(appointment_id: str) -> dict:
        return service.get(appointment_id).to_dict()

    @app.post("/api/appointments/{appointment_id}/cancel")
    def cancel_appointment(appointment_id: str) -> dict:
        return service.cancel(appointment_id).to_dict()

    @app.post("/api/appointments/{appointment_id}/reschedule")
    def reschedule_appointment(appointment_id: str, body: SlotChoice) -> dict:
        return service.reschedule(appointment_id, body.date, _parse_time(body.time)).to_dict()

    @app.post("/api/appointments/{appointment_id}/status")
    def change_status(appointment_id: str, body: StatusChange) -> dict:
        try:
            return service.update_status(appointment_id, body.status).to_dict()
        except ValueError as exc:
            raise SelectionError(f"Unknown status: {body.status}") from exc

    return app


app = create_app()
