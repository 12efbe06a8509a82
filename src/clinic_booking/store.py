"""Record store: appointments (in-memory or DynamoDB) and the clinic directory of branches and practitioners."""

from __future__ import annotations

import json
import logging
import threading
from datetime import date
from pathlib import Path
from typing import Any, Iterable

from botocore.exceptions import BotoCoreError, ClientError

from . import config, dynamo
from .models import (
    ACTIVE_STATUSES,
    Appointment,
    AppointmentStatus,
    Branch,
    Practitioner,
    PractitionerSchedule,
    SlotKey,
)

logger = logging.getLogger(__name__)

PK = "id"
FILTER_FIELDS = ("patient_id", "practitioner_id", "branch_id", "date", "status")


def _sort_key(appt: Appointment) -> tuple:
    return (appt.date, appt.time, appt.created_at)


def _matches(appt: Appointment, filters: dict[str, Any]) -> bool:
    for name, wanted in filters.items():
        if wanted is None:
            continue
        actual = getattr(appt, name)
        if isinstance(wanted, (list, tuple, set, frozenset)):
            if actual not in wanted:
                return False
        elif actual != wanted:
            return False
    return True


class AppointmentStore:
    """get / put / query interface the scheduling core depends on."""

    def get(self, appointment_id: str) -> Appointment | None:
        raise NotImplementedError

    def put(self, appointment: Appointment) -> None:
        raise NotImplementedError

    def query(self, **filters: Any) -> list[Appointment]:
        """
        Appointments matching every given filter, ordered by (date, time).

        Filters: patient_id, practitioner_id, branch_id, date, status. A filter value may
        be a collection to match any of several values (e.g. status=ACTIVE_STATUSES).
        """
        raise NotImplementedError

    def with_token(self, token: str) -> list[Appointment]:
        """Every appointment carrying `token`; more than one means concurrent bookings drew the same token."""
        raise NotImplementedError

    def find_by_token(self, token: str) -> Appointment | None:
        found = self.with_token(token)
        return found[0] if found else None

    def active_at(self, key: SlotKey) -> Appointment | None:
        """The confirmed/pending appointment occupying `key`, if any."""
        for appt in self.query(practitioner_id=key.practitioner_id, date=key.date, status=ACTIVE_STATUSES):
            if appt.time == key.time:
                return appt
        return None

    def taken_times(self, practitioner_id: str, day: date) -> set:
        return {a.time for a in self.query(practitioner_id=practitioner_id, date=day, status=ACTIVE_STATUSES)}


class InMemoryAppointmentStore(AppointmentStore):
    def __init__(self, appointments: Iterable[Appointment] = ()):
        self._lock = threading.Lock()
        self._by_id: dict[str, dict[str, Any]] = {}
        for appt in appointments:
            self.put(appt)

    def get(self, appointment_id: str) -> Appointment | None:
        with self._lock:
            raw = self._by_id.get(appointment_id)
        return Appointment.from_dict(raw) if raw else None

    def put(self, appointment: Appointment) -> None:
        # Store a detached copy so callers mutating their object cannot corrupt the record.
        with self._lock:
            self._by_id[appointment.id] = appointment.to_dict()

    def query(self, **filters: Any) -> list[Appointment]:
        with self._lock:
            rows = list(self._by_id.values())
        out = [a for a in (Appointment.from_dict(r) for r in rows) if _matches(a, filters)]
        return sorted(out, key=_sort_key)

    def with_token(self, token: str) -> list[Appointment]:
        with self._lock:
            rows = [r for r in self._by_id.values() if r["token"] == token]
        return sorted((Appointment.from_dict(r) for r in rows), key=lambda a: a.created_at)


class DynamoAppointmentStore(AppointmentStore):
    """
    DynamoDB table keyed by appointment id, with GSIs:
    practitioner_date (practitioner_id, date), branch_date (branch_id, date),
    patient (patient_id, date) and token (token).
    """

    # filter name -> (index name, hash attribute)
    INDEXES = (
        ("practitioner_id", "practitioner_date"),
        ("branch_id", "branch_date"),
        ("patient_id", "patient"),
    )

    def __init__(self, client=None, table_name: str | None = None):
        self._client = client or dynamo.make_client()
        self.table_name = table_name or config.appointments_table()

    def get(self, appointment_id: str) -> Appointment | None:
        try:
            resp = self._client.get_item(
                TableName=self.table_name,
                Key={PK: {"S": appointment_id}},
                ConsistentRead=True,
            )
        except (ClientError, BotoCoreError) as exc:
            raise dynamo.translate(exc, "appointment lookup") from exc
        item = resp.get("Item")
        return Appointment.from_dict(dynamo.from_item(item)) if item else None

    def put(self, appointment: Appointment) -> None:
        try:
            self._client.put_item(TableName=self.table_name, Item=dynamo.to_item(appointment.to_dict()))
        except (ClientError, BotoCoreError) as exc:
            raise dynamo.translate(exc, "appointment write") from exc

    def _paginate(self, method, **kwargs) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        while True:
            resp = method(**kwargs)
            items.extend(dynamo.from_item(i) for i in resp.get("Items") or [])
            last = resp.get("LastEvaluatedKey")
            if not last:
                return items
            kwargs["ExclusiveStartKey"] = last

    def query(self, **filters: Any) -> list[Appointment]:
        filters = {k: v for k, v in filters.items() if v is not None}
        unknown = set(filters) - set(FILTER_FIELDS)
        if unknown:
            raise ValueError(f"Unsupported filters: {sorted(unknown)}")
        try:
            rows = self._query_rows(filters)
        except (ClientError, BotoCoreError) as exc:
            raise dynamo.translate(exc, "appointment query") from exc
        out = [a for a in (Appointment.from_dict(r) for r in rows) if _matches(a, filters)]
        return sorted(out, key=_sort_key)

    def _query_rows(self, filters: dict[str, Any]) -> list[dict[str, Any]]:
        for field_name, index in self.INDEXES:
            value = filters.get(field_name)
            if value is None or isinstance(value, (list, tuple, set, frozenset)):
                continue
            expr = "#h = :h"
            names = {"#h": field_name}
            values = {":h": {"S": str(value)}}
            day = filters.get("date")
            if isinstance(day, date):
                expr += " AND #d = :d"
                names["#d"] = "date"
                values[":d"] = {"S": day.isoformat()}
            return self._paginate(
                self._client.query,
                TableName=self.table_name,
                IndexName=index,
                KeyConditionExpression=expr,
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
            )
        # No indexed filter: fall back to a full scan (staff "all appointments" view).
        return self._paginate(self._client.scan, TableName=self.table_name)

    def with_token(self, token: str) -> list[Appointment]:
        try:
            rows = self._paginate(
                self._client.query,
                TableName=self.table_name,
                IndexName="token",
                KeyConditionExpression="#t = :t",
                ExpressionAttributeNames={"#t": "token"},
                ExpressionAttributeValues={":t": {"S": token}},
            )
        except (ClientError, BotoCoreError) as exc:
            raise dynamo.translate(exc, "token lookup") from exc
        return sorted((Appointment.from_dict(r) for r in rows), key=lambda a: a.created_at)


# Sample directory used when CLINIC_DIRECTORY_PATH is not set.
SAMPLE_DIRECTORY: dict[str, Any] = {
    "branches": [
        {
            "id": "branch-1",
            "name": "Colombo Main Hospital",
            "code": "CLB",
            "location": "123 Galle Road, Colombo 03",
            "phone": "+94 11 234 5678",
            "operating_hours": "Mon-Sun: 6:00 AM - 10:00 PM",
            "facilities": ["Emergency Care", "Wellness Center", "Pharmacy", "Lab Services"],
        },
        {
            "id": "branch-2",
            "name": "Kandy Wellness Center",
            "code": "KDY",
            "location": "45 Dalada Veediya, Kandy",
            "phone": "+94 81 234 5678",
            "operating_hours": "Mon-Sat: 7:00 AM - 8:00 PM, Sun: 8:00 AM - 6:00 PM",
            "facilities": ["Wellness Programs", "Nutrition Counseling", "Fitness Center"],
        },
        {
            "id": "branch-3",
            "name": "Galle Coastal Clinic",
            "code": "GLE",
            "location": "78 Hospital Street, Galle Fort",
            "phone": "+94 91 234 5678",
            "operating_hours": "Mon-Fri: 8:00 AM - 6:00 PM, Sat: 8:00 AM - 1:00 PM",
            "facilities": ["General Medicine", "Pediatrics", "Women's Health"],
        },
    ],
    "practitioners": [
        {
            "id": "doc-1",
            "name": "Dr. Sarah Johnson",
            "specialization": "Wellness & Nutrition",
            "branch_id": "branch-1",
            "working_days": ["Monday", "Wednesday", "Friday"],
            "working_hours": {"start": "08:00", "end": "17:00"},
            "exception_dates": ["2024-12-20", "2024-12-25", "2024-12-31"],
        },
        {
            "id": "doc-2",
            "name": "Dr. Michael Chen",
            "specialization": "Fitness & Rehabilitation",
            "branch_id": "branch-1",
            "working_days": ["Tuesday", "Thursday", "Saturday"],
            "working_hours": {"start": "09:00", "end": "18:00"},
            "exception_dates": ["2024-12-24", "2024-12-26", "2025-01-01"],
        },
        {
            "id": "doc-3",
            "name": "Dr. Emily Rodriguez",
            "specialization": "General Medicine",
            "branch_id": "branch-2",
            "working_days": ["Monday", "Tuesday", "Friday"],
            "working_hours": {"start": "08:00", "end": "16:00"},
            "exception_dates": ["2024-12-23", "2024-12-30"],
        },
        {
            "id": "doc-4",
            "name": "Dr. Nimal Perera",
            "specialization": "Pediatrics",
            "branch_id": "branch-3",
            "working_days": ["Monday", "Wednesday", "Thursday", "Saturday"],
            "working_hours": {"start": "08:30", "end": "13:00"},
            "exception_dates": [],
        },
    ],
}


class ClinicDirectory:
    """Read-only lookup of branches and practitioners (with their schedules)."""

    def __init__(self, branches: Iterable[Branch], practitioners: Iterable[Practitioner]):
        self._branches = {b.id: b for b in branches}
        self._practitioners = {p.id: p for p in practitioners}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClinicDirectory":
        branches = [
            Branch(
                id=b["id"],
                name=b["name"],
                code=b["code"],
                location=b.get("location", ""),
                phone=b.get("phone", ""),
                operating_hours=b.get("operating_hours", ""),
                facilities=tuple(b.get("facilities") or ()),
            )
            for b in data.get("branches") or []
        ]
        practitioners = [
            Practitioner(
                id=p["id"],
                name=p["name"],
                specialization=p.get("specialization", ""),
                branch_id=p["branch_id"],
                schedule=PractitionerSchedule.from_dict(p["id"], p),
            )
            for p in data.get("practitioners") or []
        ]
        return cls(branches, practitioners)

    @classmethod
    def load(cls, path: str | None = None) -> "ClinicDirectory":
        """Load from a JSON file (CLINIC_DIRECTORY_PATH) or fall back to SAMPLE_DIRECTORY."""
        path = path or config.directory_path()
        if not path:
            return cls.from_dict(SAMPLE_DIRECTORY)
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        logger.info("Loaded clinic directory from %s", path)
        return cls.from_dict(data)

    def branches(self) -> list[Branch]:
        return sorted(self._branches.values(), key=lambda b: b.name)

    def branch(self, branch_id: str) -> Branch | None:
        return self._branches.get(branch_id)

    def practitioner(self, practitioner_id: str) -> Practitioner | None:
        return self._practitioners.get(practitioner_id)

    def practitioners_at(self, branch_id: str) -> list[Practitioner]:
        return sorted((p for p in self._practitioners.values() if p.branch_id == branch_id), key=lambda p: p.name)


def build_store() -> AppointmentStore:
    backend = config.store_backend()
    if backend == "dynamodb":
        return DynamoAppointmentStore()
    if backend != "memory":
        raise ValueError(f"Unknown STORE_BACKEND: {backend!r}")
    return InMemoryAppointmentStore()
