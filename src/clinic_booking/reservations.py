"""
Conflict guard: short-lived exclusive holds on (practitioner, date, time) keys.

A key moves Free -> Reserved -> Committed, or Free -> Reserved -> Free when the
hold is released or expires. Committed claims return to Free only through
free(), when the owning appointment is cancelled or moved. An expired hold is
indistinguishable from a released one.
"""

from __future__ import annotations

import logging
import threading
import time as _time
import uuid
from dataclasses import dataclass
from datetime import date, time
from typing import Callable

from botocore.exceptions import BotoCoreError, ClientError

from . import config, dynamo
from .errors import ReservationNotHeldError, StoreUnavailableError
from .models import SlotKey

logger = logging.getLogger(__name__)

FREE = "free"
RESERVED = "reserved"
COMMITTED = "committed"


@dataclass(frozen=True)
class Reservation:
    """Proof of a hold. Only the holder of this object may commit or release it."""
    key: SlotKey
    holder: str
    expires_at: float


def _new_holder() -> str:
    return uuid.uuid4().hex


class ReservationGuard:
    """Contract shared by the in-memory and DynamoDB guards."""

    def try_reserve(self, key: SlotKey) -> Reservation | None:
        """Atomically claim `key`. Returns None immediately if it is already held or committed."""
        raise NotImplementedError

    def release(self, reservation: Reservation) -> None:
        """Drop an uncommitted hold. No-op if not held by this reservation."""
        raise NotImplementedError

    def commit(self, reservation: Reservation, appointment_id: str) -> None:
        """Make a live hold permanent. Raises ReservationNotHeldError otherwise."""
        raise NotImplementedError

    def free(self, key: SlotKey, appointment_id: str) -> bool:
        """Release a committed claim owned by `appointment_id`. Returns True if freed."""
        raise NotImplementedError

    def reserved_times(self, practitioner_id: str, day: date) -> set[time]:
        raise NotImplementedError

    def state(self, key: SlotKey) -> str:
        raise NotImplementedError


@dataclass
class _Entry:
    holder: str
    expires_at: float | None  # None once committed
    appointment_id: str | None = None

    @property
    def committed(self) -> bool:
        return self.expires_at is None

    def live(self, now: float) -> bool:
        return self.committed or self.expires_at > now


class InMemoryReservationGuard(ReservationGuard):
    """Process-local guard; one lock serialises every check-and-set."""

    def __init__(self, ttl_seconds: float | None = None, clock: Callable[[], float] = _time.monotonic):
        self.ttl_seconds = config.hold_ttl_seconds() if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, date], dict[time, _Entry]] = {}

    def _bucket(self, key: SlotKey) -> dict[time, _Entry]:
        return self._entries.setdefault((key.practitioner_id, key.date), {})

    def _live_entry(self, key: SlotKey, now: float) -> _Entry | None:
        bucket = self._entries.get((key.practitioner_id, key.date)) or {}
        entry = bucket.get(key.time)
        if entry is None:
            return None
        if not entry.live(now):
            del bucket[key.time]
            logger.debug("hold expired on %s", key)
            return None
        return entry

    def try_reserve(self, key: SlotKey) -> Reservation | None:
        with self._lock:
            now = self._clock()
            if self._live_entry(key, now) is not None:
                return None
            expires_at = now + self.ttl_seconds
            holder = _new_holder()
            self._bucket(key)[key.time] = _Entry(holder=holder, expires_at=expires_at)
        logger.debug("reserved %s (holder %s)", key, holder[:8])
        return Reservation(key=key, holder=holder, expires_at=expires_at)

    def release(self, reservation: Reservation) -> None:
        key = reservation.key
        with self._lock:
            entry = self._live_entry(key, self._clock())
            if entry is None or entry.committed or entry.holder != reservation.holder:
                return
            del self._bucket(key)[key.time]
        logger.debug("released %s", key)

    def commit(self, reservation: Reservation, appointment_id: str) -> None:
        key = reservation.key
        with self._lock:
            entry = self._live_entry(key, self._clock())
            if entry is None or entry.committed or entry.holder != reservation.holder:
                raise ReservationNotHeldError(f"Reservation on {key} is not held by this booking")
            entry.expires_at = None
            entry.appointment_id = appointment_id
        logger.debug("committed %s to appointment %s", key, appointment_id)

    def free(self, key: SlotKey, appointment_id: str) -> bool:
        with self._lock:
            entry = self._live_entry(key, self._clock())
            if entry is None or not entry.committed or entry.appointment_id != appointment_id:
                return False
            del self._bucket(key)[key.time]
        logger.debug("freed %s from appointment %s", key, appointment_id)
        return True

    def reserved_times(self, practitioner_id: str, day: date) -> set[time]:
        with self._lock:
            now = self._clock()
            bucket = self._entries.get((practitioner_id, day)) or {}
            return {t for t, entry in bucket.items() if entry.live(now)}

    def state(self, key: SlotKey) -> str:
        with self._lock:
            entry = self._live_entry(key, self._clock())
        if entry is None:
            return FREE
        return COMMITTED if entry.committed else RESERVED

    def purge_expired(self) -> int:
        """Drop expired holds. Returns how many were removed."""
        removed = 0
        with self._lock:
            now = self._clock()
            for bucket in self._entries.values():
                stale = [t for t, entry in bucket.items() if not entry.live(now)]
                for t in stale:
                    del bucket[t]
                removed += len(stale)
        if removed:
            logger.debug("purged %d expired holds", removed)
        return removed


class DynamoReservationGuard(ReservationGuard):
    """
    Guard backed by DynamoDB conditional writes.

    Table: hash key slot_day = "<practitioner>#<YYYY-MM-DD>", range key slot_time = "HH:MM".
    Attributes: holder, state ("held" | "committed"), expires_at (epoch seconds, TTL), appointment_id.
    """

    HELD = "held"
    COMMITTED = "committed"

    def __init__(self, client=None, table_name: str | None = None, ttl_seconds: float | None = None,
                 clock: Callable[[], float] = _time.time):
        self._client = client or dynamo.make_client()
        self.table_name = table_name or config.reservations_table()
        self.ttl_seconds = config.hold_ttl_seconds() if ttl_seconds is None else ttl_seconds
        self._clock = clock

    @staticmethod
    def _pk(practitioner_id: str, day: date) -> dict[str, str]:
        return {"S": f"{practitioner_id}#{day.isoformat()}"}

    def _item_key(self, key: SlotKey) -> dict[str, dict[str, str]]:
        return {
            "slot_day": self._pk(key.practitioner_id, key.date),
            "slot_time": {"S": key.time.strftime("%H:%M")},
        }

    def try_reserve(self, key: SlotKey) -> Reservation | None:
        now = self._clock()
        holder = _new_holder()
        expires_at = now + self.ttl_seconds
        item = {
            **self._item_key(key),
            "holder": {"S": holder},
            "state": {"S": self.HELD},
            "expires_at": {"N": str(int(expires_at))},
        }
        try:
            self._client.put_item(
                TableName=self.table_name,
                Item=item,
                ConditionExpression="attribute_not_exists(slot_day) OR (#st = :held AND expires_at < :now)",
                ExpressionAttributeNames={"#st": "state"},
                ExpressionAttributeValues={":held": {"S": self.HELD}, ":now": {"N": str(int(now))}},
            )
        except ClientError as exc:
            if dynamo.is_conditional_failure(exc):
                return None
            raise dynamo.translate(exc, "reserve") from exc
        except BotoCoreError as exc:
            raise dynamo.translate(exc, "reserve") from exc
        logger.debug("reserved %s (holder %s)", key, holder[:8])
        return Reservation(key=key, holder=holder, expires_at=expires_at)

    def release(self, reservation: Reservation) -> None:
        try:
            self._client.delete_item(
                TableName=self.table_name,
                Key=self._item_key(reservation.key),
                ConditionExpression="holder = :holder AND #st = :held",
                ExpressionAttributeNames={"#st": "state"},
                ExpressionAttributeValues={":holder": {"S": reservation.holder}, ":held": {"S": self.HELD}},
            )
        except ClientError as exc:
            if dynamo.is_conditional_failure(exc):
                return
            raise dynamo.translate(exc, "release") from exc
        except BotoCoreError as exc:
            raise dynamo.translate(exc, "release") from exc
        logger.debug("released %s", reservation.key)

    def commit(self, reservation: Reservation, appointment_id: str) -> None:
        try:
            self._client.update_item(
                TableName=self.table_name,
                Key=self._item_key(reservation.key),
                UpdateExpression="SET #st = :committed, appointment_id = :aid REMOVE expires_at",
                ConditionExpression="holder = :holder AND #st = :held AND expires_at >= :now",
                ExpressionAttributeNames={"#st": "state"},
                ExpressionAttributeValues={
                    ":committed": {"S": self.COMMITTED},
                    ":aid": {"S": appointment_id},
                    ":holder": {"S": reservation.holder},
                    ":held": {"S": self.HELD},
                    ":now": {"N": str(int(self._clock()))},
                },
            )
        except ClientError as exc:
            if dynamo.is_conditional_failure(exc):
                raise ReservationNotHeldError(
                    f"Reservation on {reservation.key} is not held by this booking"
                ) from exc
            raise dynamo.translate(exc, "commit") from exc
        except BotoCoreError as exc:
            raise dynamo.translate(exc, "commit") from exc
        logger.debug("committed %s to appointment %s", reservation.key, appointment_id)

    def free(self, key: SlotKey, appointment_id: str) -> bool:
        try:
            self._client.delete_item(
                TableName=self.table_name,
                Key=self._item_key(key),
                ConditionExpression="#st = :committed AND appointment_id = :aid",
                ExpressionAttributeNames={"#st": "state"},
                ExpressionAttributeValues={":committed": {"S": self.COMMITTED}, ":aid": {"S": appointment_id}},
            )
        except ClientError as exc:
            if dynamo.is_conditional_failure(exc):
                return False
            raise dynamo.translate(exc, "free") from exc
        except BotoCoreError as exc:
            raise dynamo.translate(exc, "free") from exc
        logger.debug("freed %s from appointment %s", key, appointment_id)
        return True

    def _rows(self, practitioner_id: str, day: date) -> list[dict]:
        rows: list[dict] = []
        kwargs = {
            "TableName": self.table_name,
            "KeyConditionExpression": "slot_day = :sd",
            "ExpressionAttributeValues": {":sd": self._pk(practitioner_id, day)},
        }
        try:
            while True:
                resp = self._client.query(**kwargs)
                rows.extend(dynamo.from_item(item) for item in resp.get("Items") or [])
                last = resp.get("LastEvaluatedKey")
                if not last:
                    return rows
                kwargs["ExclusiveStartKey"] = last
        except (ClientError, BotoCoreError) as exc:
            raise dynamo.translate(exc, "availability lookup") from exc

    def _row_live(self, row: dict, now: float) -> bool:
        if row.get("state") == self.COMMITTED:
            return True
        return float(row.get("expires_at") or 0) >= now

    def reserved_times(self, practitioner_id: str, day: date) -> set[time]:
        now = self._clock()
        return {
            time.fromisoformat(row["slot_time"])
            for row in self._rows(practitioner_id, day)
            if self._row_live(row, now)
        }

    def state(self, key: SlotKey) -> str:
        try:
            resp = self._client.get_item(TableName=self.table_name, Key=self._item_key(key), ConsistentRead=True)
        except (ClientError, BotoCoreError) as exc:
            raise dynamo.translate(exc, "reservation lookup") from exc
        item = resp.get("Item")
        if not item:
            return FREE
        row = dynamo.from_item(item)
        if not self._row_live(row, self._clock()):
            return FREE
        return COMMITTED if row.get("state") == self.COMMITTED else RESERVED


def build_guard() -> ReservationGuard:
    backend = config.store_backend()
    if backend == "dynamodb":
        return DynamoReservationGuard()
    if backend != "memory":
        raise ValueError(f"Unknown STORE_BACKEND: {backend!r}")
    return InMemoryReservationGuard()


def release_quietly(guard: ReservationGuard, reservation: Reservation) -> bool:
    """Release `reservation`, logging instead of raising if the guard's backend is unavailable.

    Returns False when the release did not go through; the hold then lapses at its TTL.
    """
    try:
        guard.release(reservation)
    except StoreUnavailableError:
        logger.warning("Could not release hold on %s; it expires at its TTL", reservation.key, exc_info=True)
        return False
    return True
