"""Environment-driven settings. Values are read at call time so tests can patch os.environ."""

from __future__ import annotations

import os
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_TZ = "Asia/Colombo"
DEFAULT_REGION = "us-west-2"


def _int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


def _float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


def store_backend() -> str:
    """'memory' (default) or 'dynamodb'."""
    return (os.environ.get("STORE_BACKEND") or "memory").strip().lower()


def aws_region() -> str:
    return os.environ.get("AWS_REGION", DEFAULT_REGION)


def dynamodb_endpoint() -> str | None:
    return os.environ.get("DYNAMODB_ENDPOINT_URL") or None


def appointments_table() -> str:
    return os.environ.get("APPOINTMENTS_TABLE_NAME", "clinic_appointments")


def reservations_table() -> str:
    return os.environ.get("RESERVATIONS_TABLE_NAME", "clinic_reservations")


def hold_ttl_seconds() -> int:
    return _int("HOLD_TTL_SECONDS", 300)


def booking_horizon_days() -> int:
    return _int("BOOKING_HORIZON_DAYS", 30)


def store_write_attempts() -> int:
    return max(1, _int("STORE_WRITE_ATTEMPTS", 3))


def store_retry_base_delay() -> float:
    return _float("STORE_RETRY_BASE_DELAY", 0.2)


def clinic_timezone() -> ZoneInfo:
    try:
        return ZoneInfo(os.environ.get("CLINIC_TIMEZONE", DEFAULT_TZ))
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(DEFAULT_TZ)


def directory_path() -> str | None:
    return (os.environ.get("CLINIC_DIRECTORY_PATH") or "").strip() or None


def notify_phone() -> str | None:
    return (os.environ.get("CLINIC_NOTIFY_PHONE") or "").strip() or None


def log_level() -> str:
    return os.environ.get("LOG_LEVEL", "INFO").upper()


def twilio_credentials() -> tuple[str, str] | None:
    sid = (os.environ.get("TWILIO_ACCOUNT_SID") or "").strip()
    token = (os.environ.get("TWILIO_AUTH_TOKEN") or "").strip()
    return (sid, token) if sid and token else None


def twilio_from_number() -> str | None:
    return (os.environ.get("TWILIO_PHONE_NUMBER") or "").strip() or None
