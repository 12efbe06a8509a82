"""Appointment tokens: <BRANCHCODE>-<YYYY>-<MMDD>-<NNNN>, e.g. CLB-2024-1215-4821."""

from __future__ import annotations

import re
import secrets
from datetime import date
from typing import Callable

TOKEN_RE = re.compile(r"^[A-Z0-9]+-\d{4}-\d{4}-\d{4}$")
MAX_TOKEN_ATTEMPTS = 20


def generate_token(branch_code: str, issued_on: date, rand: Callable[[], int] | None = None) -> str:
    """Build a token. The 4-digit suffix is drawn from 1000..9999."""
    code = branch_code.strip().upper()
    if not code or not code.isalnum():
        raise ValueError(f"Invalid branch code: {branch_code!r}")
    n = rand() if rand else 1000 + secrets.randbelow(9000)
    return f"{code}-{issued_on.year:04d}-{issued_on.month:02d}{issued_on.day:02d}-{n:04d}"


def is_valid_token(token: str) -> bool:
    return bool(TOKEN_RE.match(token or ""))


def issue_unique_token(
    branch_code: str,
    issued_on: date,
    exists: Callable[[str], bool],
    rand: Callable[[], int] | None = None,
) -> str:
    """Generate tokens until `exists` reports one unused. Raises RuntimeError if the day's space looks exhausted."""
    for _ in range(MAX_TOKEN_ATTEMPTS):
        token = generate_token(branch_code, issued_on, rand)
        if not exists(token):
            return token
    raise RuntimeError(f"Could not issue a unique token for {branch_code} on {issued_on.isoformat()}")
