# Overview: Numeric one-time code generation, hashing and comparison.

"""
One-time code primitives shared by delivery confirmation and order action
codes.

SECURITY:
- Codes come from the secrets CSPRNG, zero-padded to a fixed length
- Only a bcrypt hash is stored; every issuance gets a fresh salt
- bcrypt.checkpw compares in constant time
"""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

import bcrypt
from flask import current_app

from ..errors import PreconditionError, RateLimitError
from ..time_utils import as_naive_utc


@dataclass(frozen=True)
class CodePolicy:
    length: int
    ttl: timedelta
    cooldown: timedelta
    max_attempts: int
    lock_duration: timedelta
    hash_rounds: int


def current_policy() -> CodePolicy:
    cfg = current_app.config
    return CodePolicy(
        length=cfg["DELIVERY_CODE_LENGTH"],
        ttl=timedelta(seconds=cfg["DELIVERY_CODE_TTL_SECONDS"]),
        cooldown=timedelta(seconds=cfg["DELIVERY_CODE_COOLDOWN_SECONDS"]),
        max_attempts=cfg["DELIVERY_CODE_MAX_ATTEMPTS"],
        lock_duration=timedelta(minutes=cfg["DELIVERY_CODE_LOCK_MINUTES"]),
        hash_rounds=cfg["OTP_HASH_ROUNDS"],
    )


def generate_code(length: int) -> str:
    return str(secrets.randbelow(10 ** length)).zfill(length)


def hash_code(code: str, rounds: int) -> tuple[str, str]:
    """Return (salt, hash) for a freshly issued code."""
    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(code.encode("utf-8"), salt)
    return salt.decode("utf-8"), hashed.decode("utf-8")


def code_matches(code: str, code_hash: str) -> bool:
    return bcrypt.checkpw(code.encode("utf-8"), code_hash.encode("utf-8"))


def normalize_code(raw, length: int) -> str:
    """
    Accept "123 456" or "123-456" style input; anything that is not exactly
    `length` digits after stripping separators is a format error.
    """
    text = re.sub(r"[\s-]", "", str(raw or ""))
    if not re.fullmatch(rf"\d{{{length}}}", text):
        raise PreconditionError(f"Invalid code format: expected {length} digits", code="INVALID_CODE_FORMAT")
    return text


def enforce_cooldown(last_issued_at: datetime | None, now: datetime, cooldown: timedelta) -> None:
    if last_issued_at is None:
        return
    retry_at = as_naive_utc(last_issued_at) + cooldown
    if retry_at > now:
        raise RateLimitError(
            "Please wait before requesting another code",
            code="CODE_COOLDOWN",
            retry_at=retry_at,
        )


def register_failed_attempt(row, now: datetime, policy: CodePolicy) -> bool:
    """
    Count a wrong code on a challenge-like row (attempts/locked_until).

    Returns True when this attempt triggered a lockout. The counter is not
    reset when a lock expires, so after the window one more wrong attempt
    locks again.
    """
    row.attempts = (row.attempts or 0) + 1
    if row.attempts >= policy.max_attempts:
        row.locked_until = now + policy.lock_duration
        return True
    return False


def locked_until(row, now: datetime) -> datetime | None:
    until = as_naive_utc(row.locked_until)
    if until is not None and until > now:
        return until
    return None


def is_expired(row, now: datetime) -> bool:
    return as_naive_utc(row.expires_at) <= now
