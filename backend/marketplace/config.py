# backend/marketplace/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value not in (None, "") else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored next to the backend by default
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///marketplace.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # One-time codes (delivery confirmation and order cancel codes)
    DELIVERY_CODE_LENGTH = _env_int("DELIVERY_CODE_LENGTH", 6)
    DELIVERY_CODE_TTL_SECONDS = _env_int("DELIVERY_CODE_TTL_SECONDS", 600)
    DELIVERY_CODE_COOLDOWN_SECONDS = _env_int("DELIVERY_CODE_COOLDOWN_SECONDS", 60)
    DELIVERY_CODE_MAX_ATTEMPTS = _env_int("DELIVERY_CODE_MAX_ATTEMPTS", 5)
    DELIVERY_CODE_LOCK_MINUTES = _env_int("DELIVERY_CODE_LOCK_MINUTES", 30)
    OTP_HASH_ROUNDS = _env_int("OTP_HASH_ROUNDS", 10)

    # Refund itemization: tax/fee components stay zero unless enabled
    REFUND_PRORATE_FEES = _env_bool("REFUND_PRORATE_FEES", False)

    SESSION_TTL_HOURS = _env_int("SESSION_TTL_HOURS", 24)
    TXN_RETRY_ATTEMPTS = _env_int("TXN_RETRY_ATTEMPTS", 3)

    CURRENCY = "NGN"
