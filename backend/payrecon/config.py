# backend/payrecon/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/payrecon.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///payrecon.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Document numbering ({prefix}-{year}{number:06d})
    INVOICE_PREFIX = os.environ.get("INVOICE_PREFIX", "INV")
    ORDER_PREFIX = os.environ.get("ORDER_PREFIX", "SO")
    ADJUSTMENT_PREFIX = os.environ.get("ADJUSTMENT_PREFIX", "ADJ")
    CREDIT_MEMO_PREFIX = os.environ.get("CREDIT_MEMO_PREFIX", "CM")
    SEQUENCE_MAX_ATTEMPTS = int(os.environ.get("SEQUENCE_MAX_ATTEMPTS", "5"))

    INVOICE_DUE_DAYS = int(os.environ.get("INVOICE_DUE_DAYS", "30"))

    # Rounding residue (in cents) treated as fully settled
    BALANCE_TOLERANCE_CENTS = int(os.environ.get("BALANCE_TOLERANCE_CENTS", "1"))

    # Retries for lock / optimistic version conflicts on ledger writes
    DB_RETRY_ATTEMPTS = int(os.environ.get("DB_RETRY_ATTEMPTS", "3"))

    # Payment gateway (Authorize.net-style JSON API)
    GATEWAY_ENABLED = _env_bool("GATEWAY_ENABLED", True)
    GATEWAY_API_LOGIN_ID = os.environ.get("GATEWAY_API_LOGIN_ID", "")
    GATEWAY_TRANSACTION_KEY = os.environ.get("GATEWAY_TRANSACTION_KEY", "")
    GATEWAY_ENDPOINT = os.environ.get(
        "GATEWAY_ENDPOINT",
        "https://apitest.authorize.net/xml/v1/request.api",
    )
    GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "30"))
