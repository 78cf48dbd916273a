# backend/labstock/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/labstock.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///labstock.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Optimistic-concurrency retry budget for ledger mutations
    LEDGER_MAX_ATTEMPTS = int(os.environ.get("LEDGER_MAX_ATTEMPTS", "4"))
    LEDGER_RETRY_BACKOFF = float(os.environ.get("LEDGER_RETRY_BACKOFF", "0.05"))

    # "atomic": one transaction across both items; "saga": debit, credit, compensate on failure
    STOCK_MOVE_MODE = os.environ.get("STOCK_MOVE_MODE", "atomic")
    LEDGER_ALLOW_CROSS_DEPARTMENT_MOVES = _env_bool("LEDGER_ALLOW_CROSS_DEPARTMENT_MOVES")

    HISTORY_DEFAULT_LIMIT = 50
    HISTORY_MAX_LIMIT = 100

    EXPIRY_WINDOW_DAYS = int(os.environ.get("EXPIRY_WINDOW_DAYS", "30"))
