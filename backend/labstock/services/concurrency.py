# Overview: Transaction helpers for the stock ledger: row locking, bounded retry, deadlines.

from __future__ import annotations

import time

from flask import current_app, has_app_context
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from .stock_errors import (
    ConcurrentModificationError,
    DeadlineExceededError,
    StorageUnavailableError,
)

# Driver messages meaning "the database refused this transaction", i.e. nothing committed.
LOCK_CONTENTION_MARKERS = (
    "database is locked",
    "database table is locked",
    "deadlock",
    "could not serialize",
    "lock wait timeout",
)

# Unique-index violations: a concurrent writer created the same row first.
UNIQUE_VIOLATION_MARKERS = (
    "unique constraint",
    "duplicate key",
    "duplicate entry",
)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The version_id_col check on UPDATE is what guarantees correctness.
    """
    return query.with_for_update()


def deadline_from_timeout(timeout: float | None) -> float | None:
    if timeout is None:
        return None
    return time.monotonic() + timeout


def check_deadline(deadline: float | None) -> None:
    if deadline is not None and time.monotonic() >= deadline:
        raise DeadlineExceededError("operation deadline expired before commit", field="timeout")


def is_lock_contention(exc: Exception) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return any(marker in message for marker in LOCK_CONTENTION_MARKERS)


def is_unique_violation(exc: Exception) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return any(marker in message for marker in UNIQUE_VIOLATION_MARKERS)


def _retry_settings(attempts: int | None, backoff_base: float | None) -> tuple[int, float]:
    config = current_app.config if has_app_context() else {}
    if attempts is None:
        attempts = int(config.get("LEDGER_MAX_ATTEMPTS", 4))
    if backoff_base is None:
        backoff_base = float(config.get("LEDGER_RETRY_BACKOFF", 0.05))
    return max(1, attempts), backoff_base


def commit_ledger(deadline: float | None = None) -> None:
    """
    Commit the current ledger transaction.

    Lock contention and unique-index violations are re-raised for
    run_with_retry (the database rejected the commit). Any other driver failure leaves the outcome unknown, so it
    surfaces as StorageUnavailableError and is never retried.
    """
    check_deadline(deadline)
    try:
        db.session.commit()
    except IntegrityError as exc:
        if is_unique_violation(exc):
            raise
        db.session.rollback()
        raise StorageUnavailableError("commit failed; outcome unknown") from exc
    except OperationalError as exc:
        if is_lock_contention(exc):
            raise
        db.session.rollback()
        raise StorageUnavailableError("commit failed; outcome unknown") from exc
    except DBAPIError as exc:
        db.session.rollback()
        raise StorageUnavailableError("commit failed; outcome unknown") from exc


def run_with_retry(
    func,
    *,
    attempts: int | None = None,
    backoff_base: float | None = None,
    deadline: float | None = None,
):
    """
    Execute a ledger mutation with retry on concurrency-related failures.

    Retries on StaleDataError (optimistic version conflict), on unique-index
    violations (another writer inserted the same row first) and on lock
    contention. Every failed attempt is rolled back before the next one, so
    each retry re-reads current state. Domain errors propagate untouched.
    """
    attempts, backoff_base = _retry_settings(attempts, backoff_base)
    for attempt in range(attempts):
        check_deadline(deadline)
        try:
            return func()
        except StaleDataError as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                current_app.logger.warning("Version conflict persisted after %d attempts", attempts)
                raise ConcurrentModificationError(
                    "item was modified concurrently; retries exhausted",
                    attempts=attempts,
                ) from exc
            current_app.logger.info("Version conflict, retrying (attempt %d/%d)", attempt + 1, attempts)
        except IntegrityError as exc:
            db.session.rollback()
            if not is_unique_violation(exc):
                raise
            if attempt >= attempts - 1:
                raise ConcurrentModificationError(
                    "row was created concurrently; retries exhausted",
                    attempts=attempts,
                ) from exc
            current_app.logger.info("Duplicate insert, retrying (attempt %d/%d)", attempt + 1, attempts)
        except OperationalError as exc:
            db.session.rollback()
            if not is_lock_contention(exc):
                raise StorageUnavailableError("storage operation failed") from exc
            if attempt >= attempts - 1:
                raise StorageUnavailableError(
                    "storage remained locked; retries exhausted",
                    attempts=attempts,
                ) from exc
        except Exception:
            db.session.rollback()
            raise
        time.sleep(backoff_base * (2 ** attempt))


def run_read_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """Execute an idempotent read, retrying transport failures with backoff."""
    attempts, backoff_base = _retry_settings(attempts, backoff_base)
    for attempt in range(attempts):
        try:
            return func()
        except OperationalError as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                current_app.logger.warning("Read failed after %d attempts", attempts)
                raise StorageUnavailableError("storage unavailable for read", attempts=attempts) from exc
            time.sleep(backoff_base * (2 ** attempt))
