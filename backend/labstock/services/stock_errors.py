# backend/labstock/services/stock_errors.py
"""
Stock ledger error taxonomy.

Every error carries a machine-readable kind plus the offending field/value so
the boundary layer can pick a response status without the ledger knowing
about HTTP.

Propagation:
- Validation-shaped errors (invalid quantity/request, not found, insufficient
  stock, stale location, invalid move) are deterministic for a given request
  and state; they are never retried.
- ConcurrentModificationError is raised only after the internal retry budget
  is exhausted, or immediately when the caller's expected_version is stale.
- StorageUnavailableError is raised for transport/transaction failures.
"""
from __future__ import annotations

from typing import Any


class StockLedgerError(Exception):
    """Base class for ledger failures."""

    kind = "stock_ledger_error"

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        **details: Any,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.value = value
        self.details = details

    def to_dict(self) -> dict:
        payload = {
            "error": self.message,
            "kind": self.kind,
            "field": self.field,
            "value": self.value,
        }
        payload.update(self.details)
        return payload


class ItemNotFoundError(StockLedgerError):
    kind = "item_not_found"


class LabNotFoundError(StockLedgerError):
    kind = "lab_not_found"


class MoveNotFoundError(StockLedgerError):
    kind = "move_not_found"


class StockLogNotFoundError(StockLedgerError):
    kind = "stock_log_not_found"


class InvalidQuantityError(StockLedgerError):
    kind = "invalid_quantity"


class InvalidRequestError(StockLedgerError):
    kind = "invalid_request"


class InsufficientStockError(StockLedgerError):
    kind = "insufficient_stock"


class StaleLocationError(StockLedgerError):
    kind = "stale_location"


class InvalidMoveError(StockLedgerError):
    kind = "invalid_move"


class ConcurrentModificationError(StockLedgerError):
    kind = "concurrent_modification"


class MoveFailedError(StockLedgerError):
    """Saga credit step failed; the debit has been compensated."""

    kind = "move_failed"


class DeadlineExceededError(StockLedgerError):
    kind = "deadline_exceeded"


class StorageUnavailableError(StockLedgerError):
    kind = "storage_unavailable"
