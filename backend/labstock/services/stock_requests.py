# backend/labstock/services/stock_requests.py
"""
Typed ledger operation requests.

The boundary layer (routes + validation.py) turns loose JSON into exactly one
of these variants. Construction enforces the quantity and reason rules, so an
instance that exists is a well-formed request.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional

from .stock_errors import InvalidQuantityError, InvalidRequestError


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _require_positive(name: str, value: Any) -> None:
    if not _is_int(value) or value <= 0:
        raise InvalidQuantityError(f"{name} must be a positive integer", field=name, value=value)


def _require_non_negative(name: str, value: Any) -> None:
    if not _is_int(value) or value < 0:
        raise InvalidQuantityError(f"{name} must be a non-negative integer", field=name, value=value)


def _require_actor(actor_id: Any) -> None:
    if not isinstance(actor_id, str) or not actor_id.strip():
        raise InvalidRequestError("actor_id is required", field="actor_id", value=actor_id)


def _require_reason(reason: Any) -> None:
    if not isinstance(reason, str) or not reason.strip():
        raise InvalidRequestError("reason is required", field="reason", value=reason)


def _require_id(name: str, value: Any) -> None:
    if not _is_int(value) or value <= 0:
        raise InvalidRequestError(f"{name} must be a positive integer id", field=name, value=value)


@dataclass(frozen=True)
class AddStock:
    item_id: int
    quantity: int
    actor_id: str
    reason: Optional[str] = None
    notes: Optional[str] = None
    unit_cost_cents: Optional[int] = None
    supplier: Optional[str] = None
    batch_number: Optional[str] = None
    expiry_date: Optional[date] = None
    expected_version: Optional[int] = None

    def __post_init__(self):
        _require_id("item_id", self.item_id)
        _require_positive("quantity", self.quantity)
        _require_actor(self.actor_id)
        if self.unit_cost_cents is not None:
            _require_non_negative("unit_cost_cents", self.unit_cost_cents)


@dataclass(frozen=True)
class RemoveStock:
    item_id: int
    quantity: int
    actor_id: str
    reason: Optional[str] = None
    notes: Optional[str] = None
    expected_version: Optional[int] = None

    def __post_init__(self):
        _require_id("item_id", self.item_id)
        _require_positive("quantity", self.quantity)
        _require_actor(self.actor_id)
        _require_reason(self.reason)


@dataclass(frozen=True)
class MoveStock:
    item_id: int
    target_lab_id: int
    quantity: int
    actor_id: str
    source_lab_id: Optional[int] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    expected_version: Optional[int] = None

    def __post_init__(self):
        _require_id("item_id", self.item_id)
        _require_id("target_lab_id", self.target_lab_id)
        if self.source_lab_id is not None:
            _require_id("source_lab_id", self.source_lab_id)
        _require_positive("quantity", self.quantity)
        _require_actor(self.actor_id)


@dataclass(frozen=True)
class AdjustStock:
    item_id: int
    new_quantity: int
    actor_id: str
    reason: Optional[str] = None
    notes: Optional[str] = None
    expected_version: Optional[int] = None

    def __post_init__(self):
        _require_id("item_id", self.item_id)
        _require_non_negative("new_quantity", self.new_quantity)
        _require_actor(self.actor_id)
        _require_reason(self.reason)


@dataclass(frozen=True)
class HistoryQuery:
    item_id: int
    page: int = 1
    limit: int = 50
    cursor: Optional[str] = None
    snapshot_id: Optional[int] = None

    def __post_init__(self):
        _require_id("item_id", self.item_id)
        if not _is_int(self.page) or self.page < 1:
            raise InvalidRequestError("page must be >= 1", field="page", value=self.page)
        if not _is_int(self.limit) or not 1 <= self.limit <= 100:
            raise InvalidRequestError("limit must be between 1 and 100", field="limit", value=self.limit)


@dataclass
class StockResult:
    """Snapshot of a committed mutation, taken inside its transaction."""
    item: dict
    log_entries: list[dict] = field(default_factory=list)
    target_item: Optional[dict] = None
    move_id: Optional[str] = None
    move: Optional[dict] = None

    def to_dict(self) -> dict:
        payload = {
            "item": self.item,
            "log_entries": self.log_entries,
        }
        if self.move_id is not None:
            payload["move_id"] = self.move_id
            payload["target_item"] = self.target_item
        if self.move is not None:
            payload["move"] = self.move
        return payload
