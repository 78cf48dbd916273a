# Overview: Stock alert scans (low stock, expiring, expired) over current item state.

from __future__ import annotations

from datetime import date, timedelta

from flask import current_app

from ..extensions import db
from ..models import Item
from labstock.time_utils import today_utc
from .concurrency import run_read_with_retry
from .stock_errors import InvalidRequestError

"""
Alert conventions:
- Low stock: minimum_quantity is set and quantity <= minimum_quantity.
  Out-of-stock items (quantity 0) are low stock too.
- Expiry is compared by calendar date (UTC). An item expiring today is not
  yet expired; one whose expiry_date is before today is.
- Soft-deleted items never raise alerts.
"""


def _window_days(within_days: int | None) -> int:
    if within_days is None:
        within_days = int(current_app.config.get("EXPIRY_WINDOW_DAYS", 30))
    if not isinstance(within_days, int) or isinstance(within_days, bool) or within_days < 0:
        raise InvalidRequestError("within_days must be a non-negative integer", field="within_days", value=within_days)
    return within_days


def _active_items(lab_id: int | None):
    q = db.session.query(Item).filter(Item.deleted_at.is_(None))
    if lab_id is not None:
        q = q.filter(Item.lab_id == lab_id)
    return q


def _expiry_row(item: Item, today: date) -> dict:
    row = item.to_dict(today)
    row["days_until_expiry"] = (item.expiry_date - today).days
    row["is_expired"] = item.expiry_date < today
    return row


def low_stock(lab_id: int | None = None) -> list[dict]:
    def _op():
        rows = (
            _active_items(lab_id)
            .filter(
                Item.minimum_quantity.isnot(None),
                Item.quantity <= Item.minimum_quantity,
            )
            .order_by(Item.lab_id, Item.name, Item.id)
            .all()
        )
        return [item.to_dict() for item in rows]

    return run_read_with_retry(_op)


def expiring(
    lab_id: int | None = None,
    within_days: int | None = None,
    include_expired: bool = True,
    today: date | None = None,
) -> list[dict]:
    """
    Items whose expiry date falls on or before today + within_days.

    include_expired=False restricts the result to items that have not
    expired yet (expiry_date >= today).
    """
    window = _window_days(within_days)
    today = today or today_utc()

    def _op():
        q = _active_items(lab_id).filter(
            Item.expiry_date.isnot(None),
            Item.expiry_date <= today + timedelta(days=window),
        )
        if not include_expired:
            q = q.filter(Item.expiry_date >= today)
        rows = q.order_by(Item.expiry_date, Item.lab_id, Item.id).all()
        return [_expiry_row(item, today) for item in rows]

    return run_read_with_retry(_op)


def expired(lab_id: int | None = None, today: date | None = None) -> list[dict]:
    today = today or today_utc()

    def _op():
        rows = (
            _active_items(lab_id)
            .filter(Item.expiry_date.isnot(None), Item.expiry_date < today)
            .order_by(Item.expiry_date, Item.lab_id, Item.id)
            .all()
        )
        return [_expiry_row(item, today) for item in rows]

    return run_read_with_retry(_op)


def alert_summary(lab_id: int | None = None, within_days: int | None = None, today: date | None = None) -> dict:
    """Alert counts for dashboards. expiring_soon excludes already-expired items."""
    window = _window_days(within_days)
    today = today or today_utc()

    def _op():
        items = _active_items(lab_id).all()
        summary = {
            "low_stock_count": 0,
            "out_of_stock_count": 0,
            "expiring_soon_count": 0,
            "expired_count": 0,
            "within_days": window,
        }
        horizon = today + timedelta(days=window)
        for item in items:
            if item.is_low_stock():
                summary["low_stock_count"] += 1
            if item.quantity == 0:
                summary["out_of_stock_count"] += 1
            if item.expiry_date is None:
                continue
            if item.expiry_date < today:
                summary["expired_count"] += 1
            elif item.expiry_date <= horizon:
                summary["expiring_soon_count"] += 1
        return summary

    return run_read_with_retry(_op)


def group_by_lab(rows: list[dict]) -> dict[int, list[dict]]:
    """Group alert rows per lab, keeping their order."""
    grouped: dict[int, list[dict]] = {}
    for row in rows:
        grouped.setdefault(row["lab_id"], []).append(row)
    return grouped
