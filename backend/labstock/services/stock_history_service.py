# Overview: Read side of the stock ledger: per-item history, audit search, replay checks.

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import and_, func, or_

from ..extensions import db
from ..models import Item, StockLogEntry
from ..models.stock import OPERATIONS
from labstock.time_utils import parse_iso_datetime, to_utc_z
from .concurrency import run_read_with_retry
from .stock_errors import InvalidRequestError, ItemNotFoundError, StockLogNotFoundError
from .stock_requests import HistoryQuery

"""
Ordering and cursors:
- Entries are listed newest first: (occurred_at desc, id desc).
- cursor = "<occurred_at ISO-8601 with microseconds>|<id>" of the last row
  returned; the next page holds rows strictly older than it.
- Page mode is anchored to snapshot_id (highest entry id when page 1 was
  read). Entries appended later have larger ids and never shift pages.
"""


def encode_cursor(entry: StockLogEntry) -> str:
    return f"{to_utc_z(entry.occurred_at, keep_microseconds=True)}|{entry.id}"


def decode_cursor(cursor: str) -> tuple[datetime, int]:
    try:
        raw_dt, raw_id = cursor.split("|")
        cursor_dt = parse_iso_datetime(raw_dt)
        cursor_id = int(raw_id)
    except (ValueError, AttributeError):
        raise InvalidRequestError("cursor must be in format <ISO-8601>|<id>", field="cursor", value=cursor)
    if cursor_dt is None:
        raise InvalidRequestError("cursor must be in format <ISO-8601>|<id>", field="cursor", value=cursor)
    return cursor_dt, cursor_id


def _older_than_cursor(q, cursor: str):
    cursor_dt, cursor_id = decode_cursor(cursor)
    return q.filter(
        or_(
            StockLogEntry.occurred_at < cursor_dt,
            and_(StockLogEntry.occurred_at == cursor_dt, StockLogEntry.id < cursor_id),
        )
    )


def _newest_first(q):
    return q.order_by(StockLogEntry.occurred_at.desc(), StockLogEntry.id.desc())


def _max_limit() -> int:
    return int(current_app.config.get("HISTORY_MAX_LIMIT", 100))


def get_history(query: HistoryQuery) -> dict:
    """
    Paginated log entries of one item, newest first.

    Soft-deleted items still expose their history.
    """
    if query.limit > _max_limit():
        raise InvalidRequestError(
            f"limit must be between 1 and {_max_limit()}", field="limit", value=query.limit
        )

    def _op():
        item = db.session.get(Item, query.item_id)
        if item is None:
            raise ItemNotFoundError(f"Item {query.item_id} not found", field="item_id", value=query.item_id)

        snapshot_id = query.snapshot_id
        if snapshot_id is None:
            snapshot_id = (
                db.session.query(func.max(StockLogEntry.id))
                .filter(StockLogEntry.item_id == item.id)
                .scalar()
            )

        base = db.session.query(StockLogEntry).filter(StockLogEntry.item_id == item.id)
        if snapshot_id is not None:
            base = base.filter(StockLogEntry.id <= snapshot_id)
        else:
            base = base.filter(db.false())

        total = base.count()

        if query.cursor:
            rows = _newest_first(_older_than_cursor(base, query.cursor)).limit(query.limit + 1).all()
        else:
            offset = (query.page - 1) * query.limit
            rows = _newest_first(base).offset(offset).limit(query.limit + 1).all()

        has_more = len(rows) > query.limit
        rows = rows[:query.limit]

        return {
            "items": [r.to_dict() for r in rows],
            "pagination": {
                "page": query.page,
                "limit": query.limit,
                "total": total,
                "pages": (total + query.limit - 1) // query.limit,
            },
            "next_cursor": encode_cursor(rows[-1]) if has_more and rows else None,
            "snapshot_id": snapshot_id,
        }

    return run_read_with_retry(_op)


def list_stock_logs(
    *,
    item_id: int | None = None,
    lab_id: int | None = None,
    actor_id: str | None = None,
    operation: str | None = None,
    move_id: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    cursor: str | None = None,
    limit: int | None = None,
) -> dict:
    """Cross-item audit search. Date bounds are inclusive."""
    if limit is None:
        limit = int(current_app.config.get("HISTORY_DEFAULT_LIMIT", 50))
    if not 1 <= limit <= _max_limit():
        raise InvalidRequestError(f"limit must be between 1 and {_max_limit()}", field="limit", value=limit)
    if operation is not None and operation not in OPERATIONS:
        raise InvalidRequestError(
            f"operation must be one of {', '.join(OPERATIONS)}", field="operation", value=operation
        )
    if start_date is not None and end_date is not None and start_date > end_date:
        raise InvalidRequestError("start_date must not be after end_date", field="start_date")

    def _op():
        q = db.session.query(StockLogEntry)
        if item_id is not None:
            q = q.filter(StockLogEntry.item_id == item_id)
        if lab_id is not None:
            q = q.filter(StockLogEntry.lab_id == lab_id)
        if actor_id:
            q = q.filter(StockLogEntry.actor_id == actor_id)
        if operation:
            q = q.filter(StockLogEntry.operation == operation)
        if move_id:
            q = q.filter(StockLogEntry.move_id == move_id)
        if start_date is not None:
            q = q.filter(StockLogEntry.occurred_at >= start_date)
        if end_date is not None:
            q = q.filter(StockLogEntry.occurred_at <= end_date)
        if cursor:
            q = _older_than_cursor(q, cursor)

        rows = _newest_first(q).limit(limit + 1).all()
        has_more = len(rows) > limit
        rows = rows[:limit]

        return {
            "items": [r.to_dict() for r in rows],
            "next_cursor": encode_cursor(rows[-1]) if has_more and rows else None,
            "limit": limit,
        }

    return run_read_with_retry(_op)


def get_stock_log(entry_id: int) -> dict:
    def _op():
        entry = db.session.get(StockLogEntry, entry_id)
        if entry is None:
            raise StockLogNotFoundError(f"Stock log entry {entry_id} not found", field="entry_id", value=entry_id)
        return entry.to_dict()

    return run_read_with_retry(_op)


def verify_item_history(item_id: int) -> dict:
    """
    Replay an item's entries in commit order and check them against each other
    and against the item's current quantity.

    Each entry must satisfy resulting_quantity == previous resulting_quantity
    + quantity_delta and never be negative. The starting quantity is whatever
    the item held before its first entry (registration happens outside the
    ledger).
    """
    def _op():
        item = db.session.get(Item, item_id)
        if item is None:
            raise ItemNotFoundError(f"Item {item_id} not found", field="item_id", value=item_id)

        entries = (
            db.session.query(StockLogEntry)
            .filter(StockLogEntry.item_id == item_id)
            .order_by(StockLogEntry.occurred_at.asc(), StockLogEntry.id.asc())
            .all()
        )

        mismatches = []
        if entries:
            starting = entries[0].resulting_quantity - entries[0].quantity_delta
        else:
            starting = item.quantity

        running = starting
        for entry in entries:
            expected = running + entry.quantity_delta
            if entry.resulting_quantity != expected:
                mismatches.append({
                    "entry_id": entry.id,
                    "expected": expected,
                    "recorded": entry.resulting_quantity,
                })
            if entry.resulting_quantity < 0:
                mismatches.append({
                    "entry_id": entry.id,
                    "expected": 0,
                    "recorded": entry.resulting_quantity,
                })
            running = entry.resulting_quantity

        if running != item.quantity:
            mismatches.append({
                "entry_id": entries[-1].id if entries else None,
                "expected": item.quantity,
                "recorded": running,
            })

        return {
            "item_id": item_id,
            "consistent": not mismatches,
            "entries": len(entries),
            "starting_quantity": starting,
            "current_quantity": item.quantity,
            "mismatches": mismatches,
        }

    return run_read_with_retry(_op)
