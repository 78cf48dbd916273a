# backend/labstock/services/stock_ledger_service.py
"""
Stock ledger: the only writer of Item.quantity.

Every operation runs as one unit inside run_with_retry:
1. read (and lock) the item(s), validating the request against current state
2. write the new quantity; the UPDATE is conditioned on the version read
3. append exactly one StockLogEntry per touched item
4. snapshot the result and commit

A version conflict rolls the whole attempt back and re-runs it from step 1,
so a retried operation always recomputes from fresh state. Validation
failures raise before anything is written.

MOVE MODES (config STOCK_MOVE_MODE):
- atomic: both items, both entries and the StockMove row in one transaction
- saga: debit commits first (StockMove DEBITED), then the credit commits
  (COMPLETED); a failed credit is undone by compensate_move (COMPENSATED)
"""
from __future__ import annotations

from datetime import datetime, timedelta
from uuid import uuid4

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Item, Lab, StockLogEntry, StockMove
from ..models.stock import (
    MOVE_STATUS_COMPENSATED,
    MOVE_STATUS_COMPLETED,
    MOVE_STATUS_DEBITED,
    OPERATION_ADD,
    OPERATION_ADJUST,
    OPERATION_MOVE,
    OPERATION_MOVE_FAILED,
    OPERATION_REMOVE,
)
from labstock.time_utils import utcnow
from .concurrency import (
    commit_ledger,
    deadline_from_timeout,
    lock_for_update,
    run_read_with_retry,
    run_with_retry,
)
from .stock_errors import (
    ConcurrentModificationError,
    InsufficientStockError,
    InvalidMoveError,
    InvalidRequestError,
    ItemNotFoundError,
    LabNotFoundError,
    MoveFailedError,
    MoveNotFoundError,
    StaleLocationError,
)
from .stock_requests import AddStock, AdjustStock, MoveStock, RemoveStock, StockResult


MOVE_MODE_ATOMIC = "atomic"
MOVE_MODE_SAGA = "saga"


# =============================================================================
# Store primitives
# =============================================================================

def _load_item(item_id: int, *, lock: bool = True, include_deleted: bool = False) -> Item:
    query = db.session.query(Item).filter_by(id=item_id).populate_existing()
    if lock:
        query = lock_for_update(query)
    item = query.first()
    if item is None or (item.is_deleted and not include_deleted):
        raise ItemNotFoundError(f"Item {item_id} not found", field="item_id", value=item_id)
    return item


def _lock_items(item_ids: list[int]) -> dict[int, Item]:
    """Lock several items in ascending id order so opposite moves cannot deadlock."""
    query = (
        db.session.query(Item)
        .filter(Item.id.in_(sorted(set(item_ids))))
        .order_by(Item.id)
        .populate_existing()
    )
    return {item.id: item for item in lock_for_update(query).all()}


def _load_move(move_id: str) -> StockMove:
    query = db.session.query(StockMove).filter_by(move_id=move_id).populate_existing()
    move = lock_for_update(query).first()
    if move is None:
        raise MoveNotFoundError(f"Move {move_id} not found", field="move_id", value=move_id)
    return move


def _find_target_item(source: Item, target_lab_id: int) -> Item | None:
    """Same catalog identity (name, type) in the target lab."""
    return (
        db.session.query(Item)
        .filter(
            Item.lab_id == target_lab_id,
            Item.name == source.name,
            Item.type == source.type,
            Item.deleted_at.is_(None),
        )
        .order_by(Item.id)
        .first()
    )


def _touch(item: Item) -> None:
    # Guarantees an UPDATE (and a version bump) even for zero-delta adjustments.
    item.updated_at = utcnow()


def _next_occurred_at(item_id: int) -> datetime:
    """Server-assigned timestamp, strictly after the item's latest entry."""
    last = (
        db.session.query(func.max(StockLogEntry.occurred_at))
        .filter(StockLogEntry.item_id == item_id)
        .scalar()
    )
    now = utcnow()
    if last is not None and now <= last:
        now = last + timedelta(microseconds=1)
    return now


def _append_entry(item: Item, operation: str, quantity_delta: int, *, actor_id: str, **fields) -> StockLogEntry:
    entry = StockLogEntry(
        item_id=item.id,
        lab_id=item.lab_id,
        operation=operation,
        quantity_delta=quantity_delta,
        resulting_quantity=item.quantity,
        actor_id=actor_id,
        occurred_at=_next_occurred_at(item.id),
        **fields,
    )
    db.session.add(entry)
    return entry


def _check_expected_version(item: Item, expected_version: int | None) -> None:
    if expected_version is not None and item.version != expected_version:
        raise ConcurrentModificationError(
            f"Item {item.id} is at version {item.version}, expected {expected_version}",
            field="expected_version",
            value=expected_version,
            current_version=item.version,
        )


def _require_stock(item: Item, quantity: int) -> None:
    if quantity > item.quantity:
        raise InsufficientStockError(
            f"Insufficient stock for item {item.id}. On-hand: {item.quantity}, requested: {quantity}",
            field="quantity",
            value=quantity,
            available=item.quantity,
            requested=quantity,
        )


def _earlier_expiry(current, incoming):
    if incoming is None:
        return current
    if current is None or incoming < current:
        return incoming
    return current


# =============================================================================
# Add / Remove / Adjust
# =============================================================================

def add_stock(request: AddStock, *, timeout: float | None = None) -> StockResult:
    """
    Increase an item's quantity.

    Batch metadata (unit cost, supplier, batch number, expiry) is recorded on
    the log entry. The item keeps the earliest known expiry date.
    """
    deadline = deadline_from_timeout(timeout)

    def _op():
        item = _load_item(request.item_id)
        _check_expected_version(item, request.expected_version)

        item.quantity = item.quantity + request.quantity
        item.expiry_date = _earlier_expiry(item.expiry_date, request.expiry_date)
        _touch(item)

        entry = _append_entry(
            item,
            OPERATION_ADD,
            request.quantity,
            actor_id=request.actor_id,
            reason=request.reason,
            notes=request.notes,
            unit_cost_cents=request.unit_cost_cents,
            supplier=request.supplier,
            batch_number=request.batch_number,
            expiry_date=request.expiry_date,
        )
        db.session.flush()

        result = StockResult(item=item.to_dict(), log_entries=[entry.to_dict()])
        commit_ledger(deadline)
        return result

    return run_with_retry(_op, deadline=deadline)


def remove_stock(request: RemoveStock, *, timeout: float | None = None) -> StockResult:
    """Decrease an item's quantity; all-or-nothing, never below zero."""
    deadline = deadline_from_timeout(timeout)

    def _op():
        item = _load_item(request.item_id)
        _check_expected_version(item, request.expected_version)
        _require_stock(item, request.quantity)

        item.quantity = item.quantity - request.quantity
        _touch(item)

        entry = _append_entry(
            item,
            OPERATION_REMOVE,
            -request.quantity,
            actor_id=request.actor_id,
            reason=request.reason,
            notes=request.notes,
        )
        db.session.flush()

        result = StockResult(item=item.to_dict(), log_entries=[entry.to_dict()])
        commit_ledger(deadline)
        return result

    return run_with_retry(_op, deadline=deadline)


def adjust_stock(request: AdjustStock, *, timeout: float | None = None) -> StockResult:
    """
    Set an item's quantity to an absolute value (physical count correction).

    A zero delta is still recorded: "counted, no change" is an audit event.
    """
    deadline = deadline_from_timeout(timeout)

    def _op():
        item = _load_item(request.item_id)
        _check_expected_version(item, request.expected_version)

        delta = request.new_quantity - item.quantity
        item.quantity = request.new_quantity
        _touch(item)

        entry = _append_entry(
            item,
            OPERATION_ADJUST,
            delta,
            actor_id=request.actor_id,
            reason=request.reason,
            notes=request.notes,
        )
        db.session.flush()

        result = StockResult(item=item.to_dict(), log_entries=[entry.to_dict()])
        commit_ledger(deadline)
        return result

    return run_with_retry(_op, deadline=deadline)


# =============================================================================
# Move
# =============================================================================

def _validate_move(source: Item, request: MoveStock) -> Lab:
    if request.source_lab_id is not None and request.source_lab_id != source.lab_id:
        raise StaleLocationError(
            f"Item {source.id} is in lab {source.lab_id}, not {request.source_lab_id}",
            field="source_lab_id",
            value=request.source_lab_id,
            current_lab_id=source.lab_id,
        )

    target_lab = db.session.get(Lab, request.target_lab_id)
    if target_lab is None:
        raise LabNotFoundError(
            f"Lab {request.target_lab_id} not found",
            field="target_lab_id",
            value=request.target_lab_id,
        )
    if not target_lab.is_active:
        raise InvalidMoveError(
            f"Lab {target_lab.id} is inactive",
            field="target_lab_id",
            value=target_lab.id,
        )
    if target_lab.id == source.lab_id:
        raise InvalidMoveError(
            "Cannot move stock to the lab it is already in",
            field="target_lab_id",
            value=target_lab.id,
        )

    if not current_app.config.get("LEDGER_ALLOW_CROSS_DEPARTMENT_MOVES", False):
        source_lab = db.session.get(Lab, source.lab_id)
        if source_lab.department_id != target_lab.department_id:
            raise InvalidMoveError(
                "Cannot move items between different departments",
                field="target_lab_id",
                value=target_lab.id,
                source_department_id=source_lab.department_id,
                target_department_id=target_lab.department_id,
            )

    _check_expected_version(source, request.expected_version)
    _require_stock(source, request.quantity)
    return target_lab


def _debit_source(source: Item, quantity: int, move_id: str, *, actor_id: str, reason, notes) -> StockLogEntry:
    source.quantity = source.quantity - quantity
    _touch(source)
    return _append_entry(
        source,
        OPERATION_MOVE,
        -quantity,
        actor_id=actor_id,
        reason=reason,
        notes=notes,
        move_id=move_id,
    )


def _credit_target(
    source: Item,
    target: Item | None,
    target_lab_id: int,
    quantity: int,
    move_id: str,
    *,
    actor_id: str,
    reason,
    notes,
) -> tuple[Item, StockLogEntry]:
    """Increment the destination holding, creating it from the source if absent."""
    if target is None:
        target = Item(
            lab_id=target_lab_id,
            name=source.name,
            type=source.type,
            unit=source.unit,
            description=source.description,
            minimum_quantity=source.minimum_quantity,
            expiry_date=source.expiry_date,
            quantity=quantity,
        )
        db.session.add(target)
        db.session.flush()
    else:
        target.quantity = target.quantity + quantity
        target.expiry_date = _earlier_expiry(target.expiry_date, source.expiry_date)
        _touch(target)

    entry = _append_entry(
        target,
        OPERATION_MOVE,
        quantity,
        actor_id=actor_id,
        reason=reason,
        notes=notes,
        move_id=move_id,
    )
    return target, entry


def move_stock(request: MoveStock, *, timeout: float | None = None) -> StockResult:
    """
    Transfer quantity from the source item's lab to another lab.

    Full relocation is the case quantity == source.quantity; the source
    record stays in its lab at zero so its history remains intact.
    """
    mode = current_app.config.get("STOCK_MOVE_MODE", MOVE_MODE_ATOMIC)
    if mode == MOVE_MODE_SAGA:
        return _move_stock_saga(request, timeout=timeout)
    if mode != MOVE_MODE_ATOMIC:
        raise InvalidRequestError(f"Unknown STOCK_MOVE_MODE {mode!r}", field="STOCK_MOVE_MODE", value=mode)
    return _move_stock_atomic(request, timeout=timeout)


def _move_stock_atomic(request: MoveStock, *, timeout: float | None = None) -> StockResult:
    deadline = deadline_from_timeout(timeout)
    move_id = uuid4().hex

    def _op():
        source = _load_item(request.item_id, lock=False)
        candidate = _find_target_item(source, request.target_lab_id)

        # Re-read both rows under lock before validating against them
        locked = _lock_items([source.id] + ([candidate.id] if candidate else []))
        source = locked.get(source.id)
        if source is None or source.is_deleted:
            raise ItemNotFoundError(f"Item {request.item_id} not found", field="item_id", value=request.item_id)
        target = locked.get(candidate.id) if candidate else None

        target_lab = _validate_move(source, request)

        out_entry = _debit_source(
            source,
            request.quantity,
            move_id,
            actor_id=request.actor_id,
            reason=request.reason,
            notes=request.notes,
        )
        target, in_entry = _credit_target(
            source,
            target,
            target_lab.id,
            request.quantity,
            move_id,
            actor_id=request.actor_id,
            reason=request.reason,
            notes=request.notes,
        )

        now = utcnow()
        move = StockMove(
            move_id=move_id,
            source_item_id=source.id,
            target_item_id=target.id,
            source_lab_id=source.lab_id,
            target_lab_id=target_lab.id,
            quantity=request.quantity,
            actor_id=request.actor_id,
            reason=request.reason,
            notes=request.notes,
            status=MOVE_STATUS_COMPLETED,
            created_at=now,
            completed_at=now,
        )
        db.session.add(move)
        db.session.flush()

        result = StockResult(
            item=source.to_dict(),
            log_entries=[out_entry.to_dict(), in_entry.to_dict()],
            target_item=target.to_dict(),
            move_id=move_id,
            move=move.to_dict(),
        )
        commit_ledger(deadline)
        return result

    return run_with_retry(_op, deadline=deadline)


def _move_stock_saga(request: MoveStock, *, timeout: float | None = None) -> StockResult:
    """
    Two-step move for stores that only guarantee single-record atomicity.

    The deadline applies to the debit only; once stock has left the source,
    the move is driven to COMPLETED or COMPENSATED.
    """
    deadline = deadline_from_timeout(timeout)
    move_id = uuid4().hex

    def _debit():
        source = _load_item(request.item_id)
        target_lab = _validate_move(source, request)

        out_entry = _debit_source(
            source,
            request.quantity,
            move_id,
            actor_id=request.actor_id,
            reason=request.reason,
            notes=request.notes,
        )
        move = StockMove(
            move_id=move_id,
            source_item_id=source.id,
            source_lab_id=source.lab_id,
            target_lab_id=target_lab.id,
            quantity=request.quantity,
            actor_id=request.actor_id,
            reason=request.reason,
            notes=request.notes,
            status=MOVE_STATUS_DEBITED,
            created_at=utcnow(),
        )
        db.session.add(move)
        db.session.flush()

        snapshot = (source.to_dict(), out_entry.to_dict())
        commit_ledger(deadline)
        return snapshot

    source_snapshot, out_snapshot = run_with_retry(_debit, deadline=deadline)

    try:
        target_snapshot, in_snapshot, move_snapshot = run_with_retry(lambda: _saga_credit(move_id))
    except Exception as exc:
        current_app.logger.warning("Move %s credit step failed; compensating", move_id, exc_info=True)
        failure_reason = f"{getattr(exc, 'kind', type(exc).__name__)}: {exc}"[:255]
        try:
            compensate_move(move_id, failure_reason=failure_reason)
        except InvalidMoveError:
            # A commit can report failure after it has landed
            completed = run_read_with_retry(lambda: _completed_credit(move_id))
            if completed is None:
                raise
            current_app.logger.info("Move %s credit had committed; reporting it as completed", move_id)
            target_snapshot, in_snapshot, move_snapshot = completed
        else:
            raise MoveFailedError(
                f"Move {move_id} failed and the source debit was reversed",
                field="target_lab_id",
                value=request.target_lab_id,
                move_id=move_id,
                cause=getattr(exc, "kind", type(exc).__name__),
            ) from exc

    return StockResult(
        item=source_snapshot,
        log_entries=[out_snapshot, in_snapshot],
        target_item=target_snapshot,
        move_id=move_id,
        move=move_snapshot,
    )


def _saga_credit(move_id: str):
    move = _load_move(move_id)
    if move.status != MOVE_STATUS_DEBITED:
        raise InvalidMoveError(
            f"Move {move_id} is {move.status}; credit requires {MOVE_STATUS_DEBITED}",
            field="move_id",
            value=move_id,
        )

    source = _load_item(move.source_item_id, lock=False, include_deleted=True)
    candidate = _find_target_item(source, move.target_lab_id)
    target = _lock_items([candidate.id]).get(candidate.id) if candidate else None

    target, in_entry = _credit_target(
        source,
        target,
        move.target_lab_id,
        move.quantity,
        move_id,
        actor_id=move.actor_id,
        reason=move.reason,
        notes=move.notes,
    )

    move.target_item_id = target.id
    move.status = MOVE_STATUS_COMPLETED
    move.completed_at = utcnow()
    db.session.flush()

    snapshot = (target.to_dict(), in_entry.to_dict(), move.to_dict())
    commit_ledger()
    return snapshot


def _completed_credit(move_id: str):
    """Snapshot of a COMPLETED move's credit, or None if the move did not complete."""
    move = db.session.query(StockMove).filter_by(move_id=move_id).populate_existing().first()
    if move is None or move.status != MOVE_STATUS_COMPLETED:
        return None
    target = db.session.get(Item, move.target_item_id, populate_existing=True)
    in_entry = (
        db.session.query(StockLogEntry)
        .filter_by(move_id=move_id, item_id=move.target_item_id, operation=OPERATION_MOVE)
        .order_by(StockLogEntry.id.desc())
        .first()
    )
    return target.to_dict(), in_entry.to_dict(), move.to_dict()


def compensate_move(
    move_id: str,
    *,
    actor_id: str | None = None,
    failure_reason: str | None = None,
) -> StockResult:
    """
    Reverse the debit of a move whose credit never landed.

    Idempotent: a COMPENSATED move is returned unchanged, so retrying the
    compensation can never credit the source twice. COMPLETED moves are
    refused; reversing a finished transfer is a new move, not a compensation.
    """
    def _op():
        move = _load_move(move_id)

        if move.status == MOVE_STATUS_COMPENSATED:
            source = _load_item(move.source_item_id, lock=False, include_deleted=True)
            return StockResult(item=source.to_dict(), log_entries=[], move_id=move_id, move=move.to_dict())

        if move.status != MOVE_STATUS_DEBITED:
            raise InvalidMoveError(
                f"Move {move_id} is {move.status} and cannot be compensated",
                field="move_id",
                value=move_id,
                status=move.status,
            )

        source = _load_item(move.source_item_id, include_deleted=True)
        source.quantity = source.quantity + move.quantity
        _touch(source)

        entry = _append_entry(
            source,
            OPERATION_MOVE_FAILED,
            move.quantity,
            actor_id=actor_id or move.actor_id,
            reason=f"Compensation for move {move_id}",
            notes=failure_reason,
            move_id=move_id,
        )

        move.status = MOVE_STATUS_COMPENSATED
        move.compensated_at = utcnow()
        move.failure_reason = failure_reason
        db.session.flush()

        result = StockResult(
            item=source.to_dict(),
            log_entries=[entry.to_dict()],
            move_id=move_id,
            move=move.to_dict(),
        )
        commit_ledger()
        current_app.logger.info("Move %s compensated (%d units returned)", move_id, move.quantity)
        return result

    return run_with_retry(_op)


def list_pending_moves(older_than: timedelta | None = None) -> list[dict]:
    """Saga moves stuck between debit and credit (e.g. after a crash)."""
    def _op():
        q = db.session.query(StockMove).filter(StockMove.status == MOVE_STATUS_DEBITED)
        if older_than is not None:
            q = q.filter(StockMove.created_at <= utcnow() - older_than)
        return [m.to_dict() for m in q.order_by(StockMove.created_at, StockMove.id).all()]

    return run_read_with_retry(_op)


# =============================================================================
# Dispatch
# =============================================================================

def apply_operation(request, *, timeout: float | None = None) -> StockResult:
    """Run one typed operation request."""
    if isinstance(request, AddStock):
        return add_stock(request, timeout=timeout)
    if isinstance(request, RemoveStock):
        return remove_stock(request, timeout=timeout)
    if isinstance(request, MoveStock):
        return move_stock(request, timeout=timeout)
    if isinstance(request, AdjustStock):
        return adjust_stock(request, timeout=timeout)
    raise InvalidRequestError(
        f"Unsupported stock operation {type(request).__name__}",
        field="operation",
        value=type(request).__name__,
    )
