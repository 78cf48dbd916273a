from __future__ import annotations

from datetime import date

from sqlalchemy import event

from ..extensions import db
from labstock.time_utils import to_utc_z, to_iso_date

"""
Stock Ledger Invariants (authoritative)

- Item.quantity is never negative (CHECK constraint + ledger validation).
- Item.version increments on every successful quantity mutation; every UPDATE
  is conditioned on the version that was read (SQLAlchemy version_id_col).
- StockLogEntry rows are append-only: exactly one entry per item per mutation,
  written in the same transaction as the quantity change.
- Per item, occurred_at is strictly increasing in commit order.
"""

ITEM_TYPE_CONSUMABLE = "consumable"
ITEM_TYPE_NON_CONSUMABLE = "non_consumable"
ITEM_TYPE_FIXED = "fixed"
ITEM_TYPES = (ITEM_TYPE_CONSUMABLE, ITEM_TYPE_NON_CONSUMABLE, ITEM_TYPE_FIXED)

STOCK_STATUS_AVAILABLE = "available"
STOCK_STATUS_LOW = "low_stock"
STOCK_STATUS_OUT = "out_of_stock"
STOCK_STATUS_EXPIRED = "expired"

OPERATION_ADD = "add"
OPERATION_REMOVE = "remove"
OPERATION_MOVE = "move"
OPERATION_ADJUST = "adjust"
OPERATION_MOVE_FAILED = "move_failed"
OPERATIONS = (OPERATION_ADD, OPERATION_REMOVE, OPERATION_MOVE, OPERATION_ADJUST, OPERATION_MOVE_FAILED)

MOVE_STATUS_DEBITED = "DEBITED"
MOVE_STATUS_COMPLETED = "COMPLETED"
MOVE_STATUS_COMPENSATED = "COMPENSATED"


class LedgerImmutableError(RuntimeError):
    """Raised when code tries to rewrite or delete a persisted ledger entry."""


class Item(db.Model):
    """
    A stock holding of one item type in one lab.

    Quantity is the authoritative current balance; the ledger is the only
    writer. Registration and soft deletion (deleted_at) happen elsewhere.

    CATALOG IDENTITY:
    (name, type) within a lab. A move into a lab that already holds a
    non-deleted item with the same identity increments that record instead
    of creating a new one. A partial unique index keeps at most one live
    record per identity in a lab.
    """
    __tablename__ = "items"
    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_items_quantity_non_negative"),
        db.CheckConstraint(
            "minimum_quantity IS NULL OR minimum_quantity >= 0",
            name="ck_items_minimum_quantity_non_negative",
        ),
        db.Index(
            "uq_items_lab_name_type_active",
            "lab_id",
            "name",
            "type",
            unique=True,
            sqlite_where=db.text("deleted_at IS NULL"),
            postgresql_where=db.text("deleted_at IS NULL"),
        ),
        db.Index("ix_items_expiry_date", "expiry_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    lab_id = db.Column(db.Integer, db.ForeignKey("labs.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    type = db.Column(db.String(32), nullable=False, default=ITEM_TYPE_CONSUMABLE)
    unit = db.Column(db.String(32), nullable=False, default="unit")
    description = db.Column(db.Text, nullable=True)

    quantity = db.Column(db.Integer, nullable=False, default=0)
    minimum_quantity = db.Column(db.Integer, nullable=True)
    expiry_date = db.Column(db.Date, nullable=True)

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    lab = db.relationship("Lab", backref=db.backref("items", lazy=True))
    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Item id={self.id} name={self.name!r} lab_id={self.lab_id} quantity={self.quantity}>"

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def is_low_stock(self) -> bool:
        return self.minimum_quantity is not None and self.quantity <= self.minimum_quantity

    def stock_status(self, today: date | None = None) -> str:
        """Derived status; expiry wins over quantity-based states."""
        today = today or date.today()
        if self.expiry_date is not None and self.expiry_date < today:
            return STOCK_STATUS_EXPIRED
        if self.quantity == 0:
            return STOCK_STATUS_OUT
        if self.is_low_stock():
            return STOCK_STATUS_LOW
        return STOCK_STATUS_AVAILABLE

    def to_dict(self, today: date | None = None) -> dict:
        return {
            "id": self.id,
            "lab_id": self.lab_id,
            "name": self.name,
            "type": self.type,
            "unit": self.unit,
            "description": self.description,
            "quantity": self.quantity,
            "minimum_quantity": self.minimum_quantity,
            "expiry_date": to_iso_date(self.expiry_date),
            "stock_status": self.stock_status(today),
            "version": self.version,
            "deleted_at": to_utc_z(self.deleted_at) if self.deleted_at else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockLogEntry(db.Model):
    """
    Immutable audit record of one quantity change on one item.

    resulting_quantity lets history be read without replaying deltas;
    move and move_failed entries share the move_id of their StockMove.
    """
    __tablename__ = "stock_log_entries"
    __table_args__ = (
        db.Index("ix_stock_log_item_occurred", "item_id", "occurred_at", "id"),
        db.Index("ix_stock_log_lab_occurred", "lab_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    item_id = db.Column(db.Integer, db.ForeignKey("items.id"), nullable=False, index=True)
    lab_id = db.Column(db.Integer, db.ForeignKey("labs.id"), nullable=False, index=True)

    operation = db.Column(db.String(16), nullable=False, index=True)
    quantity_delta = db.Column(db.Integer, nullable=False)
    resulting_quantity = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    actor_id = db.Column(db.String(64), nullable=False, index=True)

    move_id = db.Column(db.String(32), nullable=True, index=True)

    # Batch metadata supplied with AddStock
    unit_cost_cents = db.Column(db.Integer, nullable=True)
    supplier = db.Column(db.String(255), nullable=True)
    batch_number = db.Column(db.String(64), nullable=True)
    expiry_date = db.Column(db.Date, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    item = db.relationship("Item", backref=db.backref("stock_logs", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "lab_id": self.lab_id,
            "operation": self.operation,
            "quantity_delta": self.quantity_delta,
            "resulting_quantity": self.resulting_quantity,
            "reason": self.reason,
            "notes": self.notes,
            "actor_id": self.actor_id,
            "move_id": self.move_id,
            "unit_cost_cents": self.unit_cost_cents,
            "supplier": self.supplier,
            "batch_number": self.batch_number,
            "expiry_date": to_iso_date(self.expiry_date),
            "occurred_at": to_utc_z(self.occurred_at, keep_microseconds=True),
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(StockLogEntry, "before_update")
def _refuse_log_update(mapper, connection, target):
    raise LedgerImmutableError(f"stock log entry {target.id} is append-only")


@event.listens_for(StockLogEntry, "before_delete")
def _refuse_log_delete(mapper, connection, target):
    raise LedgerImmutableError(f"stock log entry {target.id} cannot be deleted")


class StockMove(db.Model):
    """
    Correlation record for one move between labs.

    LIFECYCLE:
    - atomic mode: created directly as COMPLETED with both ledger entries
    - saga mode: DEBITED after the source debit commits, then
      COMPLETED once the destination credit commits, or
      COMPENSATED after the debit has been reversed
    """
    __tablename__ = "stock_moves"
    __table_args__ = (
        db.UniqueConstraint("move_id", name="uq_stock_moves_move_id"),
        db.Index("ix_stock_moves_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    move_id = db.Column(db.String(32), nullable=False)

    source_item_id = db.Column(db.Integer, db.ForeignKey("items.id"), nullable=False, index=True)
    target_item_id = db.Column(db.Integer, db.ForeignKey("items.id"), nullable=True, index=True)
    source_lab_id = db.Column(db.Integer, db.ForeignKey("labs.id"), nullable=False)
    target_lab_id = db.Column(db.Integer, db.ForeignKey("labs.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    actor_id = db.Column(db.String(64), nullable=False)
    reason = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, index=True)
    failure_reason = db.Column(db.String(255), nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    compensated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "move_id": self.move_id,
            "source_item_id": self.source_item_id,
            "target_item_id": self.target_item_id,
            "source_lab_id": self.source_lab_id,
            "target_lab_id": self.target_lab_id,
            "quantity": self.quantity,
            "actor_id": self.actor_id,
            "reason": self.reason,
            "notes": self.notes,
            "status": self.status,
            "failure_reason": self.failure_reason,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "compensated_at": to_utc_z(self.compensated_at) if self.compensated_at else None,
        }
