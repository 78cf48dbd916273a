# Overview: Pytest coverage for stock ledger mutations (add, remove, adjust, move).

"""
Stock Ledger Tests

Every mutation must:
1. change Item.quantity and Item.version together
2. append exactly one StockLogEntry per touched item, in the same transaction
3. leave nothing behind when it fails

Test Coverage:
- Add / Remove / Adjust, including the zero-delta adjustment
- Move (partial, full relocation, upsert into an existing destination)
- Move validations: stale location, same lab, unknown lab, other department
- expected_version guard, deadlines, append-only log
"""

from datetime import date

import pytest
from labstock.extensions import db
from labstock.models import Item, StockLogEntry, StockMove, LedgerImmutableError
from labstock.services import stock_ledger_service, stock_history_service
from labstock.services.stock_errors import (
    ConcurrentModificationError,
    DeadlineExceededError,
    InsufficientStockError,
    InvalidMoveError,
    InvalidQuantityError,
    InvalidRequestError,
    ItemNotFoundError,
    LabNotFoundError,
    StaleLocationError,
)
from labstock.services.stock_requests import AddStock, AdjustStock, MoveStock, RemoveStock


def _entries(item_id):
    return (
        db.session.query(StockLogEntry)
        .filter_by(item_id=item_id)
        .order_by(StockLogEntry.id)
        .all()
    )


class TestAddAndRemove:
    """Receiving and consuming stock."""

    def test_add_then_remove(self, db_session, item):
        item_id = item.id

        added = stock_ledger_service.add_stock(AddStock(item_id=item_id, quantity=5, actor_id="u1"))
        assert added.item["quantity"] == 15
        assert added.log_entries[0]["operation"] == "add"
        assert added.log_entries[0]["quantity_delta"] == 5
        assert added.log_entries[0]["resulting_quantity"] == 15

        removed = stock_ledger_service.remove_stock(
            RemoveStock(item_id=item_id, quantity=12, actor_id="u1", reason="experiment")
        )
        assert removed.item["quantity"] == 3
        assert removed.log_entries[0]["quantity_delta"] == -12
        assert removed.log_entries[0]["resulting_quantity"] == 3

        entries = _entries(item_id)
        assert [(e.operation, e.quantity_delta, e.resulting_quantity) for e in entries] == [
            ("add", 5, 15),
            ("remove", -12, 3),
        ]

    def test_version_increments_on_each_mutation(self, db_session, item):
        item_id = item.id
        start = item.version

        stock_ledger_service.add_stock(AddStock(item_id=item_id, quantity=1, actor_id="u1"))
        result = stock_ledger_service.add_stock(AddStock(item_id=item_id, quantity=1, actor_id="u1"))

        assert result.item["version"] == start + 2

    def test_add_records_batch_metadata_and_keeps_earliest_expiry(self, db_session, make_item):
        item = make_item(expiry_date=date(2027, 6, 1))
        item_id = item.id

        result = stock_ledger_service.add_stock(AddStock(
            item_id=item_id,
            quantity=4,
            actor_id="u1",
            unit_cost_cents=1250,
            supplier="Sigma",
            batch_number="LOT-42",
            expiry_date=date(2027, 1, 15),
        ))

        entry = result.log_entries[0]
        assert entry["unit_cost_cents"] == 1250
        assert entry["supplier"] == "Sigma"
        assert entry["batch_number"] == "LOT-42"
        assert entry["expiry_date"] == "2027-01-15"
        assert result.item["expiry_date"] == "2027-01-15"

        # A later batch never pushes the item's expiry out
        result = stock_ledger_service.add_stock(AddStock(
            item_id=item_id, quantity=1, actor_id="u1", expiry_date=date(2028, 1, 1),
        ))
        assert result.item["expiry_date"] == "2027-01-15"

    def test_remove_more_than_on_hand_is_rejected(self, db_session, item):
        item_id = item.id

        with pytest.raises(InsufficientStockError) as exc_info:
            stock_ledger_service.remove_stock(
                RemoveStock(item_id=item_id, quantity=11, actor_id="u1", reason="experiment")
            )

        assert exc_info.value.details["available"] == 10
        assert exc_info.value.details["requested"] == 11
        assert db.session.get(Item, item_id).quantity == 10
        assert _entries(item_id) == []

    def test_remove_entire_quantity_reaches_zero(self, db_session, item):
        result = stock_ledger_service.remove_stock(
            RemoveStock(item_id=item.id, quantity=10, actor_id="u1", reason="disposal")
        )
        assert result.item["quantity"] == 0
        assert result.item["stock_status"] == "out_of_stock"

    def test_unknown_item(self, db_session):
        with pytest.raises(ItemNotFoundError):
            stock_ledger_service.add_stock(AddStock(item_id=999999, quantity=1, actor_id="u1"))

    def test_soft_deleted_item_is_not_found(self, db_session, item):
        from labstock.time_utils import utcnow

        item.deleted_at = utcnow()
        db_session.commit()

        with pytest.raises(ItemNotFoundError):
            stock_ledger_service.add_stock(AddStock(item_id=item.id, quantity=1, actor_id="u1"))

    @pytest.mark.parametrize("quantity", [0, -3, 2.5, True, "4"])
    def test_non_positive_or_non_integer_quantity(self, quantity):
        with pytest.raises(InvalidQuantityError):
            AddStock(item_id=1, quantity=quantity, actor_id="u1")

    def test_remove_requires_reason(self):
        with pytest.raises(InvalidRequestError) as exc_info:
            RemoveStock(item_id=1, quantity=1, actor_id="u1", reason="  ")
        assert exc_info.value.field == "reason"

    @pytest.mark.parametrize("reason", [None, 42, ["spill"]])
    def test_missing_or_non_text_reason(self, reason):
        with pytest.raises(InvalidRequestError) as exc_info:
            AdjustStock(item_id=1, new_quantity=3, actor_id="u1", reason=reason)
        assert exc_info.value.field == "reason"

    def test_actor_is_required(self):
        with pytest.raises(InvalidRequestError) as exc_info:
            AddStock(item_id=1, quantity=1, actor_id="")
        assert exc_info.value.field == "actor_id"


class TestAdjust:
    """Absolute corrections after a physical count."""

    def test_adjust_sets_absolute_quantity(self, db_session, item):
        result = stock_ledger_service.adjust_stock(
            AdjustStock(item_id=item.id, new_quantity=7, actor_id="u1", reason="recount")
        )
        assert result.item["quantity"] == 7
        assert result.log_entries[0]["quantity_delta"] == -3
        assert result.log_entries[0]["resulting_quantity"] == 7

    def test_adjust_to_same_value_still_logs_and_bumps_version(self, db_session, item):
        item_id = item.id
        version = item.version

        result = stock_ledger_service.adjust_stock(
            AdjustStock(item_id=item_id, new_quantity=10, actor_id="u1", reason="counted, no change")
        )

        assert result.item["quantity"] == 10
        assert result.item["version"] == version + 1
        assert result.log_entries[0]["quantity_delta"] == 0
        assert result.log_entries[0]["resulting_quantity"] == 10
        assert len(_entries(item_id)) == 1

    def test_adjust_to_zero_allowed_negative_rejected(self, db_session, item):
        result = stock_ledger_service.adjust_stock(
            AdjustStock(item_id=item.id, new_quantity=0, actor_id="u1", reason="spill")
        )
        assert result.item["quantity"] == 0

        with pytest.raises(InvalidQuantityError):
            AdjustStock(item_id=item.id, new_quantity=-1, actor_id="u1", reason="spill")


class TestMove:
    """Transfers between labs (atomic mode)."""

    def test_partial_move_creates_destination_record(self, db_session, make_item, lab_b):
        source = make_item(quantity=10, expiry_date=date(2027, 3, 1))
        source_id = source.id

        result = stock_ledger_service.move_stock(
            MoveStock(item_id=source_id, target_lab_id=lab_b.id, quantity=4, actor_id="u1")
        )

        assert result.item["quantity"] == 6
        assert result.target_item["quantity"] == 4
        assert result.target_item["lab_id"] == lab_b.id
        assert result.target_item["name"] == "Ethanol 96%"
        assert result.target_item["minimum_quantity"] == 3
        assert result.target_item["expiry_date"] == "2027-03-01"

        out_entry, in_entry = result.log_entries
        assert out_entry["quantity_delta"] == -4
        assert in_entry["quantity_delta"] == 4
        assert out_entry["move_id"] == in_entry["move_id"] == result.move_id

        move = db.session.query(StockMove).filter_by(move_id=result.move_id).one()
        assert move.status == "COMPLETED"
        assert move.target_item_id == result.target_item["id"]

    def test_move_conserves_total_quantity(self, db_session, make_item, lab_a, lab_b):
        source = make_item(quantity=10)
        existing = make_item(lab=lab_b, quantity=5)
        before = source.quantity + existing.quantity

        result = stock_ledger_service.move_stock(
            MoveStock(item_id=source.id, target_lab_id=lab_b.id, quantity=7, actor_id="u1")
        )

        assert result.target_item["id"] == existing.id
        after = db.session.get(Item, source.id).quantity + db.session.get(Item, existing.id).quantity
        assert after == before
        assert db.session.query(Item).filter_by(lab_id=lab_b.id).count() == 1

    def test_existing_destination_takes_earlier_expiry(self, db_session, make_item, lab_b):
        source = make_item(expiry_date=date(2027, 1, 1))
        target = make_item(lab=lab_b, quantity=2, expiry_date=date(2027, 9, 1))

        result = stock_ledger_service.move_stock(
            MoveStock(item_id=source.id, target_lab_id=lab_b.id, quantity=1, actor_id="u1")
        )

        assert result.target_item["id"] == target.id
        assert result.target_item["expiry_date"] == "2027-01-01"

    def test_full_relocation_keeps_source_at_zero(self, db_session, item, lab_a, lab_b):
        result = stock_ledger_service.move_stock(
            MoveStock(item_id=item.id, target_lab_id=lab_b.id, quantity=10, actor_id="u1")
        )

        assert result.item["quantity"] == 0
        assert result.item["lab_id"] == lab_a.id
        assert result.target_item["quantity"] == 10
        assert stock_history_service.verify_item_history(item.id)["consistent"]

    def test_different_type_is_a_different_destination(self, db_session, make_item, lab_b):
        source = make_item(item_type="consumable")
        other = make_item(lab=lab_b, item_type="non_consumable", quantity=1)

        result = stock_ledger_service.move_stock(
            MoveStock(item_id=source.id, target_lab_id=lab_b.id, quantity=2, actor_id="u1")
        )

        assert result.target_item["id"] != other.id
        assert db.session.get(Item, other.id).quantity == 1

    def test_stale_source_lab_is_rejected(self, db_session, item, lab_a, lab_b):
        with pytest.raises(StaleLocationError) as exc_info:
            stock_ledger_service.move_stock(MoveStock(
                item_id=item.id, target_lab_id=lab_a.id, source_lab_id=lab_b.id, quantity=1, actor_id="u1",
            ))
        assert exc_info.value.details["current_lab_id"] == lab_a.id

    def test_move_to_same_lab_is_invalid(self, db_session, item, lab_a):
        with pytest.raises(InvalidMoveError):
            stock_ledger_service.move_stock(
                MoveStock(item_id=item.id, target_lab_id=lab_a.id, quantity=1, actor_id="u1")
            )

    def test_unknown_target_lab(self, db_session, item):
        with pytest.raises(LabNotFoundError):
            stock_ledger_service.move_stock(
                MoveStock(item_id=item.id, target_lab_id=999999, quantity=1, actor_id="u1")
            )

    def test_inactive_target_lab(self, db_session, item, lab_b):
        lab_b.is_active = False
        db_session.commit()

        with pytest.raises(InvalidMoveError):
            stock_ledger_service.move_stock(
                MoveStock(item_id=item.id, target_lab_id=lab_b.id, quantity=1, actor_id="u1")
            )

    def test_cross_department_move_rejected_by_default(self, db_session, item, foreign_lab):
        with pytest.raises(InvalidMoveError):
            stock_ledger_service.move_stock(
                MoveStock(item_id=item.id, target_lab_id=foreign_lab.id, quantity=1, actor_id="u1")
            )
        assert db.session.get(Item, item.id).quantity == 10

    def test_cross_department_move_allowed_when_configured(self, app, monkeypatch, db_session, item, foreign_lab):
        monkeypatch.setitem(app.config, "LEDGER_ALLOW_CROSS_DEPARTMENT_MOVES", True)

        result = stock_ledger_service.move_stock(
            MoveStock(item_id=item.id, target_lab_id=foreign_lab.id, quantity=1, actor_id="u1")
        )
        assert result.target_item["lab_id"] == foreign_lab.id

    def test_insufficient_stock_for_move(self, db_session, item, lab_b):
        with pytest.raises(InsufficientStockError):
            stock_ledger_service.move_stock(
                MoveStock(item_id=item.id, target_lab_id=lab_b.id, quantity=11, actor_id="u1")
            )
        assert db.session.query(Item).filter_by(lab_id=lab_b.id).count() == 0

    def test_failure_after_debit_rolls_back_everything(self, monkeypatch, db_session, item, lab_b):
        item_id = item.id

        def broken_credit(*args, **kwargs):
            raise RuntimeError("destination write failed")

        monkeypatch.setattr(stock_ledger_service, "_credit_target", broken_credit)

        with pytest.raises(RuntimeError):
            stock_ledger_service.move_stock(
                MoveStock(item_id=item_id, target_lab_id=lab_b.id, quantity=4, actor_id="u1")
            )

        assert db.session.get(Item, item_id).quantity == 10
        assert _entries(item_id) == []
        assert db.session.query(StockMove).count() == 0


class TestGuards:
    """expected_version, deadlines and the append-only log."""

    def test_expected_version_mismatch(self, db_session, item):
        stale = item.version
        stock_ledger_service.add_stock(AddStock(item_id=item.id, quantity=1, actor_id="u1"))

        with pytest.raises(ConcurrentModificationError) as exc_info:
            stock_ledger_service.remove_stock(RemoveStock(
                item_id=item.id, quantity=1, actor_id="u1", reason="use", expected_version=stale,
            ))
        assert exc_info.value.details["current_version"] == stale + 1
        assert db.session.get(Item, item.id).quantity == 11

    def test_expected_version_match(self, db_session, item):
        result = stock_ledger_service.adjust_stock(AdjustStock(
            item_id=item.id, new_quantity=4, actor_id="u1", reason="recount", expected_version=item.version,
        ))
        assert result.item["quantity"] == 4

    def test_expired_deadline_leaves_no_mutation(self, db_session, item):
        item_id = item.id

        with pytest.raises(DeadlineExceededError):
            stock_ledger_service.add_stock(AddStock(item_id=item_id, quantity=5, actor_id="u1"), timeout=0)

        assert db.session.get(Item, item_id).quantity == 10
        assert _entries(item_id) == []

    def test_deadline_checked_before_commit(self, monkeypatch, db_session, item):
        from labstock.services import concurrency

        item_id = item.id
        calls = {"n": 0}
        real_check = concurrency.check_deadline

        def expire_on_second_check(deadline):
            calls["n"] += 1
            if calls["n"] >= 2:
                raise DeadlineExceededError("operation deadline expired before commit", field="timeout")
            real_check(deadline)

        monkeypatch.setattr(concurrency, "check_deadline", expire_on_second_check)

        with pytest.raises(DeadlineExceededError):
            stock_ledger_service.add_stock(AddStock(item_id=item_id, quantity=5, actor_id="u1"), timeout=30)

        assert db.session.get(Item, item_id).quantity == 10
        assert _entries(item_id) == []

    def test_log_entries_cannot_be_updated(self, db_session, item):
        stock_ledger_service.add_stock(AddStock(item_id=item.id, quantity=1, actor_id="u1"))
        entry = _entries(item.id)[0]

        entry.quantity_delta = 100
        with pytest.raises(LedgerImmutableError):
            db_session.flush()
        db_session.rollback()

    def test_log_entries_cannot_be_deleted(self, db_session, item):
        stock_ledger_service.add_stock(AddStock(item_id=item.id, quantity=1, actor_id="u1"))
        entry = _entries(item.id)[0]

        db_session.delete(entry)
        with pytest.raises(LedgerImmutableError):
            db_session.flush()
        db_session.rollback()

    def test_apply_operation_dispatches_by_type(self, db_session, item):
        result = stock_ledger_service.apply_operation(
            AdjustStock(item_id=item.id, new_quantity=2, actor_id="u1", reason="recount")
        )
        assert result.log_entries[0]["operation"] == "adjust"

        with pytest.raises(InvalidRequestError):
            stock_ledger_service.apply_operation(object())
