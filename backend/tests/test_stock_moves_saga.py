# Overview: Pytest coverage for two-step (saga) moves and their compensation.

"""
Saga Move Tests

In saga mode a move commits the source debit first (StockMove DEBITED) and
the destination credit second (COMPLETED). When the credit cannot be
applied the debit is reversed with a move_failed entry (COMPENSATED).

Compensation must be idempotent: running it again never credits twice.
"""

import pytest
from labstock.extensions import db
from labstock.models import Item, StockLogEntry, StockMove
from labstock.services import stock_history_service, stock_ledger_service
from labstock.services.stock_errors import (
    InvalidMoveError,
    MoveFailedError,
    MoveNotFoundError,
    StorageUnavailableError,
)
from labstock.services.stock_requests import MoveStock


@pytest.fixture
def saga_mode(app, monkeypatch):
    monkeypatch.setitem(app.config, "STOCK_MOVE_MODE", "saga")


def _break_credit(monkeypatch):
    def broken_credit(*args, **kwargs):
        raise RuntimeError("destination store offline")

    monkeypatch.setattr(stock_ledger_service, "_credit_target", broken_credit)


class TestSagaMove:
    """Successful two-step moves."""

    def test_saga_move_completes(self, saga_mode, db_session, item, lab_b):
        result = stock_ledger_service.move_stock(
            MoveStock(item_id=item.id, target_lab_id=lab_b.id, quantity=4, actor_id="u1")
        )

        assert result.item["quantity"] == 6
        assert result.target_item["quantity"] == 4
        assert result.move["status"] == "COMPLETED"
        assert [e["quantity_delta"] for e in result.log_entries] == [-4, 4]

        move = db.session.query(StockMove).filter_by(move_id=result.move_id).one()
        assert move.status == "COMPLETED"
        assert move.completed_at is not None
        assert stock_ledger_service.list_pending_moves() == []

    def test_saga_validations_happen_before_debit(self, saga_mode, db_session, item, foreign_lab):
        with pytest.raises(InvalidMoveError):
            stock_ledger_service.move_stock(
                MoveStock(item_id=item.id, target_lab_id=foreign_lab.id, quantity=1, actor_id="u1")
            )
        assert db.session.query(StockMove).count() == 0
        assert db.session.get(Item, item.id).quantity == 10


class TestCompensation:
    """Failed credits are compensated exactly once."""

    def test_failed_credit_is_compensated(self, saga_mode, monkeypatch, db_session, item, lab_b):
        item_id = item.id
        _break_credit(monkeypatch)

        with pytest.raises(MoveFailedError) as exc_info:
            stock_ledger_service.move_stock(
                MoveStock(item_id=item_id, target_lab_id=lab_b.id, quantity=4, actor_id="u1")
            )

        move_id = exc_info.value.details["move_id"]
        assert exc_info.value.details["cause"] == "RuntimeError"

        assert db.session.get(Item, item_id).quantity == 10
        assert db.session.query(Item).filter_by(lab_id=lab_b.id).count() == 0

        entries = (
            db.session.query(StockLogEntry)
            .filter_by(move_id=move_id)
            .order_by(StockLogEntry.id)
            .all()
        )
        assert [(e.operation, e.quantity_delta, e.resulting_quantity) for e in entries] == [
            ("move", -4, 6),
            ("move_failed", 4, 10),
        ]

        move = db.session.query(StockMove).filter_by(move_id=move_id).one()
        assert move.status == "COMPENSATED"
        assert "destination store offline" in move.failure_reason
        assert stock_history_service.verify_item_history(item_id)["consistent"]

    def test_compensation_is_idempotent(self, saga_mode, monkeypatch, db_session, item, lab_b):
        item_id = item.id
        _break_credit(monkeypatch)

        with pytest.raises(MoveFailedError) as exc_info:
            stock_ledger_service.move_stock(
                MoveStock(item_id=item_id, target_lab_id=lab_b.id, quantity=4, actor_id="u1")
            )
        move_id = exc_info.value.details["move_id"]

        again = stock_ledger_service.compensate_move(move_id)
        third = stock_ledger_service.compensate_move(move_id, actor_id="ops")

        assert again.log_entries == []
        assert third.log_entries == []
        assert again.move["status"] == "COMPENSATED"
        assert db.session.get(Item, item_id).quantity == 10
        assert db.session.query(StockLogEntry).filter_by(move_id=move_id).count() == 2

    def test_interrupted_move_is_listed_and_recovered(self, saga_mode, monkeypatch, db_session, item, lab_b):
        item_id = item.id
        recover = stock_ledger_service.compensate_move
        _break_credit(monkeypatch)

        def crashed_compensation(move_id, **kwargs):
            raise StorageUnavailableError("connection lost")

        monkeypatch.setattr(stock_ledger_service, "compensate_move", crashed_compensation)

        with pytest.raises(StorageUnavailableError):
            stock_ledger_service.move_stock(
                MoveStock(item_id=item_id, target_lab_id=lab_b.id, quantity=3, actor_id="u1")
            )

        # Debit committed, credit never landed
        assert db.session.get(Item, item_id).quantity == 7
        pending = stock_ledger_service.list_pending_moves()
        assert len(pending) == 1
        assert pending[0]["status"] == "DEBITED"
        assert pending[0]["quantity"] == 3

        result = recover(pending[0]["move_id"], actor_id="ops", failure_reason="recovered after crash")

        assert result.item["quantity"] == 10
        assert result.log_entries[0]["operation"] == "move_failed"
        assert result.log_entries[0]["actor_id"] == "ops"
        assert stock_ledger_service.list_pending_moves() == []

    def test_credit_that_landed_despite_a_commit_error_is_completed(self, saga_mode, monkeypatch, db_session, item, lab_b):
        item_id = item.id
        real_commit = stock_ledger_service.commit_ledger
        calls = {"n": 0}

        def commit_then_fail(deadline=None):
            calls["n"] += 1
            real_commit(deadline)
            if calls["n"] == 2:
                raise StorageUnavailableError("commit failed; outcome unknown")

        monkeypatch.setattr(stock_ledger_service, "commit_ledger", commit_then_fail)

        result = stock_ledger_service.move_stock(
            MoveStock(item_id=item_id, target_lab_id=lab_b.id, quantity=4, actor_id="u1")
        )

        assert result.move["status"] == "COMPLETED"
        assert result.item["quantity"] == 6
        assert result.target_item["quantity"] == 4
        assert [e["quantity_delta"] for e in result.log_entries] == [-4, 4]

        assert db.session.get(Item, item_id).quantity == 6
        assert db.session.query(StockLogEntry).filter_by(move_id=result.move_id, operation="move_failed").count() == 0
        assert stock_ledger_service.list_pending_moves() == []

    def test_completed_move_cannot_be_compensated(self, db_session, item, lab_b):
        result = stock_ledger_service.move_stock(
            MoveStock(item_id=item.id, target_lab_id=lab_b.id, quantity=2, actor_id="u1")
        )

        with pytest.raises(InvalidMoveError):
            stock_ledger_service.compensate_move(result.move_id)
        assert db.session.get(Item, item.id).quantity == 8

    def test_unknown_move(self, db_session):
        with pytest.raises(MoveNotFoundError):
            stock_ledger_service.compensate_move("0" * 32)
