# backend/labstock/routes/stock.py
"""
Stock ledger API routes.

Mutations take a JSON body, require X-Actor-Id, and return the committed
StockResult. Ledger errors map to status codes by kind; the body is always
{"error": ..., "kind": ..., "field": ..., "value": ...}.
"""
from datetime import timedelta

from flask import Blueprint, request, jsonify, g, current_app

from labstock.extensions import db
from labstock.decorators import require_actor
from labstock.services import alert_service, stock_history_service, stock_ledger_service
from labstock.services.stock_errors import (
    ConcurrentModificationError,
    DeadlineExceededError,
    InsufficientStockError,
    InvalidMoveError,
    InvalidQuantityError,
    InvalidRequestError,
    ItemNotFoundError,
    LabNotFoundError,
    MoveFailedError,
    MoveNotFoundError,
    StaleLocationError,
    StockLedgerError,
    StockLogNotFoundError,
    StorageUnavailableError,
)
from labstock.services.stock_requests import HistoryQuery
from labstock.validation import (
    ValidationError,
    build_add_request,
    build_adjust_request,
    build_move_request,
    build_remove_request,
    parse_query_bool,
    parse_query_int,
)


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")

ERROR_STATUS = {
    ItemNotFoundError: 404,
    LabNotFoundError: 404,
    MoveNotFoundError: 404,
    StockLogNotFoundError: 404,
    InvalidQuantityError: 400,
    InvalidRequestError: 400,
    InsufficientStockError: 409,
    StaleLocationError: 409,
    InvalidMoveError: 409,
    ConcurrentModificationError: 409,
    MoveFailedError: 409,
    DeadlineExceededError: 503,
    StorageUnavailableError: 503,
}


def ledger_error_response(exc: StockLedgerError):
    return jsonify(exc.to_dict()), ERROR_STATUS.get(type(exc), 400)


def validation_error_response(exc: ValidationError):
    return jsonify({"error": str(exc), "kind": "invalid_request"}), 400


def run_action(action):
    """Execute a route action and translate failures into JSON responses."""
    try:
        return action()
    except ValidationError as e:
        return validation_error_response(e)
    except StockLedgerError as e:
        return ledger_error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Unexpected stock ledger failure on %s %s", request.method, request.path)
        return jsonify({"error": "Unexpected error", "kind": "internal_error"}), 500


def _timeout():
    raw = request.args.get("timeout")
    if raw is None or raw == "":
        return None
    try:
        value = float(raw)
    except ValueError:
        raise ValidationError("timeout must be a number of seconds")
    if value < 0:
        raise ValidationError("timeout must not be negative")
    return value


# =============================================================================
# Mutations
# =============================================================================

@stock_bp.post("/<int:item_id>/add")
@require_actor
def add_stock_route(item_id: int):
    """
    Receive stock into an item.

    Request body:
    {
        "quantity": int,
        "reason": str (optional),
        "notes": str (optional),
        "unit_cost_cents": int (optional),
        "supplier": str (optional),
        "batch_number": str (optional),
        "expiry_date": "YYYY-MM-DD" (optional),
        "expected_version": int (optional)
    }
    """
    def _action():
        req = build_add_request(item_id, request.get_json(silent=True), g.actor_id)
        result = stock_ledger_service.apply_operation(req, timeout=_timeout())
        return jsonify(result.to_dict()), 200

    return run_action(_action)


@stock_bp.post("/<int:item_id>/remove")
@require_actor
def remove_stock_route(item_id: int):
    """Request body: {"quantity": int, "reason": str, "notes"?, "expected_version"?}"""
    def _action():
        req = build_remove_request(item_id, request.get_json(silent=True), g.actor_id)
        result = stock_ledger_service.apply_operation(req, timeout=_timeout())
        return jsonify(result.to_dict()), 200

    return run_action(_action)


@stock_bp.post("/<int:item_id>/move")
@require_actor
def move_stock_route(item_id: int):
    """
    Move stock to another lab.

    Request body:
    {
        "quantity": int,
        "target_lab_id": int,
        "source_lab_id": int (optional, rejects the move if the item has since moved),
        "reason": str (optional),
        "notes": str (optional),
        "expected_version": int (optional)
    }
    """
    def _action():
        req = build_move_request(item_id, request.get_json(silent=True), g.actor_id)
        result = stock_ledger_service.apply_operation(req, timeout=_timeout())
        return jsonify(result.to_dict()), 200

    return run_action(_action)


@stock_bp.post("/<int:item_id>/adjust")
@require_actor
def adjust_stock_route(item_id: int):
    """Request body: {"new_quantity": int, "reason": str, "notes"?, "expected_version"?}"""
    def _action():
        req = build_adjust_request(item_id, request.get_json(silent=True), g.actor_id)
        result = stock_ledger_service.apply_operation(req, timeout=_timeout())
        return jsonify(result.to_dict()), 200

    return run_action(_action)


# =============================================================================
# History
# =============================================================================

@stock_bp.get("/<int:item_id>/history")
def item_history_route(item_id: int):
    def _action():
        query = HistoryQuery(
            item_id=item_id,
            page=parse_query_int(request.args, "page", 1),
            limit=parse_query_int(request.args, "limit", current_app.config.get("HISTORY_DEFAULT_LIMIT", 50)),
            cursor=request.args.get("cursor") or None,
            snapshot_id=parse_query_int(request.args, "snapshot_id"),
        )
        return jsonify(stock_history_service.get_history(query)), 200

    return run_action(_action)


@stock_bp.get("/<int:item_id>/verify")
def verify_history_route(item_id: int):
    def _action():
        return jsonify(stock_history_service.verify_item_history(item_id)), 200

    return run_action(_action)


# =============================================================================
# Alerts
# =============================================================================

@stock_bp.get("/low-stock")
def low_stock_route():
    def _action():
        rows = alert_service.low_stock(lab_id=parse_query_int(request.args, "lab_id"))
        return jsonify({"items": rows, "count": len(rows)}), 200

    return run_action(_action)


@stock_bp.get("/expiring")
def expiring_route():
    def _action():
        rows = alert_service.expiring(
            lab_id=parse_query_int(request.args, "lab_id"),
            within_days=parse_query_int(request.args, "days"),
            include_expired=parse_query_bool(request.args, "include_expired", True),
        )
        return jsonify({"items": rows, "count": len(rows)}), 200

    return run_action(_action)


@stock_bp.get("/expired")
def expired_route():
    def _action():
        rows = alert_service.expired(lab_id=parse_query_int(request.args, "lab_id"))
        return jsonify({"items": rows, "count": len(rows)}), 200

    return run_action(_action)


@stock_bp.get("/alerts")
def alert_summary_route():
    def _action():
        summary = alert_service.alert_summary(
            lab_id=parse_query_int(request.args, "lab_id"),
            within_days=parse_query_int(request.args, "days"),
        )
        return jsonify({"summary": summary}), 200

    return run_action(_action)


# =============================================================================
# Move recovery
# =============================================================================

@stock_bp.get("/moves/pending")
def pending_moves_route():
    """Query: older_than_minutes (optional) limits the list to moves stuck at least that long."""
    def _action():
        minutes = parse_query_int(request.args, "older_than_minutes")
        if minutes is not None and minutes < 0:
            raise ValidationError("older_than_minutes must not be negative")
        older_than = timedelta(minutes=minutes) if minutes is not None else None
        moves = stock_ledger_service.list_pending_moves(older_than=older_than)
        return jsonify({"items": moves, "count": len(moves)}), 200

    return run_action(_action)


@stock_bp.post("/moves/<move_id>/compensate")
@require_actor
def compensate_move_route(move_id: str):
    """Reverse the debit of a stuck move. Safe to repeat."""
    def _action():
        result = stock_ledger_service.compensate_move(
            move_id,
            actor_id=g.actor_id,
            failure_reason="manual compensation",
        )
        return jsonify(result.to_dict()), 200

    return run_action(_action)
