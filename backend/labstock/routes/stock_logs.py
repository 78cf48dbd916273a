# Overview: Flask API routes for stock log search and single-entry lookup; parses filters and returns JSON.

from flask import Blueprint, request, jsonify

from labstock.time_utils import parse_iso_datetime
from labstock.validation import ValidationError, parse_query_int
from labstock.services import stock_history_service
from .stock import run_action

"""
Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- start_date / end_date are inclusive bounds on occurred_at.
"""

stock_logs_bp = Blueprint("stock_logs", __name__, url_prefix="/api/stock-logs")


@stock_logs_bp.get("")
def list_stock_logs_route():
    def _action():
        try:
            start_dt = parse_iso_datetime(request.args.get("start_date"))
            end_dt = parse_iso_datetime(request.args.get("end_date"))
        except ValueError:
            raise ValidationError("start_date and end_date must be ISO-8601 datetimes")

        result = stock_history_service.list_stock_logs(
            item_id=parse_query_int(request.args, "item_id"),
            lab_id=parse_query_int(request.args, "lab_id"),
            actor_id=request.args.get("actor_id") or None,
            operation=request.args.get("operation") or None,
            move_id=request.args.get("move_id") or None,
            start_date=start_dt,
            end_date=end_dt,
            cursor=request.args.get("cursor") or None,
            limit=parse_query_int(request.args, "limit"),
        )
        return jsonify(result), 200

    return run_action(_action)


@stock_logs_bp.get("/<int:entry_id>")
def get_stock_log_route(entry_id: int):
    def _action():
        return jsonify(stock_history_service.get_stock_log(entry_id)), 200

    return run_action(_action)
