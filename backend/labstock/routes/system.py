# backend/labstock/routes/system.py
"""
System health and version endpoints.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Item, Lab, StockLogEntry, StockMove
from ..models.stock import MOVE_STATUS_DEBITED
from labstock.time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        lab_count = db.session.query(Lab).count()
        item_count = db.session.query(Item).count()
        entry_count = db.session.query(StockLogEntry).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "labs": lab_count,
                "items": item_count,
                "stock_log_entries": entry_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_pending_moves() -> dict:
    """
    Saga moves left between debit and credit show up here until compensated.
    """
    start_time = time.time()
    try:
        pending = db.session.query(StockMove).filter_by(status=MOVE_STATUS_DEBITED).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "degraded" if pending else "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"pending_moves": pending},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Pending move check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded (pending moves awaiting recovery)
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    moves_health = check_pending_moves()

    all_checks = [database_health, moves_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status = "unhealthy"
        http_status = 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status = "degraded"
        http_status = 200  # Degraded is still operational
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "moves": moves_health,
        }
    }

    return response, http_status


@system_bp.get("/version")
def version():
    """Non-sensitive deployment information."""
    import sys

    env = "production" if not current_app.debug else "development"

    return {
        "api_version": "1.0.0",
        "environment": env,
        "move_mode": current_app.config.get("STOCK_MOVE_MODE"),
        "python_version": sys.version.split()[0],
        "server_time": utcnow().isoformat() + "Z",
    }
