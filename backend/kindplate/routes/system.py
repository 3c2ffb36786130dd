# backend/kindplate/routes/system.py
"""
System health endpoint.

Checks database connectivity and reports background job backlogs so a
stalled scheduler shows up as "degraded".
"""

import time
from flask import Blueprint, current_app

from ..extensions import db
from ..models import AvailabilityEvent, Offer, Payment
from kindplate.time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")

# Unprocessed availability events beyond this mean the dispatcher is behind
EVENT_BACKLOG_DEGRADED = 500


def check_database_health() -> dict:
    start_time = time.time()
    try:
        offer_count = db.session.query(Offer).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"offers": offer_count},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_job_backlog() -> dict:
    try:
        pending_events = db.session.query(AvailabilityEvent).filter(
            AvailabilityEvent.processed_at.is_(None)
        ).count()
        overdue_payments = db.session.query(Payment).filter(
            Payment.status.in_(("pending", "processing")),
            Payment.expires_at < utcnow(),
        ).count()
        status = "degraded" if pending_events > EVENT_BACKLOG_DEGRADED or overdue_payments else "healthy"
        return {
            "status": status,
            "details": {
                "pending_availability_events": pending_events,
                "overdue_payments": overdue_payments,
            },
        }
    except Exception:
        current_app.logger.exception("Job backlog check failed")
        return {"status": "unhealthy", "error": "Database error"}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: database unreachable
    """
    start_time = time.time()
    database_health = check_database_health()
    backlog = check_job_backlog()

    all_checks = [database_health, backlog]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "jobs": backlog,
        },
    }
    return response, http_status
