"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  : simple 200 for load balancers
    GET /api/v1/health/live   : database reachability and workflow config
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from clearance.models import db
from clearance.services.workflow_templates import list_templates

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe: always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Liveness check with dependency status."""
    checks = {}
    overall = True

    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check: database failed: %s", exc)

    workflow = current_app.config.get("CLEARANCE_WORKFLOW")
    configured = workflow in list_templates()
    checks["workflow"] = {
        "status": "ok" if configured else "error",
        "configured": workflow,
        "available": list_templates(),
    }
    overall = overall and configured

    return jsonify({"status": "ok" if overall else "degraded", "checks": checks}), 200 if overall else 503
