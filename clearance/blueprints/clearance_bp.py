"""
Staff Clearance Service
Clearance Blueprint.

Thin HTTP layer over the clearance services; every rule lives in
``clearance/services``. Caller identity comes from the ``X-User-Id`` and
``X-User-Role`` headers set by the upstream gateway.

Endpoints (url_prefix /api/v1/clearance):
    POST   /requests                              submit a request
    GET    /requests                              list requests
    GET    /requests/<id>                         request detail (+ steps)
    GET    /requests/<id>/workflow-status         stage summaries & progress
    GET    /requests/<id>/signatures              collected signatures
    GET    /requests/<id>/activity                activity trail
    POST   /requests/<id>/initial/<decision>      VP initial gate: approve | reject | undo
    POST   /requests/<id>/final/<decision>        VP final gate: approve | reject | undo
    PUT    /steps/<id>                            reviewer clears / flags a step
    POST   /steps/<id>/hide                       hide a step from my queue
    GET    /steps/mine                            my reviewer queue
    GET    /templates                             available workflow templates
    GET    /dashboard                             counters for the caller's role
"""

import logging

from flask import Blueprint, jsonify, request

from clearance.core.exceptions import ValidationError
from clearance.services import approval_gate, clearance_service, dashboard_service, workflow_engine
from clearance.services.workflow_templates import get_template, list_templates
from clearance.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

clearance_bp = Blueprint("clearance_bp", __name__, url_prefix="/api/v1/clearance")
register_error_handlers(clearance_bp)


def _identity():
    """Return (user_id, role) from the gateway headers."""
    user_id = (request.headers.get("X-User-Id") or "").strip()
    role = (request.headers.get("X-User-Role") or "").strip()
    if not user_id or not role:
        raise ValidationError(
            "X-User-Id and X-User-Role headers are required",
            details={"headers": ["X-User-Id", "X-User-Role"]},
        )
    return user_id, role


def _paging():
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = max(request.args.get("offset", 0, type=int), 0)
    return limit, offset


# ═════════════════════════════════════════════════════════════════════════════
#  REQUESTS
# ═════════════════════════════════════════════════════════════════════════════


@clearance_bp.route("/requests", methods=["POST"])
def create_request():
    data = request.get_json(silent=True) or {}
    initiated_by = request.headers.get("X-User-Id") or None
    req = clearance_service.create_request(data, initiated_by=initiated_by)
    return jsonify(req.to_dict(include_steps=True)), 201


@clearance_bp.route("/requests", methods=["GET"])
def list_requests():
    limit, offset = _paging()
    items, total = clearance_service.list_requests(
        status=request.args.get("status"),
        staff_id=request.args.get("staff_id"),
        limit=limit,
        offset=offset,
    )
    return jsonify({"items": [r.to_dict() for r in items], "total": total,
                    "limit": limit, "offset": offset})


@clearance_bp.route("/requests/<int:request_id>", methods=["GET"])
def get_request(request_id):
    req = workflow_engine.get_request(request_id)
    include_steps = request.args.get("include_steps", "1") != "0"
    return jsonify(req.to_dict(include_steps=include_steps))


@clearance_bp.route("/requests/<int:request_id>/workflow-status", methods=["GET"])
def workflow_status(request_id):
    return jsonify(workflow_engine.get_workflow_status(request_id))


@clearance_bp.route("/requests/<int:request_id>/signatures", methods=["GET"])
def signatures(request_id):
    return jsonify(workflow_engine.get_signatures(request_id))


@clearance_bp.route("/requests/<int:request_id>/activity", methods=["GET"])
def activity(request_id):
    logs = clearance_service.list_activity(request_id)
    return jsonify({"items": [log.to_dict() for log in logs], "total": len(logs)})


# ═════════════════════════════════════════════════════════════════════════════
#  VP GATES
# ═════════════════════════════════════════════════════════════════════════════

_GATE_ACTIONS = {
    ("initial", "approve"): approval_gate.approve_initial,
    ("initial", "reject"): approval_gate.reject_initial,
    ("initial", "undo"): approval_gate.undo_initial,
    ("final", "approve"): approval_gate.approve_final,
    ("final", "reject"): approval_gate.reject_final,
    ("final", "undo"): approval_gate.undo_final,
}


@clearance_bp.route("/requests/<int:request_id>/<gate>/<decision>", methods=["POST"])
def gate_decision(request_id, gate, decision):
    action = _GATE_ACTIONS.get((gate, decision))
    if action is None:
        return api_error(E.NOT_FOUND, f"Unknown gate action {gate}/{decision}")

    vp_id, vp_role = _identity()
    data = request.get_json(silent=True) or {}
    if decision == "approve":
        req = action(request_id, vp_id, vp_role, data.get("signature"), comment=data.get("comment"))
    elif decision == "reject":
        req = action(request_id, vp_id, vp_role, data.get("reason"))
    else:
        req = action(request_id, vp_id, vp_role)
    return jsonify(req.to_dict(include_steps=True))


# ═════════════════════════════════════════════════════════════════════════════
#  REVIEWER STEPS
# ═════════════════════════════════════════════════════════════════════════════


@clearance_bp.route("/steps/<int:step_id>", methods=["PUT"])
def update_step(step_id):
    reviewer_id, role = _identity()
    data = request.get_json(silent=True) or {}
    status = data.get("status")
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    step = workflow_engine.update_step(
        step_id, reviewer_id, role, status,
        signature=data.get("signature"),
        comment=data.get("comment"),
        notes=data.get("notes"),
    )
    return jsonify(step.to_dict())


@clearance_bp.route("/steps/<int:step_id>/hide", methods=["POST"])
def hide_step(step_id):
    reviewer_id, role = _identity()
    step = workflow_engine.hide_step(step_id, reviewer_id, role)
    return jsonify({"hidden": True, "step_id": step.id})


@clearance_bp.route("/steps/mine", methods=["GET"])
def my_steps():
    reviewer_id, role = _identity()
    include_all = request.args.get("include_all", "0") in ("1", "true", "yes")
    steps = workflow_engine.available_steps_for_role(role, reviewer_id, include_all=include_all)
    return jsonify({"items": [s.to_dict() for s in steps], "total": len(steps)})


@clearance_bp.route("/templates", methods=["GET"])
def templates():
    return jsonify({
        "items": [
            {"name": name, "stages": [s.to_dict() for s in get_template(name).stages]}
            for name in list_templates()
        ],
    })


@clearance_bp.route("/dashboard", methods=["GET"])
def dashboard():
    user_id, role = _identity()
    return jsonify(dashboard_service.get_dashboard(role, user_id))
