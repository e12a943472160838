"""
Role dashboard counters.

One summary per caller role, read straight from the request and step
tables:

  - SystemAdmin: request totals by lifecycle bucket and by status
  - any ``...Reviewer`` role: the caller's queue and reviewed steps
  - the Vice President: requests waiting at either gate
  - everyone else: progress of the caller's latest request
"""

import logging

from sqlalchemy import func, or_

from clearance.models import db
from clearance.models.clearance import ClearanceRequest, ClearanceStep
from clearance.services.dependency_resolver import TERMINAL_STATUSES
from clearance.services.workflow_engine import available_steps_for_role
from clearance.services.workflow_templates import VICE_PRESIDENT_ROLE

logger = logging.getLogger(__name__)

ADMIN_ROLE = "SystemAdmin"
UNDER_REVIEW_STATUSES = ("initiated", "vp_initial_approval", "in_progress")


def get_admin_summary():
    """Request counts across the whole service."""
    rows = (
        db.session.query(ClearanceRequest.status, func.count(ClearanceRequest.id))
        .group_by(ClearanceRequest.status)
        .all()
    )
    by_status = {status: count for status, count in rows}
    return {
        "total_requests": sum(by_status.values()),
        "pending_requests": sum(by_status.get(s, 0) for s in UNDER_REVIEW_STATUSES),
        "completed_requests": by_status.get("cleared", 0),
        "rejected_requests": by_status.get("rejected", 0),
        "by_status": by_status,
    }


def get_reviewer_summary(role, user_id=None):
    """Queue size for *role* as *user_id* sees it, plus what the role has reviewed."""
    step_q = ClearanceStep.query.filter_by(reviewer_role=role, vp_signature_type=None)
    return {
        "assigned_reviews": len(available_steps_for_role(role, reviewer_id=user_id)),
        "waiting_reviews": step_q.filter_by(status="pending").count(),
        "completed_reviews": step_q.filter(ClearanceStep.status.in_(TERMINAL_STATUSES)).count(),
        "flagged_reviews": step_q.filter_by(status="issue").count(),
    }


def get_vice_president_summary():
    """Requests waiting on a VP decision at either gate."""
    initial_pending = ClearanceRequest.query.filter_by(status="initiated").count()
    final_pending = (
        ClearanceRequest.query
        .filter_by(status="in_progress")
        .filter(ClearanceRequest.vp_final_signature.is_(None))
        .count()
    )
    return {
        "vp_initial_pending": initial_pending,
        "vp_final_pending": final_pending,
        "total_approved": ClearanceRequest.query.filter_by(status="cleared").count(),
    }


def get_applicant_summary(user_id):
    """Progress of the newest request *user_id* submitted or is the subject of."""
    latest = (
        ClearanceRequest.query
        .filter(or_(ClearanceRequest.initiated_by == user_id, ClearanceRequest.staff_id == user_id))
        .order_by(ClearanceRequest.created_at.desc(), ClearanceRequest.id.desc())
        .first()
    )
    if latest is None:
        return {
            "my_request_status": "none",
            "total_steps": 0,
            "approved_steps": 0,
            "pending_steps": 0,
            "rejected_steps": 0,
        }

    counts = dict(
        db.session.query(ClearanceStep.status, func.count(ClearanceStep.id))
        .filter(ClearanceStep.request_id == latest.id)
        .group_by(ClearanceStep.status)
        .all()
    )
    return {
        "my_request_status": latest.status,
        "total_steps": sum(counts.values()),
        "approved_steps": counts.get("cleared", 0),
        "pending_steps": counts.get("pending", 0) + counts.get("available", 0),
        "rejected_steps": counts.get("issue", 0),
        "request_id": latest.id,
        "reference_code": latest.reference_code,
    }


def get_dashboard(role, user_id):
    """Dispatch to the summary for *role*. Reviewer roles are matched before the VP."""
    if role == ADMIN_ROLE:
        view, data = "admin", get_admin_summary()
    elif "Reviewer" in role:
        view, data = "reviewer", get_reviewer_summary(role, user_id)
    elif role == VICE_PRESIDENT_ROLE:
        view, data = "vice_president", get_vice_president_summary()
    else:
        view, data = "applicant", get_applicant_summary(user_id)
    logger.debug("Dashboard built for %s (%s)", role, view, extra={"actor_id": user_id})
    return {"role": role, "view": view, "data": data}
