"""
VP approval gate.

The two Vice-President decisions that bracket the step graph. Each gate
has approve / reject / undo and operates on the request plus the one step
tagged with the matching ``vp_signature_type``.

Allowed source statuses:

    approve_initial   initiated | rejected (at the initial gate)
    reject_initial    initiated | vp_initial_approval
    undo_initial      vp_initial_approval | rejected (at the initial gate)
    approve_final     final gate step actionable | rejected (at the final gate)
    reject_final      in_progress | cleared
    undo_final        cleared | rejected (at the final gate)

A rejection or undo is refused once a reviewer downstream of the gate has
acted, since their step would be left cleared behind an un-cleared gate.

Every operation locks the request, flushes the gate step before
recomputing availability and scanning for completion, commits, then emits
exactly one gate event (plus REQUEST_COMPLETED when the scan fired).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from clearance.core.exceptions import (
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from clearance.models import db
from clearance.models.clearance import OPEN_REQUEST_STATUSES, ClearanceRequest
from clearance.services.activity import ActivityEvent, dispatch
from clearance.services.dependency_resolver import TERMINAL_STATUSES, StepGraph
from clearance.services.workflow_engine import (
    check_completion,
    load_steps,
    lock_request,
    recompute_availability,
    workflow_transaction,
)

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


# ── Shared helpers ───────────────────────────────────────────────────────────


def _open_gate(request_id: int, signature_type: str, vp_role: str):
    """Lock the request and return (request, graph, gate step)."""
    req = lock_request(request_id)
    graph = StepGraph(load_steps(request_id))
    idx = graph.gate_index(signature_type)
    if idx is None:
        raise NotFoundError(resource="ClearanceStep", resource_id=f"{signature_type} gate of request {request_id}")
    gate = graph.steps[idx]
    if vp_role != gate.reviewer_role:
        raise ForbiddenError(vp_role, gate.reviewer_role)
    return req, graph, gate


def _refuse(req: ClearanceRequest, action: str):
    raise InvalidStateError(
        f"Cannot {action.replace('_', ' ')} request {req.reference_code} while it is {req.status}",
        current_status=req.status,
        action=action,
    )


def _rejected_at(req: ClearanceRequest, stage: str) -> bool:
    return req.status == "rejected" and req.rejection_stage == stage


def _guard_downstream(req: ClearanceRequest, graph: StepGraph, gate, action: str) -> None:
    """Refuse when a reviewer below the gate has already signed or flagged."""
    idx = graph.index_of(gate)
    downstream = graph.dependents(idx)
    if gate.vp_signature_type == "initial":
        downstream |= {i for i, s in enumerate(graph.steps) if s.vp_signature_type is None}
    acted = sorted(
        graph.steps[i].reviewer_role for i in downstream
        if graph.steps[i].status in TERMINAL_STATUSES
    )
    if acted:
        raise InvalidStateError(
            f"Cannot {action.replace('_', ' ')}: reviewers have already acted ({', '.join(acted)})",
            current_status=req.status,
            action=action,
        )


def _require_text(value: str | None, field: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{field} is required", details={field: "required"})
    return text


def _clear_rejection(req: ClearanceRequest) -> None:
    req.rejection_reason = None
    req.rejected_at = None
    req.rejected_by = None
    req.rejection_stage = None


def _clear_initial_slot(req: ClearanceRequest) -> None:
    req.vp_initial_signature = None
    req.vp_initial_signed_at = None
    req.vp_initial_signed_by = None


def _clear_final_slot(req: ClearanceRequest) -> None:
    req.vp_final_signature = None
    req.vp_final_signed_at = None
    req.vp_final_signed_by = None


def _reject(req: ClearanceRequest, gate, vp_id: str, reason: str, stage: str) -> None:
    gate.record_review("issue", vp_id, signature=None, comment=reason)
    req.status = "rejected"
    req.rejection_reason = reason
    req.rejected_at = _utcnow()
    req.rejected_by = vp_id
    req.rejection_stage = stage


def _settle(req: ClearanceRequest, actor_id: str):
    """Flush the gate change, then recompute and scan for completion."""
    db.session.flush()
    changed = recompute_availability(req.id)
    completion = check_completion(req.id, actor_id=actor_id)
    unlocked = sorted({s.reviewer_role for s in changed if s.status == "available"})
    return unlocked, completion


def _gate_event(kind, req, vp_id, message, *, decision_change, previous_status, gate, **extra):
    metadata = {
        "decision_change": decision_change,
        "previous_status": previous_status,
        "gate_step_id": gate.id,
    }
    metadata.update(extra)
    return ActivityEvent(kind=kind, request_id=req.id, actor_id=vp_id,
                         message=message, metadata=metadata)


def _finish(events, emitter, req_id, kind):
    dispatch([e for e in events if e is not None], emitter)
    logger.info("VP gate %s applied", kind, extra={"request_id": req_id, "event_type": kind})


# ── Initial gate ─────────────────────────────────────────────────────────────


def approve_initial(request_id, vp_id, vp_role, signature, comment=None, emitter=None):
    """Give the go-ahead: clears the initial gate and unlocks the graph."""
    signature = _require_text(signature, "signature")
    with workflow_transaction("approve_initial"):
        req, graph, gate = _open_gate(request_id, "initial", vp_role)
        if not (req.status == "initiated" or _rejected_at(req, "initial")):
            _refuse(req, "approve_initial")

        previous = req.status
        decision_change = previous == "rejected"
        gate.record_review("cleared", vp_id, signature=signature, comment=comment)
        req.status = "vp_initial_approval"
        req.vp_initial_signature = signature
        req.vp_initial_signed_at = _utcnow()
        req.vp_initial_signed_by = vp_id
        if decision_change:
            _clear_rejection(req)

        unlocked, completion = _settle(req, vp_id)
        event = _gate_event(
            "INITIAL_APPROVAL", req, vp_id,
            f"{req.reference_code} approved to start clearance"
            + (" (rejection reversed)" if decision_change else ""),
            decision_change=decision_change, previous_status=previous, gate=gate,
            unlocked_roles=unlocked,
        )

    _finish([event, completion], emitter, req.id, "INITIAL_APPROVAL")
    return req


def reject_initial(request_id, vp_id, vp_role, reason, emitter=None):
    """Refuse the request at the door. Reverses a prior approval if present."""
    reason = _require_text(reason, "reason")
    with workflow_transaction("reject_initial"):
        req, graph, gate = _open_gate(request_id, "initial", vp_role)
        if req.status not in ("initiated", "vp_initial_approval"):
            _refuse(req, "reject_initial")

        previous = req.status
        decision_change = previous == "vp_initial_approval"
        if decision_change:
            _guard_downstream(req, graph, gate, "reject_initial")
            _clear_initial_slot(req)
        _reject(req, gate, vp_id, reason, "initial")

        _settle(req, vp_id)
        event = _gate_event(
            "INITIAL_REJECTION", req, vp_id,
            f"{req.reference_code} rejected at initial review: {reason}",
            decision_change=decision_change, previous_status=previous, gate=gate,
            reason=reason,
        )

    _finish([event], emitter, req.id, "INITIAL_REJECTION")
    return req


def undo_initial(request_id, vp_id, vp_role, emitter=None):
    """Withdraw the initial decision, restoring the pre-decision state."""
    with workflow_transaction("undo_initial"):
        req, graph, gate = _open_gate(request_id, "initial", vp_role)
        if not (req.status == "vp_initial_approval" or _rejected_at(req, "initial")):
            _refuse(req, "undo_initial")

        previous = req.status
        if previous == "vp_initial_approval":
            _guard_downstream(req, graph, gate, "undo_initial")
        req.status = "initiated"
        _clear_initial_slot(req)
        _clear_rejection(req)
        gate.reset_review()

        _settle(req, vp_id)
        event = _gate_event(
            "INITIAL_UNDONE", req, vp_id,
            f"Initial VP decision on {req.reference_code} withdrawn",
            decision_change=False, previous_status=previous, gate=gate,
            reverted="approval" if previous == "vp_initial_approval" else "rejection",
        )

    _finish([event], emitter, req.id, "INITIAL_UNDONE")
    return req


# ── Final gate ───────────────────────────────────────────────────────────────


def approve_final(request_id, vp_id, vp_role, signature, comment=None, emitter=None):
    """
    Final oversight sign-off.

    Moves the request to ``in_progress``; the completion scan in the same
    transaction then clears it once the gate step was the last one open.
    """
    signature = _require_text(signature, "signature")
    with workflow_transaction("approve_final"):
        req, graph, gate = _open_gate(request_id, "final", vp_role)
        actionable = gate.can_process and req.status in OPEN_REQUEST_STATUSES
        if not (actionable or _rejected_at(req, "final")):
            _refuse(req, "approve_final")
        if not graph.dependencies_met(graph.index_of(gate)):
            raise InvalidStateError(
                "The final gate cannot be approved before every prior stage has cleared",
                current_status=req.status, action="approve_final",
            )

        previous = req.status
        decision_change = previous == "rejected"
        gate.record_review("cleared", vp_id, signature=signature, comment=comment)
        req.status = "in_progress"
        req.vp_final_signature = signature
        req.vp_final_signed_at = _utcnow()
        req.vp_final_signed_by = vp_id
        if decision_change:
            _clear_rejection(req)

        _, completion = _settle(req, vp_id)
        event = _gate_event(
            "FINAL_APPROVAL", req, vp_id,
            f"{req.reference_code} signed off by the Vice President"
            + (" (rejection reversed)" if decision_change else ""),
            decision_change=decision_change, previous_status=previous, gate=gate,
        )

    _finish([event, completion], emitter, req.id, "FINAL_APPROVAL")
    return req


def reject_final(request_id, vp_id, vp_role, reason, emitter=None):
    """Reject at final review. Reverses a prior final approval if present."""
    reason = _require_text(reason, "reason")
    with workflow_transaction("reject_final"):
        req, graph, gate = _open_gate(request_id, "final", vp_role)
        if req.status not in ("in_progress", "cleared"):
            _refuse(req, "reject_final")

        previous = req.status
        decision_change = gate.status == "cleared"
        _guard_downstream(req, graph, gate, "reject_final")
        if decision_change:
            _clear_final_slot(req)
        req.completed_at = None
        _reject(req, gate, vp_id, reason, "final")

        _settle(req, vp_id)
        event = _gate_event(
            "FINAL_REJECTION", req, vp_id,
            f"{req.reference_code} rejected at final review: {reason}",
            decision_change=decision_change, previous_status=previous, gate=gate,
            reason=reason,
        )

    _finish([event], emitter, req.id, "FINAL_REJECTION")
    return req


def undo_final(request_id, vp_id, vp_role, emitter=None):
    """Withdraw the final decision; the gate step becomes actionable again."""
    with workflow_transaction("undo_final"):
        req, graph, gate = _open_gate(request_id, "final", vp_role)
        if not (req.status == "cleared" or _rejected_at(req, "final")):
            _refuse(req, "undo_final")
        if req.status == "cleared" and gate.status != "cleared":
            raise InvalidStateError(
                "The final gate has no decision to undo",
                current_status=gate.status, action="undo_final",
            )

        previous = req.status
        _guard_downstream(req, graph, gate, "undo_final")
        req.status = "in_progress"
        req.completed_at = None
        _clear_final_slot(req)
        _clear_rejection(req)
        gate.reset_review()

        _settle(req, vp_id)
        event = _gate_event(
            "FINAL_UNDONE", req, vp_id,
            f"Final VP decision on {req.reference_code} withdrawn",
            decision_change=False, previous_status=previous, gate=gate,
            reverted="approval" if previous == "cleared" else "rejection",
        )

    _finish([event], emitter, req.id, "FINAL_UNDONE")
    return req
