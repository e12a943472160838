"""
Clearance workflow engine.

Owns the step graph of every clearance request:
    - materialization of steps from a workflow template
    - availability recomputation after every mutation
    - completion detection
    - reviewer step updates, queues and read-side status views

Every mutating operation runs inside ``workflow_transaction``: the request
row is locked first (``SELECT … FOR UPDATE``), all changes are flushed in
order, and the whole unit either commits or rolls back. Activity events are
dispatched only after the commit.
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from clearance.core.exceptions import (
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from clearance.models import db
from clearance.models.clearance import (
    INACTIVE_REQUEST_STATUSES,
    OPEN_REQUEST_STATUSES,
    REVIEW_OUTCOMES,
    ClearanceRequest,
    ClearanceStep,
)
from clearance.services.activity import ActivityEvent, dispatch
from clearance.services.dependency_resolver import TERMINAL_STATUSES, StepGraph
from clearance.services.interdependency import handle_group_clear
from clearance.services.workflow_templates import WorkflowTemplate, validate_template

logger = logging.getLogger(__name__)


# ── Transaction & loading helpers ────────────────────────────────────────────


@contextmanager
def workflow_transaction(operation: str):
    """Commit on success; roll back on any error.

    Store failures surface as PersistenceError; domain errors propagate
    unchanged after the rollback.
    """
    try:
        yield
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Persistence failure during %s", operation)
        raise PersistenceError(operation, exc) from exc
    except Exception:
        db.session.rollback()
        raise


def lock_request(request_id: int) -> ClearanceRequest:
    """Load a request row with a write lock held until commit/rollback."""
    req = db.session.execute(
        select(ClearanceRequest)
        .where(ClearanceRequest.id == request_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if req is None:
        raise NotFoundError(resource="ClearanceRequest", resource_id=request_id)
    return req


def get_request(request_id: int) -> ClearanceRequest:
    req = db.session.get(ClearanceRequest, request_id)
    if req is None:
        raise NotFoundError(resource="ClearanceRequest", resource_id=request_id)
    return req


def load_steps(request_id: int) -> list[ClearanceStep]:
    """Fresh read of every step of a request, in template order."""
    return list(db.session.execute(
        select(ClearanceStep)
        .where(ClearanceStep.request_id == request_id)
        .order_by(ClearanceStep.order, ClearanceStep.id)
        .execution_options(populate_existing=True)
    ).scalars().all())


def _utcnow():
    return datetime.now(timezone.utc)


def _department_label(role: str) -> str:
    """``StudentDeanReviewer`` → ``Student Dean``."""
    base = role[:-len("Reviewer")] if role.endswith("Reviewer") and role != "Reviewer" else role
    return re.sub(r"(?<=[a-z0-9])(?=[A-Z])", " ", base)


def _signature_key(label: str) -> str:
    return re.sub(r"[^a-z0-9]", "", label.lower())


# ── Materialization ──────────────────────────────────────────────────────────


def materialize_steps(request: ClearanceRequest, template: WorkflowTemplate) -> list[ClearanceStep]:
    """
    Expand *template* into one step per (stage, reviewer role).

    Only order-1 steps start available. Steps are flushed, not committed.
    """
    validate_template(template)
    steps = []
    for stage in sorted(template.stages, key=lambda s: s.order):
        for role in stage.reviewer_roles:
            step = ClearanceStep(
                request=request,
                reviewer_role=role,
                order=stage.order,
                stage=stage.stage,
                department=stage.name if stage.vp_signature_type else _department_label(role),
                description=stage.description or stage.name,
                is_sequential=stage.is_sequential,
                depends_on=list(stage.depends_on),
                is_interdependent=stage.is_interdependent,
                interdependent_with=list(stage.interdependent_with),
                vp_signature_type=stage.vp_signature_type,
                hidden_for=[],
            )
            step.set_status("available" if stage.order == 1 else "pending")
            steps.append(step)
    db.session.add_all(steps)
    db.session.flush()
    logger.debug("Materialized %d steps from %s", len(steps), template.name,
                 extra={"request_id": request.id})
    return steps


# ── Recomputation & completion ───────────────────────────────────────────────


def recompute_availability(request_id: int) -> list[ClearanceStep]:
    """
    Bring every pending/available step in line with its prerequisites.

    Idempotent; never touches cleared or issue steps. Desired statuses only
    depend on which steps are cleared, so a single sweep reaches the fixed
    point. While the request is rejected or archived every reviewer step is
    parked as pending; the next recompute after an undo restores it.

    Returns:
        Steps whose status changed.
    """
    req = db.session.get(ClearanceRequest, request_id)
    halted = req is not None and req.status in INACTIVE_REQUEST_STATUSES
    graph = StepGraph(load_steps(request_id), halted=halted)
    changed = []
    for step, desired in zip(graph.steps, graph.relax()):
        if step.status in TERMINAL_STATUSES:
            continue
        if step.status != desired or step.can_process != (desired == "available"):
            step.set_status(desired)
            changed.append(step)
    db.session.flush()
    return changed


def check_completion(request_id: int, actor_id: str | None = None) -> ActivityEvent | None:
    """
    Move the request to ``cleared`` once every step is cleared.

    Returns the REQUEST_COMPLETED event for the caller to dispatch after
    commit, or None when nothing changed.
    """
    req = db.session.get(ClearanceRequest, request_id)
    if req is None:
        raise NotFoundError(resource="ClearanceRequest", resource_id=request_id)
    if req.status in ("cleared", "rejected", "archived"):
        return None
    graph = StepGraph(load_steps(request_id))
    if not graph.all_cleared():
        return None

    req.status = "cleared"
    req.completed_at = _utcnow()
    db.session.flush()
    return ActivityEvent(
        kind="REQUEST_COMPLETED",
        request_id=req.id,
        actor_id=actor_id,
        message=f"All {len(graph)} clearance steps signed for {req.reference_code}",
        metadata={"completed_at": req.completed_at.isoformat()},
    )


def derive_request_status(request: ClearanceRequest, steps) -> str:
    """
    Request status as a pure function of the step set and gate decisions.

    Used to cross-check the stored status; ``archived`` cannot be derived
    from steps and is passed through.
    """
    if request.status == "archived":
        return "archived"
    graph = StepGraph(steps)
    for gate in (graph.initial_gate, graph.final_gate):
        if gate is not None and graph.steps[gate].status == "issue":
            return "rejected"
    if graph.all_cleared():
        return "cleared"
    if graph.initial_gate is not None and graph.steps[graph.initial_gate].status != "cleared":
        return "initiated"
    reviewed = any(
        s.status in TERMINAL_STATUSES for i, s in enumerate(graph.steps)
        if i != graph.initial_gate
    )
    return "in_progress" if reviewed else "vp_initial_approval"


def _unlocked_roles(changed) -> list[str]:
    return sorted({s.reviewer_role for s in changed if s.status == "available"})


# ── Reviewer operations ──────────────────────────────────────────────────────


def update_step(
    step_id: int,
    reviewer_id: str,
    reviewer_role: str,
    status: str,
    signature: str | None = None,
    comment: str | None = None,
    notes: str | None = None,
    emitter=None,
) -> ClearanceStep:
    """
    Record a reviewer's decision (``cleared`` or ``issue``) on a step.

    Interdependent clears go through the group resolver. Availability and
    completion are re-evaluated in the same transaction.

    Raises:
        ValidationError: unknown outcome, or an issue without a comment.
        NotFoundError: no such step.
        ForbiddenError: the role is not the step's reviewer role.
        InvalidStateError: gate step, closed request, or step not actionable.
        PersistenceError: the store failed; nothing was committed.
    """
    if status not in REVIEW_OUTCOMES:
        raise ValidationError(
            f"status must be one of {sorted(REVIEW_OUTCOMES)}",
            details={"status": status},
        )
    if status == "issue" and not (comment or "").strip():
        raise ValidationError("A comment is required when flagging an issue",
                              details={"comment": "required"})
    if not reviewer_id:
        raise ValidationError("reviewer id is required", details={"reviewer_id": "required"})

    events = []
    with workflow_transaction("update_step"):
        request_id = db.session.execute(
            select(ClearanceStep.request_id).where(ClearanceStep.id == step_id)
        ).scalar_one_or_none()
        if request_id is None:
            raise NotFoundError(resource="ClearanceStep", resource_id=step_id)

        req = lock_request(request_id)
        step = next(s for s in load_steps(request_id) if s.id == step_id)

        if step.is_gate:
            raise InvalidStateError(
                "VP gate steps are decided through the approval gate",
                current_status=step.status, action="update_step",
            )
        if reviewer_role != step.reviewer_role:
            raise ForbiddenError(reviewer_role, step.reviewer_role)
        if req.status not in OPEN_REQUEST_STATUSES:
            raise InvalidStateError(
                f"Request {req.reference_code} is {req.status}; steps cannot be updated",
                current_status=req.status, action="update_step",
            )
        if step.status != "available" or not step.can_process:
            raise InvalidStateError(
                f"Step {step.id} is {step.status} and cannot be acted on",
                current_status=step.status, action="update_step",
            )

        unlocked = []
        if status == "cleared" and step.is_interdependent:
            unlocked = handle_group_clear(
                request_id, step.reviewer_role, reviewer_id,
                signature=signature, comment=comment, notes=notes,
            )
        else:
            step.record_review(status, reviewer_id, signature=signature,
                               comment=comment, notes=notes)

        if req.status == "vp_initial_approval":
            req.status = "in_progress"
        db.session.flush()

        changed = recompute_availability(request_id)
        completion = check_completion(request_id, actor_id=reviewer_id)

        kind = "STEP_APPROVED" if status == "cleared" else "STEP_REJECTED"
        verb = "cleared" if status == "cleared" else "flagged an issue on"
        events.append(ActivityEvent(
            kind=kind,
            request_id=request_id,
            actor_id=reviewer_id,
            message=f"{step.department} {verb} {req.reference_code}",
            metadata={
                "step_id": step.id,
                "reviewer_role": step.reviewer_role,
                "order": step.order,
                "comment": comment,
                "unlocked_roles": _unlocked_roles(list(unlocked) + changed),
            },
        ))
        if completion is not None:
            events.append(completion)

    dispatch(events, emitter)
    return step


def available_steps_for_role(
    role: str,
    reviewer_id: str | None = None,
    include_all: bool = False,
) -> list[ClearanceStep]:
    """
    A reviewer's queue: steps for *role*, minus those the reviewer hid.

    Actionable steps only unless *include_all*.
    """
    q = (
        select(ClearanceStep)
        .join(ClearanceRequest, ClearanceStep.request_id == ClearanceRequest.id)
        .where(ClearanceStep.reviewer_role == role)
        .where(ClearanceRequest.status != "archived")
        .order_by(ClearanceStep.request_id, ClearanceStep.order, ClearanceStep.id)
    )
    if not include_all:
        q = q.where(
            ClearanceStep.status == "available",
            ClearanceStep.can_process.is_(True),
            ClearanceRequest.status.notin_(INACTIVE_REQUEST_STATUSES),
        )
    steps = db.session.execute(q).scalars().all()
    if reviewer_id is None:
        return list(steps)
    return [s for s in steps if reviewer_id not in (s.hidden_for or [])]


def hide_step(step_id: int, reviewer_id: str, reviewer_role: str, emitter=None) -> ClearanceStep:
    """Dismiss a step from one reviewer's queue. No workflow effect."""
    if not reviewer_id:
        raise ValidationError("reviewer id is required", details={"reviewer_id": "required"})

    events = []
    with workflow_transaction("hide_step"):
        step = db.session.get(ClearanceStep, step_id)
        if step is None:
            raise NotFoundError(resource="ClearanceStep", resource_id=step_id)
        if reviewer_role != step.reviewer_role:
            raise ForbiddenError(reviewer_role, step.reviewer_role)

        hidden = list(step.hidden_for or [])
        if reviewer_id not in hidden:
            # reassign so the JSON column is marked dirty
            step.hidden_for = hidden + [reviewer_id]
            events.append(ActivityEvent(
                kind="STEP_HIDDEN",
                request_id=step.request_id,
                actor_id=reviewer_id,
                message=f"{step.department} step hidden from {reviewer_id}'s queue",
                metadata={"step_id": step.id},
            ))

    dispatch(events, emitter)
    return step


# ── Read-side views ──────────────────────────────────────────────────────────


def get_workflow_status(request_id: int) -> dict:
    """Per-stage summary, overall progress and the next actionable steps."""
    req = get_request(request_id)
    steps = load_steps(request_id)
    graph = StepGraph(steps)

    stages: dict[str, dict] = {}
    for step in steps:
        summary = stages.setdefault(step.stage, {
            "stage": step.stage,
            "total": 0, "cleared": 0, "pending": 0, "available": 0, "issue": 0,
            "steps": [],
        })
        summary["total"] += 1
        summary[step.status] += 1
        summary["steps"].append(step.to_dict())
    for summary in stages.values():
        summary["completed"] = summary["cleared"] == summary["total"]

    counts = graph.status_counts()
    total = len(steps)
    pct = round(counts["cleared"] / total * 100, 1) if total else 0.0
    derived = derive_request_status(req, steps)

    return {
        "request_id": req.id,
        "reference_code": req.reference_code,
        "status": req.status,
        "derived_status": derived,
        "status_consistent": derived == req.status,
        "stages": list(stages.values()),
        "overall_progress": {
            "total_steps": total,
            "status_counts": counts,
            "completion_percentage": pct,
        },
        "next_available_steps": [s.to_dict() for s in steps if s.can_process],
        "gates": {
            "initial": graph.steps[graph.initial_gate].status if graph.initial_gate is not None else None,
            "final": graph.steps[graph.final_gate].status if graph.final_gate is not None else None,
        },
    }


def get_signatures(request_id: int) -> dict:
    """Signature per reviewer role key, plus the two VP signatures."""
    req = get_request(request_id)
    signatures = {}
    for step in load_steps(request_id):
        if step.is_gate or not step.signature:
            continue
        signatures[_signature_key(step.reviewer_role)] = step.signature
    if req.vp_initial_signature:
        signatures["vpinitialsignature"] = req.vp_initial_signature
    if req.vp_final_signature:
        signatures["vpfinalsignature"] = req.vp_final_signature
    return {
        "request_id": req.id,
        "signatures": signatures,
        "signature_count": len(signatures),
    }
