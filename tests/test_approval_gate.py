"""
VP approval gate tests.

Covers:
    1.  Initial gate: approve / reject / undo, including decision changes
    2.  Final gate: approve (→ cleared), reject from cleared, re-approve,
        reject mid-review parks open reviewer steps until undone
    3.  Undo restores the pre-decision snapshot exactly
    4.  Guards: role mismatch, wrong source status, missing text,
        downstream reviewers already acted
    5.  Exactly one gate event per operation
"""

import pytest

from clearance.core.exceptions import (
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from clearance.models import db
from clearance.models.clearance import ClearanceRequest
from clearance.services import approval_gate, clearance_service, workflow_engine
from clearance.services.workflow_templates import (
    StageTemplate,
    WorkflowTemplate,
    register_template,
)

VP = "AcademicVicePresident"

GATED = WorkflowTemplate(
    name="gated",
    stages=[
        StageTemplate("Initial", "Initial approval", 1, (VP,), vp_signature_type="initial"),
        StageTemplate("Middle", "Department", 2, ("ReviewerA",), depends_on=(1,)),
        StageTemplate("Final", "Final approval", 3, (VP,), depends_on=(2,), vp_signature_type="final"),
    ],
)

_VOLATILE = {"created_at", "updated_at", "last_updated_at"}


@pytest.fixture()
def gated_request(recording_emitter):
    register_template(GATED)
    req = clearance_service.create_request(
        {
            "staff_id": "S-200",
            "contact_email": "s200@university.edu",
            "purpose": "Retirement",
            "workflow_name": "gated",
        },
        emitter=recording_emitter,
    )
    recording_emitter.events.clear()
    return req


def _snapshot(request_id):
    req = db.session.get(ClearanceRequest, request_id)
    db.session.refresh(req)
    data = {k: v for k, v in req.to_dict().items() if k not in _VOLATILE}
    data["steps"] = [
        {k: v for k, v in s.to_dict().items() if k not in _VOLATILE}
        for s in workflow_engine.load_steps(request_id)
    ]
    return data


def _step(request_id, role=None, gate=None):
    for s in workflow_engine.load_steps(request_id):
        if gate and s.vp_signature_type == gate:
            return s
        if role and s.reviewer_role == role and not s.is_gate:
            return s
    raise AssertionError("step not found")


def _to_final_gate(req, emitter):
    """Approve the initial gate and clear the department step."""
    approval_gate.approve_initial(req.id, "vp-1", VP, "vp-init", emitter=emitter)
    a = _step(req.id, role="ReviewerA")
    workflow_engine.update_step(a.id, "rev-a", "ReviewerA", "cleared", signature="sig-a", emitter=emitter)
    emitter.events.clear()


# ── 1. Initial gate ──────────────────────────────────────────────────────


class TestInitialGate:
    def test_approve_unlocks_graph(self, gated_request, recording_emitter):
        req = approval_gate.approve_initial(gated_request.id, "vp-1", VP, "vp-init",
                                            emitter=recording_emitter)
        assert req.status == "vp_initial_approval"
        assert req.vp_initial_signature == "vp-init"
        assert req.vp_initial_signed_by == "vp-1"
        assert req.vp_initial_signed_at is not None
        assert _step(req.id, gate="initial").status == "cleared"
        assert _step(req.id, role="ReviewerA").status == "available"

        assert recording_emitter.kinds == ["INITIAL_APPROVAL"]
        meta = recording_emitter.events[0].metadata
        assert meta["decision_change"] is False
        assert meta["previous_status"] == "initiated"
        assert meta["unlocked_roles"] == ["ReviewerA"]

    def test_reject_from_initiated(self, gated_request, recording_emitter):
        req = approval_gate.reject_initial(gated_request.id, "vp-1", VP, "Incomplete handover",
                                           emitter=recording_emitter)
        assert req.status == "rejected"
        assert req.rejection_stage == "initial"
        assert req.rejection_reason == "Incomplete handover"
        assert req.rejected_by == "vp-1"
        gate = _step(req.id, gate="initial")
        assert (gate.status, gate.comment) == ("issue", "Incomplete handover")
        assert _step(req.id, role="ReviewerA").status == "pending"
        assert recording_emitter.kinds == ["INITIAL_REJECTION"]
        assert recording_emitter.events[0].metadata["decision_change"] is False

    def test_reject_after_approval_is_decision_change(self, gated_request, recording_emitter):
        approval_gate.approve_initial(gated_request.id, "vp-1", VP, "vp-init", emitter=recording_emitter)
        req = approval_gate.reject_initial(gated_request.id, "vp-1", VP, "Changed my mind",
                                           emitter=recording_emitter)
        assert req.status == "rejected"
        assert req.vp_initial_signature is None
        assert req.vp_initial_signed_at is None
        assert _step(req.id, role="ReviewerA").status == "pending"
        assert recording_emitter.kinds == ["INITIAL_APPROVAL", "INITIAL_REJECTION"]
        assert recording_emitter.events[-1].metadata["decision_change"] is True

    def test_approve_after_rejection_clears_rejection(self, gated_request, recording_emitter):
        approval_gate.reject_initial(gated_request.id, "vp-1", VP, "Missing form", emitter=recording_emitter)
        req = approval_gate.approve_initial(gated_request.id, "vp-2", VP, "vp-init",
                                            emitter=recording_emitter)
        assert req.status == "vp_initial_approval"
        assert req.rejection_reason is None
        assert req.rejection_stage is None
        assert req.rejected_at is None
        assert recording_emitter.events[-1].metadata["decision_change"] is True
        assert _step(req.id, role="ReviewerA").status == "available"

    def test_approve_twice_refused(self, gated_request, recording_emitter):
        approval_gate.approve_initial(gated_request.id, "vp-1", VP, "vp-init", emitter=recording_emitter)
        with pytest.raises(InvalidStateError) as exc:
            approval_gate.approve_initial(gated_request.id, "vp-1", VP, "vp-init", emitter=recording_emitter)
        assert exc.value.current_status == "vp_initial_approval"
        assert recording_emitter.kinds == ["INITIAL_APPROVAL"]

    def test_reject_refused_once_reviewers_acted(self, gated_request, recording_emitter):
        _to_final_gate(gated_request, recording_emitter)
        with pytest.raises(InvalidStateError):
            approval_gate.reject_initial(gated_request.id, "vp-1", VP, "Too late", emitter=recording_emitter)
        assert _step(gated_request.id, role="ReviewerA").status == "cleared"
        assert recording_emitter.events == []


# ── 2. Final gate ────────────────────────────────────────────────────────


class TestFinalGate:
    def test_final_gate_waits_for_departments(self, gated_request, recording_emitter):
        approval_gate.approve_initial(gated_request.id, "vp-1", VP, "vp-init", emitter=recording_emitter)
        assert _step(gated_request.id, gate="final").status == "pending"
        with pytest.raises(InvalidStateError):
            approval_gate.approve_final(gated_request.id, "vp-1", VP, "vp-final", emitter=recording_emitter)

    def test_approve_completes_request(self, gated_request, recording_emitter):
        _to_final_gate(gated_request, recording_emitter)
        assert _step(gated_request.id, gate="final").status == "available"

        req = approval_gate.approve_final(gated_request.id, "vp-1", VP, "vp-final",
                                          emitter=recording_emitter)
        assert req.status == "cleared"
        assert req.completed_at is not None
        assert req.vp_final_signature == "vp-final"
        assert recording_emitter.kinds == ["FINAL_APPROVAL", "REQUEST_COMPLETED"]
        assert recording_emitter.events[0].metadata["previous_status"] == "in_progress"

    def test_reject_after_clearance(self, gated_request, recording_emitter):
        _to_final_gate(gated_request, recording_emitter)
        approval_gate.approve_final(gated_request.id, "vp-1", VP, "vp-final", emitter=recording_emitter)

        req = approval_gate.reject_final(gated_request.id, "vp-1", VP, "Asset audit pending",
                                         emitter=recording_emitter)
        assert req.status == "rejected"
        assert req.rejection_stage == "final"
        assert req.completed_at is None
        assert req.vp_final_signature is None
        assert req.vp_initial_signature == "vp-init"
        assert _step(req.id, gate="final").status == "issue"
        assert recording_emitter.kinds[-1] == "FINAL_REJECTION"
        assert recording_emitter.events[-1].metadata["decision_change"] is True

    def test_reapprove_after_final_rejection(self, gated_request, recording_emitter):
        _to_final_gate(gated_request, recording_emitter)
        approval_gate.reject_final(gated_request.id, "vp-1", VP, "Not yet", emitter=recording_emitter)
        assert recording_emitter.events[-1].metadata["decision_change"] is False

        req = approval_gate.approve_final(gated_request.id, "vp-1", VP, "vp-final",
                                          emitter=recording_emitter)
        assert req.status == "cleared"
        assert req.rejection_reason is None
        assert recording_emitter.kinds == ["FINAL_REJECTION", "FINAL_APPROVAL", "REQUEST_COMPLETED"]
        assert recording_emitter.events[1].metadata["decision_change"] is True

    def test_reject_mid_review_parks_reviewer_queues(self, recording_emitter):
        req = clearance_service.create_request(
            {"staff_id": "S-210", "contact_email": "s210@university.edu",
             "purpose": "Resignation", "workflow_name": "administrative_staff"},
            emitter=recording_emitter,
        )
        approval_gate.approve_initial(req.id, "vp-1", VP, "vp-init", emitter=recording_emitter)
        dept = _step(req.id, role="DepartmentReviewer")
        workflow_engine.update_step(dept.id, "rev-d", "DepartmentReviewer", "cleared",
                                    signature="sig-d", emitter=recording_emitter)
        waiting = ["LibraryReviewer", "ICTReviewer", "EmployeeFinanceReviewer",
                   "Store1Reviewer", "Store2Reviewer"]
        assert len(workflow_engine.available_steps_for_role("LibraryReviewer")) == 1

        approval_gate.reject_final(req.id, "vp-1", VP, "Contract dispute", emitter=recording_emitter)
        for role in waiting:
            step = _step(req.id, role=role)
            assert step.status == "pending"
            assert step.can_process is False
        assert _step(req.id, role="DepartmentReviewer").status == "cleared"
        assert workflow_engine.available_steps_for_role("LibraryReviewer") == []

        approval_gate.undo_final(req.id, "vp-1", VP, emitter=recording_emitter)
        for role in waiting:
            step = _step(req.id, role=role)
            assert step.status == "available"
            assert step.can_process is True
        assert _step(req.id, gate="final").status == "pending"
        assert len(workflow_engine.available_steps_for_role("LibraryReviewer")) == 1

    def test_final_ops_refused_before_start(self, gated_request, recording_emitter):
        with pytest.raises(InvalidStateError):
            approval_gate.reject_final(gated_request.id, "vp-1", VP, "No", emitter=recording_emitter)
        with pytest.raises(InvalidStateError):
            approval_gate.undo_final(gated_request.id, "vp-1", VP, emitter=recording_emitter)


# ── 3. Undo restores the prior state ─────────────────────────────────────


class TestUndo:
    def test_undo_initial_approval(self, gated_request, recording_emitter):
        before = _snapshot(gated_request.id)
        approval_gate.approve_initial(gated_request.id, "vp-1", VP, "vp-init", emitter=recording_emitter)
        approval_gate.undo_initial(gated_request.id, "vp-1", VP, emitter=recording_emitter)
        assert _snapshot(gated_request.id) == before

        event = recording_emitter.events[-1]
        assert event.kind == "INITIAL_UNDONE"
        assert event.metadata["reverted"] == "approval"
        assert event.metadata["decision_change"] is False

    def test_undo_initial_rejection(self, gated_request, recording_emitter):
        before = _snapshot(gated_request.id)
        approval_gate.reject_initial(gated_request.id, "vp-1", VP, "Wrong form", emitter=recording_emitter)
        approval_gate.undo_initial(gated_request.id, "vp-1", VP, emitter=recording_emitter)
        assert _snapshot(gated_request.id) == before
        assert recording_emitter.events[-1].metadata["reverted"] == "rejection"

    def test_undo_final_approval(self, gated_request, recording_emitter):
        _to_final_gate(gated_request, recording_emitter)
        before = _snapshot(gated_request.id)
        approval_gate.approve_final(gated_request.id, "vp-1", VP, "vp-final", emitter=recording_emitter)
        req = approval_gate.undo_final(gated_request.id, "vp-1", VP, emitter=recording_emitter)
        assert req.status == "in_progress"
        assert _snapshot(gated_request.id) == before
        assert recording_emitter.kinds[-1] == "FINAL_UNDONE"

    def test_undo_final_rejection(self, gated_request, recording_emitter):
        _to_final_gate(gated_request, recording_emitter)
        before = _snapshot(gated_request.id)
        approval_gate.reject_final(gated_request.id, "vp-1", VP, "Hold", emitter=recording_emitter)
        approval_gate.undo_final(gated_request.id, "vp-1", VP, emitter=recording_emitter)
        assert _snapshot(gated_request.id) == before
        assert recording_emitter.events[-1].metadata["reverted"] == "rejection"

    def test_undo_without_decision_refused(self, gated_request, recording_emitter):
        with pytest.raises(InvalidStateError):
            approval_gate.undo_initial(gated_request.id, "vp-1", VP, emitter=recording_emitter)
        assert recording_emitter.events == []


# ── 4. Guards ────────────────────────────────────────────────────────────


class TestGuards:
    def test_role_mismatch(self, gated_request, recording_emitter):
        with pytest.raises(ForbiddenError):
            approval_gate.approve_initial(gated_request.id, "x", "ReviewerA", "sig", emitter=recording_emitter)
        assert db.session.get(ClearanceRequest, gated_request.id).status == "initiated"

    @pytest.mark.parametrize("signature", [None, "", "   "])
    def test_signature_required(self, gated_request, recording_emitter, signature):
        with pytest.raises(ValidationError):
            approval_gate.approve_initial(gated_request.id, "vp-1", VP, signature, emitter=recording_emitter)

    @pytest.mark.parametrize("reason", [None, ""])
    def test_reason_required(self, gated_request, recording_emitter, reason):
        with pytest.raises(ValidationError):
            approval_gate.reject_initial(gated_request.id, "vp-1", VP, reason, emitter=recording_emitter)

    def test_unknown_request(self, recording_emitter):
        with pytest.raises(NotFoundError):
            approval_gate.approve_initial(404, "vp-1", VP, "sig", emitter=recording_emitter)

    def test_template_without_final_gate(self, recording_emitter):
        req = clearance_service.create_request(
            {"staff_id": "S-1", "contact_email": "s1@university.edu",
             "purpose": "Transfer", "workflow_name": "four_step"},
            emitter=recording_emitter,
        )
        with pytest.raises(NotFoundError):
            approval_gate.approve_final(req.id, "vp-1", VP, "sig", emitter=recording_emitter)


# ── 5. One event per operation ───────────────────────────────────────────


def test_each_gate_operation_emits_one_gate_event(gated_request, recording_emitter):
    ops = [
        lambda: approval_gate.reject_initial(gated_request.id, "vp-1", VP, "r1", emitter=recording_emitter),
        lambda: approval_gate.undo_initial(gated_request.id, "vp-1", VP, emitter=recording_emitter),
        lambda: approval_gate.approve_initial(gated_request.id, "vp-1", VP, "s", emitter=recording_emitter),
        lambda: approval_gate.undo_initial(gated_request.id, "vp-1", VP, emitter=recording_emitter),
        lambda: approval_gate.approve_initial(gated_request.id, "vp-1", VP, "s", emitter=recording_emitter),
    ]
    for op in ops:
        before = len(recording_emitter.events)
        op()
        assert len(recording_emitter.events) == before + 1

    assert recording_emitter.kinds == [
        "INITIAL_REJECTION", "INITIAL_UNDONE", "INITIAL_APPROVAL", "INITIAL_UNDONE", "INITIAL_APPROVAL",
    ]
