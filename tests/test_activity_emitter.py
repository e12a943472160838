"""
Activity emitter tests.

Covers:
    1.  Default emitter: activity rows, applicant notice, role fan-out
    2.  A failing emitter never undoes the committed workflow change
    3.  write_activity rejects unknown actions
"""

import logging

import pytest

from clearance.models import db
from clearance.models.activity import ActivityLog, write_activity
from clearance.models.clearance import ClearanceRequest
from clearance.models.notification import Notification
from clearance.services import approval_gate, clearance_service, workflow_engine
from clearance.services.activity import ActivityEmitter, ActivityEvent, dispatch

VP = "AcademicVicePresident"


class ExplodingEmitter:
    def __init__(self):
        self.calls = 0

    def emit(self, event):
        self.calls += 1
        raise RuntimeError("mail relay down")


def _create(emitter=None, staff_id="S-400"):
    return clearance_service.create_request(
        {
            "staff_id": staff_id,
            "contact_email": f"{staff_id.lower()}@university.edu",
            "purpose": "End of Contract",
            "workflow_name": "four_step",
        },
        emitter=emitter,
    )


# ── 1. Default emitter ───────────────────────────────────────────────────


class TestDefaultEmitter:
    def test_creation_writes_log_and_notifications(self):
        req = _create()

        logs = ActivityLog.query.filter_by(request_id=req.id).all()
        assert [log.action for log in logs] == ["REQUEST_CREATED"]
        assert logs[0].diff["workflow"] == "four_step"
        assert logs[0].actor_id == "S-400"

        recipients = sorted(n.recipient for n in Notification.query.filter_by(request_id=req.id))
        assert recipients == ["S-400", f"role:{VP}"]

    def test_gate_approval_notifies_unlocked_roles(self):
        req = _create()
        approval_gate.approve_initial(req.id, "vp-1", VP, "vp-sig")

        role_notes = {
            n.recipient for n in Notification.query.filter_by(request_id=req.id)
            if n.recipient.startswith("role:")
        }
        assert role_notes == {f"role:{VP}", "role:ReviewerA", "role:ReviewerB"}

        approval = ActivityLog.query.filter_by(request_id=req.id, action="INITIAL_APPROVAL").one()
        assert approval.diff["decision_change"] is False
        assert approval.actor_id == "vp-1"

    def test_hidden_step_logged_without_notice(self):
        req = _create()
        step = next(s for s in workflow_engine.load_steps(req.id) if s.reviewer_role == "ReviewerA")
        before = Notification.query.count()
        workflow_engine.hide_step(step.id, "u-a", "ReviewerA")

        assert ActivityLog.query.filter_by(action="STEP_HIDDEN").count() == 1
        assert Notification.query.count() == before

    def test_emit_directly(self):
        req = _create(emitter=ExplodingEmitter())
        ActivityEmitter().emit(ActivityEvent(
            kind="STEP_REJECTED", request_id=req.id, actor_id="u-b",
            message="Library flagged an issue", metadata={"comment": "Overdue books"},
        ))
        log = ActivityLog.query.filter_by(action="STEP_REJECTED").one()
        assert log.to_dict()["metadata"] == {"comment": "Overdue books"}
        notice = Notification.query.filter_by(recipient="S-400").one()
        assert notice.severity == "warning"


# ── 2. Emitter failure isolation ─────────────────────────────────────────


class TestEmitterFailure:
    def test_failure_keeps_workflow_change(self, caplog):
        exploding = ExplodingEmitter()
        with caplog.at_level(logging.ERROR, logger="clearance.services.activity"):
            req = _create(emitter=exploding)
            approval_gate.approve_initial(req.id, "vp-1", VP, "vp-sig", emitter=exploding)

        assert exploding.calls == 2
        stored = db.session.get(ClearanceRequest, req.id)
        assert stored.status == "vp_initial_approval"
        assert stored.vp_initial_signature == "vp-sig"
        assert ActivityLog.query.count() == 0
        assert "INITIAL_APPROVAL" in caplog.text

    def test_remaining_events_still_dispatched(self):
        class FlakyEmitter:
            def __init__(self):
                self.seen = []

            def emit(self, event):
                self.seen.append(event.kind)
                if event.kind == "STEP_APPROVED":
                    raise RuntimeError("boom")

        events = [
            ActivityEvent("STEP_APPROVED", 1, "u", "first"),
            ActivityEvent("REQUEST_COMPLETED", 1, "u", "second"),
        ]
        flaky = FlakyEmitter()
        dispatch(events, flaky)
        assert flaky.seen == ["STEP_APPROVED", "REQUEST_COMPLETED"]

    def test_partial_emitter_write_rolled_back(self):
        req = _create(emitter=ExplodingEmitter())

        class HalfEmitter:
            def emit(self, event):
                write_activity(request_id=event.request_id, action=event.kind,
                               actor_id=event.actor_id, description=event.message)
                raise RuntimeError("notification store offline")

        approval_gate.approve_initial(req.id, "vp-1", VP, "vp-sig", emitter=HalfEmitter())
        assert ActivityLog.query.count() == 0
        assert db.session.get(ClearanceRequest, req.id).status == "vp_initial_approval"


# ── 3. write_activity ────────────────────────────────────────────────────


def test_unknown_action_rejected():
    req = _create(emitter=ExplodingEmitter())
    with pytest.raises(ValueError, match="Unknown activity action"):
        write_activity(request_id=req.id, action="STEP_TELEPORTED")
