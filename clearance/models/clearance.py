"""
Staff Clearance Service
Clearance domain models.

Models:
    - ClearanceRequest:  one departing staff member's clearance file
    - ClearanceStep:     one reviewer's sign-off slot within a request

Architecture:
    ClearanceRequest ──1:N──▶ ClearanceStep
    ClearanceStep ──N:M──▶ ClearanceStep  (by order, via depends_on)
    ClearanceStep ──group──▶ ClearanceStep  (by reviewer role, via interdependent_with)

Lifecycle states:
    ClearanceRequest:  initiated → vp_initial_approval → in_progress → cleared
                       initiated | vp_initial_approval → rejected (initial gate)
                       in_progress | cleared → rejected (final gate)
    ClearanceStep:     pending → available → cleared
                       available → issue
                       cleared | issue → available (VP undo only)
"""

from datetime import datetime, timezone

from clearance.models import db


# ── Constants ────────────────────────────────────────────────────────────────

REQUEST_STATUSES = {
    "initiated", "vp_initial_approval", "in_progress",
    "cleared", "rejected", "archived",
}

# A staff member may hold only one request outside these statuses.
INACTIVE_REQUEST_STATUSES = {"rejected", "archived"}

# Step updates are only accepted while the graph is running.
OPEN_REQUEST_STATUSES = {"vp_initial_approval", "in_progress"}

STEP_STATUSES = {"pending", "available", "cleared", "issue"}

# Reviewer-settable outcomes for a non-gate step
REVIEW_OUTCOMES = {"cleared", "issue"}

VP_SIGNATURE_TYPES = {"initial", "final"}

CLEARANCE_PURPOSES = {
    "Resignation", "Retirement", "Transfer", "Leave", "End of Contract",
}

FILE_VISIBILITIES = {"hr", "vp", "all"}


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# 1. ClearanceRequest
# ═════════════════════════════════════════════════════════════════════════════


class ClearanceRequest(db.Model):
    """
    A staff member's request to be cleared before leaving.

    The status column is the stored truth; ``derive_request_status`` in the
    workflow engine recomputes it from the steps and gate fields as a
    cross-check for the status view.
    """

    __tablename__ = "clearance_requests"

    id = db.Column(db.Integer, primary_key=True)
    reference_code = db.Column(
        db.String(40), nullable=False, unique=True,
        comment="Immutable external identifier, e.g. TCS-2026-00042",
    )
    status = db.Column(db.String(30), nullable=False, default="initiated", index=True)

    # Applicant
    staff_id = db.Column(db.String(64), nullable=False, index=True)
    contact_email = db.Column(db.String(255), nullable=False, index=True)
    purpose = db.Column(
        db.String(30), nullable=False,
        comment="Resignation | Retirement | Transfer | Leave | End of Contract",
    )
    initiated_by = db.Column(db.String(64), nullable=True)
    workflow_name = db.Column(db.String(60), nullable=False, default="academic_staff")

    # Initial VP gate
    vp_initial_signature = db.Column(db.Text, nullable=True)
    vp_initial_signed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    vp_initial_signed_by = db.Column(db.String(64), nullable=True)

    # Final VP gate
    vp_final_signature = db.Column(db.Text, nullable=True)
    vp_final_signed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    vp_final_signed_by = db.Column(db.String(64), nullable=True)

    # Rejection metadata; cleared when a later decision supersedes it
    rejection_reason = db.Column(db.Text, nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_by = db.Column(db.String(64), nullable=True)
    rejection_stage = db.Column(
        db.String(10), nullable=True,
        comment="initial | final: which gate issued the rejection",
    )

    # Opaque applicant payloads
    form_data = db.Column(db.JSON, default=dict)
    uploaded_files = db.Column(
        db.JSON, default=list,
        comment="[{file_name, file_path, size, visibility}] descriptors only",
    )

    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('initiated','vp_initial_approval','in_progress',"
            "'cleared','rejected','archived')",
            name="ck_clearance_request_status",
        ),
    )

    steps = db.relationship(
        "ClearanceStep", backref="request",
        cascade="all, delete-orphan",
        order_by="ClearanceStep.id",
    )

    def to_dict(self, include_steps=False):
        result = {
            "id": self.id,
            "reference_code": self.reference_code,
            "status": self.status,
            "staff_id": self.staff_id,
            "contact_email": self.contact_email,
            "purpose": self.purpose,
            "initiated_by": self.initiated_by,
            "workflow_name": self.workflow_name,
            "vp_initial_signature": self.vp_initial_signature,
            "vp_initial_signed_at": _iso(self.vp_initial_signed_at),
            "vp_initial_signed_by": self.vp_initial_signed_by,
            "vp_final_signature": self.vp_final_signature,
            "vp_final_signed_at": _iso(self.vp_final_signed_at),
            "vp_final_signed_by": self.vp_final_signed_by,
            "rejection_reason": self.rejection_reason,
            "rejected_at": _iso(self.rejected_at),
            "rejected_by": self.rejected_by,
            "rejection_stage": self.rejection_stage,
            "form_data": self.form_data or {},
            "uploaded_files": self.uploaded_files or [],
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_steps:
            result["steps"] = [s.to_dict() for s in self.steps]
        return result

    def __repr__(self):
        return f"<ClearanceRequest {self.id}: {self.reference_code} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. ClearanceStep
# ═════════════════════════════════════════════════════════════════════════════


class ClearanceStep(db.Model):
    """
    One reviewer's slot in a request's clearance graph.

    Created in bulk when the request is submitted and never added or removed
    afterwards. ``can_process`` always mirrors ``status == "available"``;
    use ``set_status`` rather than writing either column directly.
    """

    __tablename__ = "clearance_steps"
    __table_args__ = (
        db.Index("idx_clearance_step_request_order", "request_id", "order"),
        db.Index("idx_clearance_step_role_status", "reviewer_role", "status"),
        db.CheckConstraint(
            "status IN ('pending','available','cleared','issue')",
            name="ck_clearance_step_status",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("clearance_requests.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )

    # Copied from the workflow template at materialization
    reviewer_role = db.Column(db.String(60), nullable=False)
    order = db.Column(db.Integer, nullable=False, comment="Stage position; several steps may share one")
    stage = db.Column(db.String(30), nullable=False, default="Middle", comment="Initial | Middle | Final")
    department = db.Column(db.String(200), default="")
    description = db.Column(db.Text, default="")
    is_sequential = db.Column(db.Boolean, default=True)
    depends_on = db.Column(db.JSON, default=list, comment="Orders that must be fully cleared first")
    is_interdependent = db.Column(db.Boolean, default=False)
    interdependent_with = db.Column(db.JSON, default=list, comment="Reviewer roles forming the group")
    vp_signature_type = db.Column(db.String(10), nullable=True, comment="initial | final | null")

    # Workflow state
    status = db.Column(db.String(20), nullable=False, default="pending")
    can_process = db.Column(db.Boolean, nullable=False, default=False)

    # Review outcome
    reviewed_by = db.Column(db.String(64), nullable=True)
    signature = db.Column(db.Text, nullable=True)
    comment = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    last_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Reviewer ids that dismissed this step from their queue
    hidden_for = db.Column(db.JSON, default=list)

    @property
    def is_gate(self):
        return self.vp_signature_type is not None

    def set_status(self, status):
        """Move to *status* keeping ``can_process`` in lockstep."""
        if status not in STEP_STATUSES:
            raise ValueError(f"Unknown step status: {status}")
        self.status = status
        self.can_process = status == "available"

    def record_review(self, status, reviewer_id, signature=None, comment=None, notes=None):
        self.set_status(status)
        self.reviewed_by = reviewer_id
        self.signature = signature
        self.comment = comment
        if notes is not None:
            self.notes = notes
        self.last_updated_at = _utcnow()

    def reset_review(self):
        """Return to an unreviewed, actionable slot."""
        self.set_status("available")
        self.reviewed_by = None
        self.signature = None
        self.comment = None
        self.last_updated_at = _utcnow()

    def to_dict(self):
        return {
            "id": self.id,
            "request_id": self.request_id,
            "reviewer_role": self.reviewer_role,
            "order": self.order,
            "stage": self.stage,
            "department": self.department,
            "description": self.description,
            "is_sequential": self.is_sequential,
            "depends_on": list(self.depends_on or []),
            "is_interdependent": self.is_interdependent,
            "interdependent_with": list(self.interdependent_with or []),
            "vp_signature_type": self.vp_signature_type,
            "status": self.status,
            "can_process": self.can_process,
            "reviewed_by": self.reviewed_by,
            "signature": self.signature,
            "comment": self.comment,
            "notes": self.notes,
            "last_updated_at": _iso(self.last_updated_at),
        }

    def __repr__(self):
        return f"<ClearanceStep {self.id}: {self.reviewer_role}#{self.order} [{self.status}]>"
