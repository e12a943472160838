"""
Staff Clearance Service
Activity domain model.

Models:
    - ActivityLog: immutable, append-only trail of clearance workflow events.
"""

import json
from datetime import datetime, timezone

from clearance.models import db


# ── Constants ────────────────────────────────────────────────────────────────

ACTIVITY_ACTIONS = {
    # Intake
    "REQUEST_CREATED",
    # Initial VP gate
    "INITIAL_APPROVAL",
    "INITIAL_REJECTION",
    "INITIAL_UNDONE",
    # Final VP gate
    "FINAL_APPROVAL",
    "FINAL_REJECTION",
    "FINAL_UNDONE",
    # Reviewer steps
    "STEP_APPROVED",
    "STEP_REJECTED",
    "STEP_HIDDEN",
    # Completion
    "REQUEST_COMPLETED",
}


class ActivityLog(db.Model):
    """
    One row per workflow event on a clearance request.

    ``diff_json`` carries the event metadata (step id, decision_change flag,
    rejection reason, ...). Rows are never updated or deleted.
    """

    __tablename__ = "clearance_activity_logs"
    __table_args__ = (
        db.Index("idx_activity_request", "request_id"),
        db.Index("idx_activity_action", "action"),
        db.Index("idx_activity_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer,
        db.ForeignKey("clearance_requests.id", ondelete="CASCADE"),
        nullable=False,
    )
    actor_id = db.Column(db.String(64), nullable=False, default="system")
    action = db.Column(
        db.String(40), nullable=False,
        comment="INITIAL_APPROVAL | STEP_APPROVED | REQUEST_COMPLETED | …",
    )
    description = db.Column(db.Text, default="")
    diff_json = db.Column(db.Text, default="{}")
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "actor_id": self.actor_id,
            "action": self.action,
            "description": self.description,
            "metadata": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<ActivityLog {self.id}: {self.action} on request {self.request_id}>"


def write_activity(
    *,
    request_id: int,
    action: str,
    actor_id: str | None = None,
    description: str = "",
    metadata: dict | None = None,
) -> ActivityLog:
    """
    Append a single activity row.  Uses ``flush`` so callers keep
    transaction control.
    """
    if action not in ACTIVITY_ACTIONS:
        raise ValueError(f"Unknown activity action: {action}")
    log = ActivityLog(
        request_id=request_id,
        actor_id=str(actor_id) if actor_id is not None else "system",
        action=action,
        description=description,
        diff_json=json.dumps(metadata or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
