"""
Staff Clearance Service
Notification domain model.

Models:
    - Notification: one in-app message for an applicant, a reviewer role,
      or everyone; fed by the activity emitter.
"""

from datetime import datetime, timezone

from clearance.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_CATEGORIES = {"gate", "step", "request", "system"}
NOTIFICATION_SEVERITIES = {"info", "warning", "error", "success"}

ROLE_PREFIX = "role:"
BROADCAST = "all"


def _utcnow():
    return datetime.now(timezone.utc)


class Notification(db.Model):
    """
    In-app notification.

    ``recipient`` is a staff/user id, ``role:<ReviewerRole>`` for every
    holder of that reviewer role, or ``all``.
    """

    __tablename__ = "clearance_notifications"
    __table_args__ = (
        db.Index("idx_clearance_notification_inbox", "recipient", "is_read"),
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("clearance_requests.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )
    recipient = db.Column(db.String(150), nullable=False, default=BROADCAST)
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    category = db.Column(db.String(20), nullable=False, default="system")
    severity = db.Column(db.String(20), nullable=False, default="info")

    is_read = db.Column(db.Boolean, nullable=False, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    @property
    def audience(self):
        """``role``, ``all`` or ``user``."""
        if self.recipient == BROADCAST:
            return "all"
        if (self.recipient or "").startswith(ROLE_PREFIX):
            return "role"
        return "user"

    def mark_read(self):
        if not self.is_read:
            self.is_read = True
            self.read_at = _utcnow()

    def to_dict(self):
        return {
            "id": self.id,
            "request_id": self.request_id,
            "recipient": self.recipient,
            "audience": self.audience,
            "title": self.title,
            "message": self.message,
            "category": self.category,
            "severity": self.severity,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id} → {self.recipient}: {self.title[:40]}>"
