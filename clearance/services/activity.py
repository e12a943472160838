"""
Activity / notification emitter.

Workflow operations collect ``ActivityEvent`` objects while they mutate
state and hand them to an emitter only after their own commit succeeded.
The emitter writes the ActivityLog row and fans out in-app notifications
in a separate transaction: if that fails, the failure is logged and rolled
back on its own and the workflow change stays committed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from clearance.models import db
from clearance.models.activity import write_activity
from clearance.models.clearance import ClearanceRequest
from clearance.services.notification import NotificationService, role_recipient

logger = logging.getLogger(__name__)


@dataclass
class ActivityEvent:
    """One workflow-caused event on a clearance request."""

    kind: str
    request_id: int
    actor_id: str | None
    message: str
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "request_id": self.request_id,
            "actor_id": self.actor_id,
            "message": self.message,
            "metadata": dict(self.metadata),
        }


# kind → (notification title, category, severity); kinds absent here only log
_APPLICANT_NOTICES = {
    "REQUEST_CREATED": ("Clearance request submitted", "request", "info"),
    "INITIAL_APPROVAL": ("Clearance approved to start", "gate", "success"),
    "INITIAL_REJECTION": ("Clearance request rejected", "gate", "error"),
    "INITIAL_UNDONE": ("Initial VP decision withdrawn", "gate", "warning"),
    "FINAL_APPROVAL": ("Final VP approval recorded", "gate", "success"),
    "FINAL_REJECTION": ("Clearance rejected at final review", "gate", "error"),
    "FINAL_UNDONE": ("Final VP decision withdrawn", "gate", "warning"),
    "STEP_APPROVED": ("Department clearance signed", "step", "success"),
    "STEP_REJECTED": ("Department flagged an issue", "step", "warning"),
    "REQUEST_COMPLETED": ("Clearance completed", "request", "success"),
}


class ActivityEmitter:
    """Default emitter: activity log row plus in-app notifications."""

    def emit(self, event: ActivityEvent) -> None:
        write_activity(
            request_id=event.request_id,
            action=event.kind,
            actor_id=event.actor_id,
            description=event.message,
            metadata=event.metadata,
        )
        self._notify(event)
        db.session.commit()

    @staticmethod
    def _notify(event: ActivityEvent) -> None:
        notice = _APPLICANT_NOTICES.get(event.kind)
        if notice is None:
            return
        title, category, severity = notice
        req = db.session.get(ClearanceRequest, event.request_id)
        if req is not None:
            NotificationService.create(
                title=f"{title}: {req.reference_code}",
                message=event.message,
                category=category,
                severity=severity,
                recipient=req.staff_id,
                request_id=req.id,
            )

        unlocked = event.metadata.get("unlocked_roles") or []
        if unlocked:
            NotificationService.broadcast(
                title="Clearance step awaiting your review",
                message=event.message,
                category="step",
                severity="info",
                request_id=event.request_id,
                recipients=[role_recipient(r) for r in unlocked],
            )


_default_emitter = ActivityEmitter()


def dispatch(events: list[ActivityEvent], emitter=None) -> None:
    """
    Hand committed events to the emitter, one at a time.

    Never raises: an emitter failure is logged with its event and rolled
    back, and the remaining events are still attempted.
    """
    target = emitter or _default_emitter
    for event in events:
        try:
            target.emit(event)
        except Exception:
            db.session.rollback()
            logger.exception(
                "Activity emitter failed for %s", event.kind,
                extra={"request_id": event.request_id, "event_type": event.kind},
            )
        else:
            logger.info(
                "%s: %s", event.kind, event.message,
                extra={
                    "request_id": event.request_id,
                    "event_type": event.kind,
                    "actor_id": event.actor_id,
                    "decision_change": event.metadata.get("decision_change"),
                },
            )
