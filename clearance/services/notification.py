"""
Staff Clearance Service
Notification Service.

Creating and querying in-app notifications. Recipients are user ids,
``role:<ReviewerRole>`` for everyone holding a reviewer role, or ``all``.
"""

from datetime import datetime, timezone

from clearance.models import db
from clearance.models.notification import (
    BROADCAST,
    NOTIFICATION_CATEGORIES,
    NOTIFICATION_SEVERITIES,
    ROLE_PREFIX,
    Notification,
)


def role_recipient(role: str) -> str:
    return f"{ROLE_PREFIX}{role}"


def _recipient_filter(recipient, role=None):
    targets = [recipient, BROADCAST]
    if role:
        targets.append(role_recipient(role))
    return Notification.recipient.in_(targets)


def _check_kind(category, severity):
    if category not in NOTIFICATION_CATEGORIES:
        raise ValueError(f"Unknown notification category: {category}")
    if severity not in NOTIFICATION_SEVERITIES:
        raise ValueError(f"Unknown notification severity: {severity}")


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, title, message="", category="system", severity="info",
               recipient=BROADCAST, request_id=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (flushed; the caller commits).
        """
        _check_kind(category, severity)
        notif = Notification(
            request_id=request_id,
            recipient=recipient,
            title=title,
            message=message,
            category=category,
            severity=severity,
        )
        db.session.add(notif)
        db.session.flush()
        return notif

    @staticmethod
    def broadcast(*, title, message="", category="system", severity="info",
                  request_id=None, recipients=None):
        """
        Send a notification to multiple recipients (or 'all' if none given).

        Returns:
            List of created Notification instances (flushed; the caller commits).
        """
        _check_kind(category, severity)
        targets = list(dict.fromkeys(recipients or [BROADCAST]))
        notifications = []
        for r in targets:
            notif = Notification(
                request_id=request_id,
                recipient=r,
                title=title,
                message=message,
                category=category,
                severity=severity,
            )
            db.session.add(notif)
            notifications.append(notif)
        db.session.flush()
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient="all", role=None, request_id=None,
                           unread_only=False, limit=50, offset=0):
        """
        Retrieve notifications for a recipient (and their reviewer role), newest first.
        """
        q = Notification.query.filter(_recipient_filter(recipient, role))
        if request_id:
            q = q.filter_by(request_id=request_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def unread_count(recipient="all", role=None):
        """Return count of unread notifications."""
        return (
            Notification.query.filter(_recipient_filter(recipient, role))
            .filter_by(is_read=False)
            .count()
        )

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id):
        """Mark a single notification as read."""
        notif = db.session.get(Notification, notification_id)
        if notif:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(recipient="all", role=None):
        """Mark all notifications for a recipient as read."""
        q = Notification.query.filter(_recipient_filter(recipient, role)).filter_by(is_read=False)
        now = datetime.now(timezone.utc)
        count = q.update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        db.session.commit()
        return count
