"""
Staff Clearance Service
Notification Blueprint.

The in-app inbox fed by the activity emitter. The caller's identity
(``X-User-Id``) and role (``X-User-Role``) select which notifications
are visible: their own, their role's, and broadcasts.
"""

import logging

from flask import Blueprint, jsonify, request

from clearance.models import db
from clearance.models.notification import Notification
from clearance.services.notification import NotificationService
from clearance.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1")
register_error_handlers(notification_bp)


def _caller():
    return request.headers.get("X-User-Id", "all"), request.headers.get("X-User-Role")


@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    """List notifications for the caller, newest first."""
    recipient, role = _caller()
    items, total = NotificationService.list_for_recipient(
        recipient=recipient,
        role=role,
        request_id=request.args.get("request_id", type=int),
        unread_only=request.args.get("unread_only", "false").lower() == "true",
        limit=min(request.args.get("limit", 50, type=int), 200),
        offset=request.args.get("offset", 0, type=int),
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total})


@notification_bp.route("/notifications/unread-count", methods=["GET"])
def unread_count():
    recipient, role = _caller()
    return jsonify({"unread_count": NotificationService.unread_count(recipient, role)})


@notification_bp.route("/notifications/<int:nid>/read", methods=["PATCH"])
def mark_read(nid):
    notif = NotificationService.mark_read(nid)
    if not notif:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/mark-all-read", methods=["POST"])
def mark_all_read():
    recipient, role = _caller()
    count = NotificationService.mark_all_read(recipient, role)
    return jsonify({"marked_read": count})


@notification_bp.route("/notifications/<int:nid>", methods=["GET"])
def get_notification(nid):
    notif = db.session.get(Notification, nid)
    if not notif:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict())
