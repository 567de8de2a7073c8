"""
Notification Blueprint.

Read side of the notification sink: engine components write notifications
after their commits; the SPA polls these routes.
"""

from flask import Blueprint, jsonify, request

from lifecycle_engine.services.notification import NotificationService
from lifecycle_engine.utils.errors import E, api_error

notification_bp = Blueprint("notifications", __name__, url_prefix="/api/v1")


@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    """List notifications for ``recipient`` (default: the X-User header, then 'all')."""
    recipient = request.args.get("recipient") or request.headers.get("X-User") or "all"
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = request.args.get("offset", 0, type=int)

    items, total = NotificationService.list_for_recipient(
        recipient=recipient, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread_count": NotificationService.unread_count(recipient),
    })


@notification_bp.route("/notifications/<int:nid>/read", methods=["PUT"])
def mark_read(nid):
    notif = NotificationService.mark_read(nid)
    if not notif:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/read-all", methods=["PUT"])
def mark_all_read():
    recipient = request.args.get("recipient") or request.headers.get("X-User") or "all"
    count = NotificationService.mark_all_read(recipient)
    return jsonify({"updated": count})
