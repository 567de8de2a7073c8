"""
Innovation Lifecycle Engine
Notification Service.

Central sink for engine notifications.  Engine components never call
``NotificationService.notify`` directly; they go through
``dispatch_best_effort`` after their own commit, so a failing sink can
neither undo the state change nor become the operation's error.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from flask import current_app

from lifecycle_engine.models import db
from lifecycle_engine.models.notification import (
    BROADCAST_RECIPIENT,
    NOTIFICATION_PRIORITIES,
    Notification,
)

logger = logging.getLogger(__name__)


@dataclass
class NotificationEvent:
    title: str
    body: str = ""
    priority: str = "normal"
    entity_kind: str = ""
    entity_id: str | None = None
    recipients: list = field(default_factory=list)


def role_recipient(role) -> str:
    """Recipient address for everyone acting in ``role``."""
    return f"role:{getattr(role, 'value', role)}"


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def notify(event: NotificationEvent):
        """
        Persist one notification per recipient, or a single broadcast
        when the event names no recipients.

        Returns:
            List of created Notification instances (already committed).
        """
        if event.priority not in NOTIFICATION_PRIORITIES:
            raise ValueError(f"Unknown notification priority: {event.priority}")

        targets = event.recipients or [BROADCAST_RECIPIENT]
        notifications = []
        for r in targets:
            notif = Notification(
                recipient=r,
                title=event.title,
                body=event.body,
                priority=event.priority,
                entity_kind=str(getattr(event.entity_kind, "value", event.entity_kind) or ""),
                entity_id=event.entity_id,
            )
            db.session.add(notif)
            notifications.append(notif)
        db.session.commit()
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient=BROADCAST_RECIPIENT, unread_only=False, limit=50, offset=0):
        """Retrieve notifications for a recipient, newest first."""
        q = Notification.query.filter(
            (Notification.recipient == recipient) | (Notification.recipient == BROADCAST_RECIPIENT)
        )
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def list_for_entity(entity_id):
        return (
            Notification.query.filter_by(entity_id=str(entity_id))
            .order_by(Notification.id.asc())
            .all()
        )

    @staticmethod
    def unread_count(recipient=BROADCAST_RECIPIENT):
        """Return count of unread notifications."""
        return Notification.query.filter(
            (Notification.recipient == recipient) | (Notification.recipient == BROADCAST_RECIPIENT)
        ).filter_by(is_read=False).count()

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
    def mark_all_read(recipient=BROADCAST_RECIPIENT):
        q = Notification.query.filter(
            (Notification.recipient == recipient) | (Notification.recipient == BROADCAST_RECIPIENT)
        ).filter_by(is_read=False)
        now = datetime.now(timezone.utc)
        count = q.update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        db.session.commit()
        return count


def dispatch_best_effort(event: NotificationEvent):
    """
    Hand ``event`` to the sink after the caller's commit.

    Failures are logged and swallowed.  With ``NOTIFICATIONS_ENABLED`` off
    the event is only logged.

    Returns:
        The created notifications, or an empty list when nothing was stored.
    """
    extra = {
        "entity_kind": str(getattr(event.entity_kind, "value", event.entity_kind) or ""),
        "entity_id": event.entity_id,
        "event_type": "notification",
    }
    if not current_app.config.get("NOTIFICATIONS_ENABLED", True):
        logger.info("Notification suppressed (sink disabled): %s", event.title, extra=extra)
        return []
    try:
        return NotificationService.notify(event)
    except Exception:
        db.session.rollback()
        logger.exception("Notification dispatch failed: %s", event.title, extra=extra)
        return []
