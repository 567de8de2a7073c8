"""
Innovation Lifecycle Engine
Notification domain model.

Models:
    - Notification: in-app notification record with read tracking
"""

from datetime import datetime, timezone

from lifecycle_engine.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_PRIORITIES = {"low", "normal", "high", "urgent"}
BROADCAST_RECIPIENT = "all"


class Notification(db.Model):
    """
    In-app notification entity.

    One record per recipient per event; recipient ``all`` is a broadcast.
    Role-addressed notifications use ``role:<role_id>`` as recipient.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient = db.Column(db.String(150), default=BROADCAST_RECIPIENT, index=True,
                          comment="User id, 'role:<role>' or 'all' for broadcast")
    title = db.Column(db.String(300), nullable=False)
    body = db.Column(db.Text, default="")
    priority = db.Column(db.String(20), default="normal")

    # Link to source entity
    entity_kind = db.Column(db.String(30), default="")
    entity_id = db.Column(db.String(36), nullable=True, index=True)

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "recipient": self.recipient,
            "title": self.title,
            "body": self.body,
            "priority": self.priority,
            "entity_kind": self.entity_kind,
            "entity_id": self.entity_id,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
