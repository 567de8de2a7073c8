"""
Innovation Lifecycle Engine
Activity log: immutable, append-only audit trail for lifecycle events.

Models:
    - ActivityLog: one row per engine action, kind-agnostic
"""

import json
from datetime import datetime, timezone

from lifecycle_engine.models import db

# ── Constants ────────────────────────────────────────────────────────────────

ACTIVITY_TYPES = {
    # Approval chain
    "submitted",
    "approved",
    "rejected",
    # Milestones
    "milestone_completed",
    "milestone_status_changed",
    "milestones_planned",
    # TRL
    "trl_assessed",
    # Conversion
    "converted",
    "conversion_created",
    # Scaling
    "budget_approved",
    "budget_rejected",
    "phase_advanced",
    "kpi_updated",
    "integration_approved",
    "integration_rejected",
}


class ActivityLog(db.Model):
    """
    Immutable audit entry for every engine action.

    ``details_json`` carries the old→new snapshot for the fields the action
    touched.
    """

    __tablename__ = "activity_logs"
    __table_args__ = (
        db.Index("idx_activity_entity", "entity_kind", "entity_id"),
        db.Index("idx_activity_type", "activity_type"),
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_kind = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.String(36), nullable=False)
    activity_type = db.Column(db.String(40), nullable=False)
    actor = db.Column(db.String(150), nullable=False, default="system")
    description = db.Column(db.Text, nullable=False, default="")
    details_json = db.Column(db.Text, default="{}")
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def details(self) -> dict:
        try:
            return json.loads(self.details_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_kind": self.entity_kind,
            "entity_id": self.entity_id,
            "activity_type": self.activity_type,
            "actor": self.actor,
            "description": self.description,
            "details": self.details,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<ActivityLog {self.id}: {self.activity_type} on {self.entity_kind}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_activity(
    *,
    entity_kind: str,
    entity_id: str,
    activity_type: str,
    actor: str = "system",
    description: str = "",
    details: dict | None = None,
) -> ActivityLog:
    """
    Append a single activity row.  Uses ``flush`` so callers keep
    transaction control.
    """
    if activity_type not in ACTIVITY_TYPES:
        raise ValueError(f"Unknown activity_type: {activity_type}")

    log = ActivityLog(
        entity_kind=str(getattr(entity_kind, "value", entity_kind)),
        entity_id=str(entity_id),
        activity_type=activity_type,
        actor=actor or "system",
        description=description,
        details_json=json.dumps(details or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log


def list_activities(entity_id: str) -> list[ActivityLog]:
    return (
        ActivityLog.query
        .filter_by(entity_id=str(entity_id))
        .order_by(ActivityLog.timestamp.asc(), ActivityLog.id.asc())
        .all()
    )
