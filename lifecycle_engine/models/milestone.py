"""
Innovation Lifecycle Engine
Milestone model: time-boxed deliverable checkpoints on an entity's timeline.

The deliverables list is a display checklist only.  Completion of a
milestone that requires approval is gated on evidence, never on the
checklist.
"""

from datetime import datetime, timezone

from lifecycle_engine.models import db

MILESTONE_STATUSES = ("pending", "in_progress", "completed", "delayed")


class Milestone(db.Model):
    __tablename__ = "milestones"

    id = db.Column(db.Integer, primary_key=True)
    entity_id = db.Column(
        db.String(36),
        db.ForeignKey("workflow_entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True, default="")
    due_date = db.Column(db.Date, nullable=True)
    deliverables = db.Column(db.JSON, nullable=False, default=list)
    status = db.Column(db.String(20), nullable=False, default="pending")
    requires_approval = db.Column(db.Boolean, nullable=False, default=False)
    evidence = db.Column(db.JSON, nullable=False, default=list)
    notes = db.Column(db.Text, nullable=True)
    approved_by = db.Column(db.String(150), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "name": self.name,
            "description": self.description,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "deliverables": self.deliverables or [],
            "status": self.status,
            "requires_approval": self.requires_approval,
            "evidence": self.evidence or [],
            "notes": self.notes,
            "approved_by": self.approved_by,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "sort_order": self.sort_order,
        }

    def __repr__(self):
        return f"<Milestone {self.id}: {self.name} [{self.status}]>"
