"""
Innovation Lifecycle Engine
Conversion provenance links.

A ConversionLink is written in the same transaction as the entity it
produced and acts as the commit marker for the two-phase conversion:
``back_reference_applied`` turns true once the source entity's tracking
array has been patched.  A link with ``back_reference_applied = False`` is
a recoverable follow-up, not an orphan.
"""

from datetime import datetime, timezone
from enum import Enum

from lifecycle_engine.models import db


class ConversionType(str, Enum):
    TO_PILOT = "to_pilot"
    TO_SOLUTION = "to_solution"
    TO_POLICY = "to_policy"
    TO_SCALING_PLAN = "to_scaling_plan"


class ConversionLink(db.Model):
    __tablename__ = "conversion_links"
    __table_args__ = (
        db.Index("ix_conversion_source", "source_kind", "source_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    source_kind = db.Column(db.String(30), nullable=False)
    source_id = db.Column(
        db.String(36),
        db.ForeignKey("workflow_entities.id", ondelete="CASCADE"),
        nullable=False,
    )
    target_kind = db.Column(db.String(30), nullable=False)
    target_id = db.Column(
        db.String(36),
        db.ForeignKey("workflow_entities.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    conversion_type = db.Column(db.String(30), nullable=False)
    created_by = db.Column(db.String(150), nullable=True)
    back_reference_applied = db.Column(db.Boolean, nullable=False, default=False)
    idempotency_key = db.Column(db.String(100), nullable=True, unique=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "source_kind": self.source_kind,
            "source_id": self.source_id,
            "target_kind": self.target_kind,
            "target_id": self.target_id,
            "conversion_type": self.conversion_type,
            "created_by": self.created_by,
            "back_reference_applied": self.back_reference_applied,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return (f"<ConversionLink {self.id}: {self.source_kind}/{self.source_id} "
                f"-> {self.target_kind}/{self.target_id}>")
