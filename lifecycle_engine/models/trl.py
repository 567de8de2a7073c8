"""
Innovation Lifecycle Engine
Technology Readiness Level assessment history.

One row per assessment, oldest first.  ``previous_level`` keeps the
from → to advancement trail; ``is_regression`` flags an assessment that
lowered the level.
"""

from datetime import datetime, timezone

from lifecycle_engine.models import db

TRL_MIN = 1
TRL_MAX = 9
PILOT_READY_LEVEL = 6
COMMERCIALIZATION_READY_LEVEL = 7


def readiness_flags(level):
    """Return (pilot_ready, commercialization_ready) for a TRL level."""
    if level is None:
        return False, False
    return level >= PILOT_READY_LEVEL, level >= COMMERCIALIZATION_READY_LEVEL


class TRLAssessment(db.Model):
    __tablename__ = "trl_assessments"

    id = db.Column(db.Integer, primary_key=True)
    entity_id = db.Column(
        db.String(36),
        db.ForeignKey("workflow_entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    level = db.Column(db.Integer, nullable=False)
    previous_level = db.Column(db.Integer, nullable=True)
    evidence_text = db.Column(db.Text, nullable=True, default="")
    confidence = db.Column(db.Integer, nullable=False, default=0)
    assessed_by = db.Column(db.String(150), nullable=False)
    assessed_at = db.Column(db.DateTime(timezone=True), nullable=False,
                            default=lambda: datetime.now(timezone.utc))
    pilot_ready = db.Column(db.Boolean, nullable=False, default=False)
    commercialization_ready = db.Column(db.Boolean, nullable=False, default=False)
    is_regression = db.Column(db.Boolean, nullable=False, default=False)

    def to_dict(self):
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "level": self.level,
            "previous_level": self.previous_level,
            "evidence_text": self.evidence_text,
            "confidence": self.confidence,
            "assessed_by": self.assessed_by,
            "assessed_at": self.assessed_at.isoformat() if self.assessed_at else None,
            "pilot_ready": self.pilot_ready,
            "commercialization_ready": self.commercialization_ready,
            "is_regression": self.is_regression,
        }

    def __repr__(self):
        return f"<TRLAssessment {self.entity_id} {self.previous_level}->{self.level}>"
