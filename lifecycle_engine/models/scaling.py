"""
Innovation Lifecycle Engine
Scaling rollout models.

Models:
    - ScalingUnitExecution: per-unit execution state within a ScalingPlan
    - ScalingGateDecision: append-only history of budget / national
      integration gate decisions
"""

from datetime import datetime, timezone

from lifecycle_engine.models import db

# ── Constants ────────────────────────────────────────────────────────────────

UNIT_STATUSES = ("planning", "in_progress", "completed", "on_hold")
KPI_STATUSES = ("on_track", "at_risk", "off_track")
PHASE_STATUSES = ("planned", "active", "completed")
ACTIVE_PHASE_STATUSES = frozenset({"active", "completed"})

GATE_BUDGET = "budget"
GATE_NATIONAL_INTEGRATION = "national_integration"

INTEGRATION_PROGRESS_THRESHOLD = 80

NATIONAL_INTEGRATION_CRITERIA = (
    "policy_alignment",
    "standards_documented",
    "training_completed",
    "support_model_ready",
    "funding_secured",
    "kpis_validated",
)


def _utcnow():
    return datetime.now(timezone.utc)


class ScalingUnitExecution(db.Model):
    __tablename__ = "scaling_unit_executions"
    __table_args__ = (
        db.UniqueConstraint("plan_id", "unit_id", name="uq_scaling_plan_unit"),
    )

    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(
        db.String(36),
        db.ForeignKey("workflow_entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    unit_id = db.Column(db.String(100), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="planning")
    progress = db.Column(db.Float, nullable=False, default=0)
    kpi_status = db.Column(db.String(20), nullable=False, default="on_track")
    updated_by = db.Column(db.String(150), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "unit_id": self.unit_id,
            "status": self.status,
            "progress": self.progress,
            "kpi_status": self.kpi_status,
            "updated_by": self.updated_by,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<ScalingUnitExecution {self.plan_id}/{self.unit_id} {self.progress}%>"


class ScalingGateDecision(db.Model):
    __tablename__ = "scaling_gate_decisions"

    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(
        db.String(36),
        db.ForeignKey("workflow_entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    gate = db.Column(db.String(30), nullable=False, comment="budget | national_integration")
    decision = db.Column(db.String(20), nullable=False, comment="approved | rejected")
    comments = db.Column(db.Text, nullable=True)
    checklist = db.Column(db.JSON, nullable=True)
    decided_by = db.Column(db.String(150), nullable=False)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "plan_id": self.plan_id,
            "gate": self.gate,
            "decision": self.decision,
            "comments": self.comments,
            "checklist": self.checklist,
            "decided_by": self.decided_by,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
        }
