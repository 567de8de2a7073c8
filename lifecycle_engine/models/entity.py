"""
Innovation Lifecycle Engine
Workflowable entity models.

All artifact kinds share one table (``workflow_entities``) through
single-table inheritance on the ``kind`` discriminator.  The base class owns
the capability set every engine component relies on (``id``, ``kind``,
``status``, ``version``); each subclass carries its own status vocabulary and
the kind-specific attributes it actually uses.

Models:
    - WorkflowEntity (abstract capability set, concrete table)
    - Challenge, Pilot, Program, RDProject, ScalingPlan,
      PolicyRecommendation, Solution
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from lifecycle_engine.models import db


def _utcnow():
    return datetime.now(timezone.utc)


def _uuid():
    return str(uuid.uuid4())


class EntityKind(str, Enum):
    CHALLENGE = "challenge"
    PILOT = "pilot"
    PROGRAM = "program"
    RD_PROJECT = "rd_project"
    SCALING_PLAN = "scaling_plan"
    POLICY_RECOMMENDATION = "policy_recommendation"
    SOLUTION = "solution"


# ── Constants ────────────────────────────────────────────────────────────────

STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
TERMINAL_APPROVAL_STATUSES = frozenset({STATUS_APPROVED, STATUS_REJECTED})

_REVIEW_STATUSES = ("draft", "under_review", STATUS_APPROVED, STATUS_REJECTED)

ROLLOUT_STAGES = ("planning", "executing", "integrated")


class WorkflowEntity(db.Model):
    """
    Any artifact the engine can move through a workflow.

    ``version`` starts at 1 and is bumped by every write that goes through
    the entity store; it is never assigned directly by services.
    """

    __tablename__ = "workflow_entities"
    __table_args__ = (
        db.Index("ix_workflow_entities_kind_status", "kind", "status"),
    )

    STATUSES: tuple = _REVIEW_STATUSES
    TRL_TRACKED = False
    BACK_REFERENCE_FIELDS: tuple = ()

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    kind = db.Column(db.String(30), nullable=False, index=True)
    title = db.Column(db.String(300), nullable=False)
    status = db.Column(db.String(30), nullable=False, default="draft")
    version = db.Column(db.Integer, nullable=False, default=1)
    details = db.Column(db.JSON, nullable=False, default=dict)
    created_by = db.Column(db.String(150), nullable=True)

    # TRL (RDProject, Pilot)
    trl_current = db.Column(db.Integer, nullable=True)
    trl_target = db.Column(db.Integer, nullable=True)
    pilot_ready = db.Column(db.Boolean, nullable=False, default=False)
    commercialization_ready = db.Column(db.Boolean, nullable=False, default=False)

    # Conversion back-references, one array per tracked conversion
    pilot_opportunities = db.Column(db.JSON, nullable=True)
    solution_outputs = db.Column(db.JSON, nullable=True)
    policy_recommendations = db.Column(db.JSON, nullable=True)
    scaling_plans = db.Column(db.JSON, nullable=True)

    # Scaling (ScalingPlan)
    target_units = db.Column(db.JSON, nullable=True)
    phases = db.Column(db.JSON, nullable=True)
    estimated_budget = db.Column(db.Float, nullable=True)
    budget_approved = db.Column(db.Boolean, nullable=False, default=False)
    rollout_progress = db.Column(db.Float, nullable=False, default=0)
    integration_approved = db.Column(db.Boolean, nullable=False, default=False)
    integration_checklist = db.Column(db.JSON, nullable=True)
    rollout_stage = db.Column(db.String(20), nullable=True)
    revision_requested = db.Column(db.Boolean, nullable=False, default=False)
    revision_notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    approvals = db.relationship(
        "ApprovalRecord", backref="entity", lazy="select",
        order_by="ApprovalRecord.step",
    )
    milestones = db.relationship(
        "Milestone", backref="entity", lazy="select",
        order_by="Milestone.sort_order",
    )
    provenance = db.relationship(
        "ConversionLink",
        primaryjoin="WorkflowEntity.id == foreign(ConversionLink.target_id)",
        uselist=False,
        viewonly=True,
    )

    __mapper_args__ = {"polymorphic_on": kind}

    @property
    def entity_kind(self) -> EntityKind:
        return EntityKind(self.kind)

    def to_dict(self):
        data = {
            "id": self.id,
            "kind": self.kind,
            "title": self.title,
            "status": self.status,
            "version": self.version,
            "details": self.details or {},
            "created_by": self.created_by,
            "provenance": self.provenance.to_dict() if self.provenance else None,
            "approvals": [a.to_dict() for a in self.approvals],
            "milestones": [m.to_dict() for m in self.milestones],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if self.TRL_TRACKED:
            data.update({
                "trl_current": self.trl_current,
                "trl_target": self.trl_target,
                "pilot_ready": self.pilot_ready,
                "commercialization_ready": self.commercialization_ready,
            })
        for field in self.BACK_REFERENCE_FIELDS:
            data[field] = getattr(self, field) or []
        return data

    def __repr__(self):
        return f"<{type(self).__name__} {self.id} v{self.version} [{self.status}]>"


class Challenge(WorkflowEntity):
    STATUSES = _REVIEW_STATUSES + ("in_treatment", "resolved", "archived")
    BACK_REFERENCE_FIELDS = ("policy_recommendations",)

    __mapper_args__ = {"polymorphic_identity": EntityKind.CHALLENGE.value}


class Pilot(WorkflowEntity):
    STATUSES = _REVIEW_STATUSES + ("active", "completed", "scale_eligible", "scaled", "terminated")
    TRL_TRACKED = True
    BACK_REFERENCE_FIELDS = ("scaling_plans", "policy_recommendations")

    __mapper_args__ = {"polymorphic_identity": EntityKind.PILOT.value}


class Program(WorkflowEntity):
    STATUSES = _REVIEW_STATUSES + ("active", "completed")

    __mapper_args__ = {"polymorphic_identity": EntityKind.PROGRAM.value}


class RDProject(WorkflowEntity):
    STATUSES = _REVIEW_STATUSES + ("active", "completed")
    TRL_TRACKED = True
    BACK_REFERENCE_FIELDS = ("pilot_opportunities", "solution_outputs", "policy_recommendations")

    __mapper_args__ = {"polymorphic_identity": EntityKind.RD_PROJECT.value}


class ScalingPlan(WorkflowEntity):
    STATUSES = _REVIEW_STATUSES + ("active", "completed")

    unit_executions = db.relationship(
        "ScalingUnitExecution", backref="plan", lazy="select",
        order_by="ScalingUnitExecution.unit_id",
    )
    gate_decisions = db.relationship(
        "ScalingGateDecision", backref="plan", lazy="select",
        order_by="ScalingGateDecision.id",
    )

    __mapper_args__ = {"polymorphic_identity": EntityKind.SCALING_PLAN.value}

    def to_dict(self):
        data = super().to_dict()
        data.update({
            "target_units": self.target_units or [],
            "phases": self.phases or [],
            "estimated_budget": self.estimated_budget,
            "budget_approved": self.budget_approved,
            "rollout_progress": self.rollout_progress,
            "rollout_stage": self.rollout_stage,
            "integration_approved": self.integration_approved,
            "integration_checklist": self.integration_checklist,
            "revision_requested": self.revision_requested,
            "revision_notes": self.revision_notes,
            "unit_executions": [u.to_dict() for u in self.unit_executions],
        })
        return data


class PolicyRecommendation(WorkflowEntity):
    STATUSES = _REVIEW_STATUSES + ("published",)

    __mapper_args__ = {"polymorphic_identity": EntityKind.POLICY_RECOMMENDATION.value}


class Solution(WorkflowEntity):
    STATUSES = _REVIEW_STATUSES + ("published",)

    __mapper_args__ = {"polymorphic_identity": EntityKind.SOLUTION.value}


MODEL_BY_KIND = {
    EntityKind.CHALLENGE: Challenge,
    EntityKind.PILOT: Pilot,
    EntityKind.PROGRAM: Program,
    EntityKind.RD_PROJECT: RDProject,
    EntityKind.SCALING_PLAN: ScalingPlan,
    EntityKind.POLICY_RECOMMENDATION: PolicyRecommendation,
    EntityKind.SOLUTION: Solution,
}
