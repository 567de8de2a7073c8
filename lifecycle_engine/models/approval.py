"""
Innovation Lifecycle Engine
Approval chain domain model.

Workflow templates are static and keyed by entity kind: an ordered list of
steps, each gated by exactly one role.  Templates are validated once at
application startup (``validate_templates``) so a malformed chain can never
reach a request.

ApprovalRecord is APPEND-ONLY.  At most one record exists per
(entity_id, step); the unique constraint backs up the optimistic version
check when two writers race on the same step.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from lifecycle_engine.models import db
from lifecycle_engine.models.entity import EntityKind


class RoleId(str, Enum):
    CHALLENGE_REVIEWER = "challenge_reviewer"
    CHALLENGE_APPROVER = "challenge_approver"
    MUNICIPAL_STRATEGIST = "municipal_strategist"
    PILOT_REVIEWER = "pilot_reviewer"
    PILOT_APPROVER = "pilot_approver"
    PROGRAM_APPROVER = "program_approver"
    PROGRAM_MANAGER = "program_manager"
    RD_REVIEWER = "rd_reviewer"
    EXPERT_REVIEWER = "expert_reviewer"
    SCALING_MANAGER = "scaling_manager"
    EXECUTIVE = "executive"
    LEGAL_OFFICER = "legal_officer"
    POLICY_OFFICER = "policy_officer"
    COUNCIL_MEMBER = "council_member"
    MINISTRY_REPRESENTATIVE = "ministry_representative"
    SOLUTION_REVIEWER = "solution_reviewer"
    SOLUTION_APPROVER = "solution_approver"


class Decision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ApprovalStep:
    step: int
    role: RoleId
    label: str
    sla_days: int = 7


def _chain(*steps):
    return tuple(ApprovalStep(i, role, label, sla) for i, (role, label, sla) in enumerate(steps, 1))


APPROVAL_WORKFLOW_TEMPLATES: dict[EntityKind, tuple[ApprovalStep, ...]] = {
    EntityKind.CHALLENGE: _chain(
        (RoleId.CHALLENGE_REVIEWER, "Challenge Submission", 3),
        (RoleId.CHALLENGE_REVIEWER, "Challenge Review", 7),
        (RoleId.MUNICIPAL_STRATEGIST, "Treatment Approval", 7),
        (RoleId.CHALLENGE_APPROVER, "Resolution", 5),
    ),
    EntityKind.PILOT: _chain(
        (RoleId.PILOT_REVIEWER, "Design Review", 5),
        (RoleId.PILOT_APPROVER, "Launch Approval", 7),
    ),
    EntityKind.PROGRAM: _chain(
        (RoleId.PROGRAM_APPROVER, "Launch Approval", 5),
        (RoleId.PROGRAM_MANAGER, "Selection Approval", 7),
        (RoleId.PROGRAM_MANAGER, "Mid Review", 3),
        (RoleId.PROGRAM_APPROVER, "Completion Review", 10),
    ),
    EntityKind.RD_PROJECT: _chain(
        (RoleId.RD_REVIEWER, "Submission", 3),
        (RoleId.EXPERT_REVIEWER, "Academic Review", 14),
    ),
    EntityKind.SCALING_PLAN: _chain(
        (RoleId.SCALING_MANAGER, "Scaling Review", 5),
        (RoleId.EXECUTIVE, "Executive Approval", 7),
    ),
    EntityKind.POLICY_RECOMMENDATION: _chain(
        (RoleId.LEGAL_OFFICER, "Legal Review", 5),
        (RoleId.POLICY_OFFICER, "Public Consultation", 30),
        (RoleId.COUNCIL_MEMBER, "Council Approval", 14),
        (RoleId.MINISTRY_REPRESENTATIVE, "Ministry Approval", 21),
    ),
    EntityKind.SOLUTION: _chain(
        (RoleId.SOLUTION_REVIEWER, "Submission", 3),
        (RoleId.EXPERT_REVIEWER, "Technical Verification", 7),
        (RoleId.SOLUTION_APPROVER, "Deployment Readiness", 5),
        (RoleId.SOLUTION_APPROVER, "Publishing", 2),
    ),
}


def validate_templates(templates=None):
    """
    Check every template: non-empty, steps numbered 1..N contiguously and
    strictly increasing, and every step gated by a RoleId.

    Returns the list of kinds checked; raises ValueError on the first problem.
    """
    templates = APPROVAL_WORKFLOW_TEMPLATES if templates is None else templates
    for kind in EntityKind:
        if kind not in templates:
            raise ValueError(f"No approval workflow template for kind '{kind.value}'")
    for kind, steps in templates.items():
        if not steps:
            raise ValueError(f"Approval workflow for '{kind.value}' has no steps")
        for expected, step in enumerate(steps, 1):
            if step.step != expected:
                raise ValueError(
                    f"Approval workflow for '{kind.value}' must number steps 1..N "
                    f"contiguously; found step {step.step} at position {expected}"
                )
            if not isinstance(step.role, RoleId) or not step.role.value:
                raise ValueError(f"Step {step.step} of '{kind.value}' has no role")
            if not step.label:
                raise ValueError(f"Step {step.step} of '{kind.value}' has no label")
    return list(templates)


class ApprovalRecord(db.Model):
    """
    One decision on one step of an entity's approval chain.

    Business rules:
    - Records are never updated or deleted.
    - A record for step k exists only if step k-1 was approved.
    - A rejected record ends the chain.
    """

    __tablename__ = "approval_records"
    __table_args__ = (
        db.UniqueConstraint("entity_id", "step", name="uq_approval_entity_step"),
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_kind = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(
        db.String(36),
        db.ForeignKey("workflow_entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    step = db.Column(db.Integer, nullable=False)
    approver_role = db.Column(db.String(50), nullable=False)
    approver_name = db.Column(db.String(150), nullable=False)
    decision = db.Column(db.String(20), nullable=False, comment="approved | rejected")
    comment = db.Column(db.Text, nullable=True)
    decided_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "entity_kind": self.entity_kind,
            "entity_id": self.entity_id,
            "step": self.step,
            "approver_role": self.approver_role,
            "approver_name": self.approver_name,
            "decision": self.decision,
            "comment": self.comment,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
        }

    def __repr__(self):
        return f"<ApprovalRecord {self.entity_kind}/{self.entity_id} step={self.step} {self.decision}>"
