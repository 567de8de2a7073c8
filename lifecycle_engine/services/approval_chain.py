"""
Approval Chain Engine.

Drives an entity through the ordered, role-gated steps of its kind's
approval template.

Design decisions:
    - The current step is derived, never stored: max(recorded step) + 1.
      ApprovalRecord is APPEND-ONLY, so the derivation cannot drift.
    - A rejection at any step is terminal for the chain.
    - Checks run in a fixed order (stale, terminal, step, role, duplicate)
      so the same inputs against the same state always fail the same way.
    - The entity version is bumped on every decision, which makes the
      optimistic check the arbiter when two reviewers act on the same read.
      The (entity_id, step) unique constraint backs it up.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from lifecycle_engine.core.exceptions import (
    EngineError,
    InvalidStepError,
    PermissionDenied,
    StaleVersionError,
    ValidationError,
)
from lifecycle_engine.models import db
from lifecycle_engine.models.activity import write_activity
from lifecycle_engine.models.approval import (
    APPROVAL_WORKFLOW_TEMPLATES,
    ApprovalRecord,
    Decision,
    RoleId,
)
from lifecycle_engine.models.entity import STATUS_APPROVED, STATUS_REJECTED, TERMINAL_APPROVAL_STATUSES
from lifecycle_engine.services import entity_store
from lifecycle_engine.services.notification import NotificationEvent, dispatch_best_effort, role_recipient

logger = logging.getLogger(__name__)


@dataclass
class DecisionResult:
    entity: object
    record: ApprovalRecord
    next_step: int | None

    def to_dict(self):
        return {
            "entity": self.entity.to_dict(),
            "record": self.record.to_dict(),
            "next_step": self.next_step,
        }


# ── Private helpers ────────────────────────────────────────────────────────────


def _coerce_decision(decision) -> Decision:
    try:
        return Decision(getattr(decision, "value", decision))
    except ValueError:
        raise ValidationError(
            f"Invalid decision '{decision}'",
            details={"decision": "must be 'approved' or 'rejected'"},
        ) from None


def _coerce_role(role) -> RoleId | None:
    if role is None:
        return None
    try:
        return RoleId(getattr(role, "value", role))
    except ValueError:
        return None


def _is_terminal(entity, current_step: int, total_steps: int) -> bool:
    if entity.status in TERMINAL_APPROVAL_STATUSES:
        return True
    if any(a.decision == Decision.REJECTED.value for a in entity.approvals):
        return True
    return current_step > total_steps


# ── Public API ─────────────────────────────────────────────────────────────────


def get_template(kind):
    """Return the ordered ApprovalStep tuple for ``kind``."""
    return APPROVAL_WORKFLOW_TEMPLATES[entity_store.coerce_kind(kind)]


def resolve_current_step(entity) -> int:
    """Next step to decide: one past the highest recorded step, or 1."""
    steps = [a.step for a in entity.approvals]
    return max(steps) + 1 if steps else 1


def submit_decision(
    kind,
    entity_id: str,
    actor_role,
    actor_name: str,
    decision,
    comment: str | None = None,
    step: int | None = None,
    expected_version: int | None = None,
) -> DecisionResult:
    """Record ``decision`` on the entity's current approval step.

    Args:
        actor_role:       RoleId (or its value) the actor is acting in.
        actor_name:       Display name stored on the record.
        step:             Step the caller believes is current; a mismatch
                          is rejected for any role.
        expected_version: Version the caller read.

    Raises:
        StaleVersionError, InvalidStepError, PermissionDenied, ValidationError
    """
    kind = entity_store.coerce_kind(kind)
    entity, version = entity_store.get(kind, entity_id, expected_version=expected_version)
    decision = _coerce_decision(decision)

    template = APPROVAL_WORKFLOW_TEMPLATES[kind]
    current_step = resolve_current_step(entity)

    if _is_terminal(entity, current_step, len(template)):
        raise InvalidStepError(
            f"Approval chain for {kind.value} {entity.id} is closed (status '{entity.status}')",
            current_step=current_step,
            status=entity.status,
        )

    if step is not None and int(step) != current_step:
        raise InvalidStepError(
            f"Step {step} is not the current step; current step is {current_step}",
            current_step=current_step,
            status=entity.status,
            details={"requested_step": int(step)},
        )

    step_def = template[current_step - 1]
    role = _coerce_role(actor_role)
    if role != step_def.role:
        raise PermissionDenied(
            getattr(actor_role, "value", actor_role), step_def.role.value, current_step,
        )

    if any(a.step == current_step for a in entity.approvals):
        raise InvalidStepError(
            f"Step {current_step} already has a decision",
            current_step=current_step,
            status=entity.status,
        )

    if not (actor_name or "").strip():
        raise ValidationError("actor_name is required", details={"actor_name": "required"})

    is_final = current_step == len(template)
    patch = {}
    if decision is Decision.REJECTED:
        patch["status"] = STATUS_REJECTED
    elif is_final:
        patch["status"] = STATUS_APPROVED
    elif entity.status == "draft":
        patch["status"] = "under_review"

    try:
        entity = entity_store.update(kind, entity.id, patch, version)
        record = ApprovalRecord(
            entity_kind=kind.value,
            entity_id=entity.id,
            step=current_step,
            approver_role=role.value,
            approver_name=actor_name.strip(),
            decision=decision.value,
            comment=(comment or "").strip() or None,
        )
        db.session.add(record)
        db.session.flush()
        write_activity(
            entity_kind=kind.value,
            entity_id=entity.id,
            activity_type="submitted" if patch.get("status") == "under_review" else decision.value,
            actor=actor_name,
            description=f"Step {current_step} ({step_def.label}) {decision.value} by {role.value}",
            details={"step": current_step, "decision": decision.value, "comment": record.comment},
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise StaleVersionError(kind.value, str(entity_id), version) from None
    except (EngineError, SQLAlchemyError):
        db.session.rollback()
        raise

    logger.info(
        "Approval step %s %s", current_step, decision.value,
        extra={"entity_kind": kind.value, "entity_id": entity.id, "event_type": f"approval_{decision.value}"},
    )

    next_step = None
    if decision is Decision.REJECTED:
        dispatch_best_effort(NotificationEvent(
            title=f"{entity.title} was rejected at step {current_step}",
            body=record.comment or "",
            priority="high",
            entity_kind=kind.value,
            entity_id=entity.id,
            recipients=[entity.created_by] if entity.created_by else [],
        ))
    elif is_final:
        dispatch_best_effort(NotificationEvent(
            title=f"{entity.title} is fully approved",
            body=f"All {len(template)} approval steps are complete.",
            entity_kind=kind.value,
            entity_id=entity.id,
            recipients=[entity.created_by] if entity.created_by else [],
        ))
    else:
        next_step = current_step + 1
        next_def = template[next_step - 1]
        due = (datetime.now(timezone.utc) + timedelta(days=next_def.sla_days)).date()
        dispatch_best_effort(NotificationEvent(
            title=f"Approval required: {entity.title} ({next_def.label})",
            body=f"Step {next_step} of {len(template)} awaits a decision. Due by {due.isoformat()}.",
            entity_kind=kind.value,
            entity_id=entity.id,
            recipients=[role_recipient(next_def.role)],
        ))

    return DecisionResult(entity=entity, record=record, next_step=next_step)


def get_approval_status(kind, entity_id: str) -> dict:
    """Summarise where an entity stands in its approval chain.

    Returns:
        {
            "status": "not_submitted" | "pending" | "approved" | "rejected",
            "current_step": int | None,
            "total_steps": int,
            "pending_step": {"step", "role", "label", "sla_days"} | None,
            "records": [...],
        }
    """
    kind = entity_store.coerce_kind(kind)
    entity, version = entity_store.get(kind, entity_id)
    template = APPROVAL_WORKFLOW_TEMPLATES[kind]
    current_step = resolve_current_step(entity)
    records = [a.to_dict() for a in entity.approvals]

    if entity.status == STATUS_REJECTED or any(r["decision"] == Decision.REJECTED.value for r in records):
        overall = "rejected"
    elif entity.status == STATUS_APPROVED or current_step > len(template):
        overall = "approved"
    elif records or entity.status == "under_review":
        overall = "pending"
    else:
        overall = "not_submitted"

    pending_step = None
    if overall in ("pending", "not_submitted"):
        step_def = template[current_step - 1]
        pending_step = {
            "step": step_def.step,
            "role": step_def.role.value,
            "label": step_def.label,
            "sla_days": step_def.sla_days,
        }

    return {
        "entity_kind": kind.value,
        "entity_id": entity.id,
        "version": version,
        "status": overall,
        "current_step": current_step if pending_step else None,
        "total_steps": len(template),
        "pending_step": pending_step,
        "records": records,
    }
