"""
Milestone Gate Engine.

Plans milestones on an entity's timeline and gates completion of the ones
that require approval on evidence.

Business rules:
    - A milestone with ``requires_approval`` can only be completed through
      ``approve_milestone``, and only with at least one evidence URI and an
      approver name.
    - Deliverables are a display checklist; they are never checked.
    - A completed milestone cannot be re-completed or moved back.
    - Every mutation bumps the owning entity's version.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from urllib.parse import urlparse

from sqlalchemy.exc import SQLAlchemyError

from lifecycle_engine.core.exceptions import (
    AlreadyCompletedError,
    EngineError,
    NotFoundError,
    ValidationError,
)
from lifecycle_engine.models import db
from lifecycle_engine.models.activity import write_activity
from lifecycle_engine.models.milestone import MILESTONE_STATUSES, Milestone
from lifecycle_engine.services import entity_store
from lifecycle_engine.services.notification import NotificationEvent, dispatch_best_effort

logger = logging.getLogger(__name__)


# ── Private helpers ────────────────────────────────────────────────────────────


def _get_milestone(entity, milestone_id) -> Milestone:
    try:
        mid = int(milestone_id)
    except (TypeError, ValueError):
        raise NotFoundError("Milestone", milestone_id) from None
    milestone = db.session.get(Milestone, mid)
    if milestone is None or milestone.entity_id != entity.id:
        raise NotFoundError("Milestone", milestone_id)
    return milestone


def _is_uri(value) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    parsed = urlparse(value.strip())
    return bool(parsed.scheme) and bool(parsed.netloc or parsed.path)


def _parse_due_date(value, index):
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(
            f"Milestone {index}: due_date must be an ISO date",
            details={f"milestones[{index}].due_date": "YYYY-MM-DD"},
        ) from None


def _commit_or_rollback():
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


# ── Public API ─────────────────────────────────────────────────────────────────


def approve_milestone(
    kind,
    entity_id: str,
    milestone_id,
    approver_name: str,
    evidence,
    notes: str | None = None,
    expected_version: int | None = None,
) -> Milestone:
    """Complete a milestone that requires approval, recording its evidence.

    Args:
        evidence: List of URI strings (or a single URI string).

    Raises:
        StaleVersionError, NotFoundError, AlreadyCompletedError, ValidationError
    """
    kind = entity_store.coerce_kind(kind)
    entity, version = entity_store.get(kind, entity_id, expected_version=expected_version)
    milestone = _get_milestone(entity, milestone_id)

    if milestone.status == "completed":
        raise AlreadyCompletedError(
            f"Milestone '{milestone.name}' is already completed",
            details={"milestone_id": milestone.id, "completed_at": milestone.to_dict()["completed_at"]},
        )
    if not milestone.requires_approval:
        raise ValidationError(
            f"Milestone '{milestone.name}' does not require approval; update its status instead",
            details={"milestone_id": milestone.id, "requires_approval": False},
        )

    if isinstance(evidence, str):
        evidence = [evidence]
    evidence = list(evidence or [])
    if not evidence:
        raise ValidationError(
            "At least one evidence URI is required to approve a milestone",
            details={"evidence": "required"},
        )
    bad = [i for i, item in enumerate(evidence) if not _is_uri(item)]
    if bad:
        raise ValidationError(
            "Evidence entries must be non-empty URIs",
            details={f"evidence[{i}]": "not a URI" for i in bad},
        )
    if not (approver_name or "").strip():
        raise ValidationError("approver_name is required", details={"approver_name": "required"})

    try:
        entity = entity_store.update(kind, entity.id, {}, version)
        milestone.status = "completed"
        milestone.evidence = [e.strip() for e in evidence]
        milestone.notes = (notes or "").strip() or None
        milestone.approved_by = approver_name.strip()
        milestone.completed_at = datetime.now(timezone.utc)
        write_activity(
            entity_kind=kind.value,
            entity_id=entity.id,
            activity_type="milestone_completed",
            actor=approver_name,
            description=f"Milestone '{milestone.name}' approved",
            details={"milestone_id": milestone.id, "evidence": milestone.evidence},
        )
        db.session.commit()
    except (EngineError, SQLAlchemyError):
        db.session.rollback()
        raise

    logger.info(
        "Milestone %s completed", milestone.id,
        extra={"entity_kind": kind.value, "entity_id": entity.id, "event_type": "milestone_completed"},
    )
    dispatch_best_effort(NotificationEvent(
        title=f"Milestone '{milestone.name}' completed",
        body=f"Approved by {milestone.approved_by} with {len(milestone.evidence)} evidence item(s).",
        entity_kind=kind.value,
        entity_id=entity.id,
        recipients=[entity.created_by] if entity.created_by else [],
    ))
    return milestone


def plan_milestones(kind, entity_id: str, milestones: list, actor: str,
                    expected_version: int | None = None) -> list[Milestone]:
    """Append milestones to the entity's timeline in ``pending`` status.

    Each item: {name, description?, due_date?, deliverables?, requires_approval?}
    """
    kind = entity_store.coerce_kind(kind)
    entity, version = entity_store.get(kind, entity_id, expected_version=expected_version)

    if not isinstance(milestones, list) or not milestones:
        raise ValidationError("At least one milestone is required", details={"milestones": "required"})

    errors = {}
    for i, item in enumerate(milestones):
        if not isinstance(item, dict) or not str(item.get("name") or "").strip():
            errors[f"milestones[{i}].name"] = "required"
    if errors:
        raise ValidationError("Every milestone needs a name", details=errors)

    next_order = max((m.sort_order for m in entity.milestones), default=-1) + 1
    created = []
    for i, item in enumerate(milestones):
        created.append(Milestone(
            entity_id=entity.id,
            name=str(item["name"]).strip(),
            description=item.get("description") or "",
            due_date=_parse_due_date(item.get("due_date"), i),
            deliverables=list(item.get("deliverables") or []),
            requires_approval=bool(item.get("requires_approval", False)),
            status="pending",
            sort_order=next_order + i,
        ))

    try:
        entity = entity_store.update(kind, entity.id, {}, version)
        db.session.add_all(created)
        db.session.flush()
        write_activity(
            entity_kind=kind.value,
            entity_id=entity.id,
            activity_type="milestones_planned",
            actor=actor,
            description=f"{len(created)} milestone(s) planned",
            details={"milestone_ids": [m.id for m in created]},
        )
        db.session.commit()
    except (EngineError, SQLAlchemyError):
        db.session.rollback()
        raise

    logger.info(
        "Planned %d milestones", len(created),
        extra={"entity_kind": kind.value, "entity_id": entity.id, "event_type": "milestones_planned"},
    )
    return created


def update_milestone_status(kind, entity_id: str, milestone_id, status: str, actor: str,
                            expected_version: int | None = None) -> Milestone:
    """Move a milestone among pending / in_progress / delayed.

    ``completed`` is accepted here only for milestones that do not require
    approval; the others must go through ``approve_milestone``.
    """
    kind = entity_store.coerce_kind(kind)
    entity, version = entity_store.get(kind, entity_id, expected_version=expected_version)
    milestone = _get_milestone(entity, milestone_id)

    if status not in MILESTONE_STATUSES:
        raise ValidationError(
            f"Invalid milestone status '{status}'",
            details={"status": f"must be one of {list(MILESTONE_STATUSES)}"},
        )
    if milestone.status == "completed":
        raise AlreadyCompletedError(
            f"Milestone '{milestone.name}' is already completed",
            details={"milestone_id": milestone.id},
        )
    if status == "completed" and milestone.requires_approval:
        raise ValidationError(
            f"Milestone '{milestone.name}' requires approval with evidence",
            details={"status": "use the approve endpoint"},
        )

    old_status = milestone.status
    try:
        entity = entity_store.update(kind, entity.id, {}, version)
        milestone.status = status
        if status == "completed":
            milestone.completed_at = datetime.now(timezone.utc)
        write_activity(
            entity_kind=kind.value,
            entity_id=entity.id,
            activity_type="milestone_completed" if status == "completed" else "milestone_status_changed",
            actor=actor,
            description=f"Milestone '{milestone.name}': {old_status} → {status}",
            details={"milestone_id": milestone.id, "old": old_status, "new": status},
        )
        db.session.commit()
    except (EngineError, SQLAlchemyError):
        db.session.rollback()
        raise
    return milestone


def mark_overdue_milestones(kind, entity_id: str, today: date | None = None) -> list[Milestone]:
    """Flag every open milestone past its due date as ``delayed``.

    Returns the milestones that changed; the entity version is bumped only
    when something did.
    """
    kind = entity_store.coerce_kind(kind)
    entity, version = entity_store.get(kind, entity_id)
    today = today or datetime.now(timezone.utc).date()

    overdue = [
        m for m in entity.milestones
        if m.due_date and m.due_date < today and m.status in ("pending", "in_progress")
    ]
    if not overdue:
        return []

    entity_store.update(kind, entity.id, {}, version)
    for m in overdue:
        write_activity(
            entity_kind=kind.value,
            entity_id=entity.id,
            activity_type="milestone_status_changed",
            description=f"Milestone '{m.name}' overdue since {m.due_date.isoformat()}",
            details={"milestone_id": m.id, "old": m.status, "new": "delayed"},
        )
        m.status = "delayed"
    _commit_or_rollback()

    logger.warning(
        "%d milestone(s) overdue", len(overdue),
        extra={"entity_kind": kind.value, "entity_id": entity.id, "event_type": "milestones_overdue"},
    )
    return overdue
