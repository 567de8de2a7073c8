"""
TRL Progression Tracker.

Records Technology Readiness Level assessments for R&D projects and pilots
and keeps the derived readiness flags on the entity in step:

    pilot_ready             = trl_current >= 6
    commercialization_ready = trl_current >= 7

The tracker is advisory.  Conversion gates read ``trl_current`` directly;
nothing here blocks a conversion.

Lowering the level is governed by ``TRL_ENFORCE_MONOTONIC``: off (default)
records the regression and logs a warning, on rejects it.
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from lifecycle_engine.core.exceptions import EngineError, GateError, ValidationError
from lifecycle_engine.models import db
from lifecycle_engine.models.activity import write_activity
from lifecycle_engine.models.trl import TRL_MAX, TRL_MIN, TRLAssessment, readiness_flags
from lifecycle_engine.services import entity_store
from lifecycle_engine.services.notification import NotificationEvent, dispatch_best_effort

logger = logging.getLogger(__name__)


def _tracked_entity(kind, entity_id, expected_version=None):
    kind = entity_store.coerce_kind(kind)
    entity, version = entity_store.get(kind, entity_id, expected_version=expected_version)
    if not entity.TRL_TRACKED:
        raise ValidationError(
            f"TRL is not tracked for {kind.value}",
            details={"kind": "must be rd_project or pilot"},
        )
    return kind, entity, version


def assess_trl(
    kind,
    entity_id: str,
    new_level: int,
    evidence_text: str,
    confidence: int,
    assessor_id: str,
    expected_version: int | None = None,
) -> TRLAssessment:
    """Append an assessment and move ``trl_current`` to ``new_level``.

    Raises:
        StaleVersionError: ``expected_version`` is behind.
        ValidationError: kind not tracked, level outside 1..9, confidence
            outside 0..100, or no assessor.
        GateError: the level would drop while monotonic enforcement is on.
    """
    kind, entity, version = _tracked_entity(kind, entity_id, expected_version)

    errors = {}
    if isinstance(new_level, bool) or not isinstance(new_level, int) or not TRL_MIN <= new_level <= TRL_MAX:
        errors["new_level"] = f"must be an integer between {TRL_MIN} and {TRL_MAX}"
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)) or not 0 <= confidence <= 100:
        errors["confidence"] = "must be between 0 and 100"
    if not (assessor_id or "").strip():
        errors["assessor_id"] = "required"
    if errors:
        raise ValidationError("Invalid TRL assessment", details=errors)

    previous = entity.trl_current
    is_regression = previous is not None and new_level < previous
    if is_regression:
        if current_app.config.get("TRL_ENFORCE_MONOTONIC", False):
            raise GateError(
                "trl_monotonic",
                required=previous,
                actual=new_level,
                message=f"TRL cannot be lowered from the current level {previous} to {new_level}",
            )
        logger.warning(
            "TRL lowered from %s to %s", previous, new_level,
            extra={"entity_kind": kind.value, "entity_id": entity.id, "event_type": "trl_regression"},
        )

    was_pilot_ready, was_commercial_ready = entity.pilot_ready, entity.commercialization_ready
    pilot_ready, commercial_ready = readiness_flags(new_level)

    assessment = TRLAssessment(
        entity_id=entity.id,
        level=new_level,
        previous_level=previous,
        evidence_text=evidence_text or "",
        confidence=int(confidence),
        assessed_by=assessor_id.strip(),
        pilot_ready=pilot_ready,
        commercialization_ready=commercial_ready,
        is_regression=is_regression,
    )

    try:
        entity = entity_store.update(kind, entity.id, {
            "trl_current": new_level,
            "pilot_ready": pilot_ready,
            "commercialization_ready": commercial_ready,
        }, version)
        db.session.add(assessment)
        db.session.flush()
        write_activity(
            entity_kind=kind.value,
            entity_id=entity.id,
            activity_type="trl_assessed",
            actor=assessor_id,
            description=f"TRL {previous if previous is not None else '-'} → {new_level}",
            details={
                "previous_level": previous,
                "level": new_level,
                "confidence": int(confidence),
                "is_regression": is_regression,
            },
        )
        db.session.commit()
    except (EngineError, SQLAlchemyError):
        db.session.rollback()
        raise

    logger.info(
        "TRL assessed at %s", new_level,
        extra={"entity_kind": kind.value, "entity_id": entity.id, "event_type": "trl_assessed"},
    )

    if commercial_ready and not was_commercial_ready:
        headline = "is ready for commercialization"
    elif pilot_ready and not was_pilot_ready:
        headline = "is ready for piloting"
    else:
        headline = None
    if headline:
        dispatch_best_effort(NotificationEvent(
            title=f"{entity.title} {headline} (TRL {new_level})",
            body=evidence_text or "",
            priority="high",
            entity_kind=kind.value,
            entity_id=entity.id,
            recipients=[entity.created_by] if entity.created_by else [],
        ))
    return assessment


def get_trl_history(kind, entity_id: str) -> list[TRLAssessment]:
    """Assessments for the entity, oldest first."""
    kind, entity, _version = _tracked_entity(kind, entity_id)
    return (
        TRLAssessment.query
        .filter_by(entity_id=entity.id)
        .order_by(TRLAssessment.assessed_at.asc(), TRLAssessment.id.asc())
        .all()
    )
