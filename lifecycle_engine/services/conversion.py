"""
Conversion Pipeline.

Spawns a new entity from a source entity once the conversion's gate holds,
links the two, and records the new entity on the source.

Two-phase execution:
    1. Create the target and its ConversionLink; commit together.  The
       link is the commit marker.
    2. Append a back-reference to the source's tracking array with an
       optimistic update against the version read at the start.  On
       success the link is flagged ``back_reference_applied``.

A phase-2 failure leaves the target in place and the link unflagged.  It
is logged with the link id and repaired by ``retry_back_reference``.

Gates:
    to_pilot          trl_current >= 6                        hard
    to_solution       trl_current >= 7                        soft (warning)
    to_policy         none
    to_scaling_plan   source status in {completed, scale_eligible}  hard
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from lifecycle_engine.core.exceptions import (
    EngineError,
    GateError,
    NotFoundError,
    ValidationError,
)
from lifecycle_engine.models import db
from lifecycle_engine.models.activity import write_activity
from lifecycle_engine.models.conversion import ConversionLink, ConversionType
from lifecycle_engine.models.entity import EntityKind
from lifecycle_engine.models.trl import COMMERCIALIZATION_READY_LEVEL, PILOT_READY_LEVEL
from lifecycle_engine.services import entity_store
from lifecycle_engine.services.notification import NotificationEvent, dispatch_best_effort

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversionRule:
    sources: frozenset
    target: EntityKind
    back_reference_field: str


CONVERSION_RULES = {
    ConversionType.TO_PILOT: ConversionRule(
        frozenset({EntityKind.RD_PROJECT}), EntityKind.PILOT, "pilot_opportunities",
    ),
    ConversionType.TO_SOLUTION: ConversionRule(
        frozenset({EntityKind.RD_PROJECT}), EntityKind.SOLUTION, "solution_outputs",
    ),
    ConversionType.TO_POLICY: ConversionRule(
        frozenset({EntityKind.RD_PROJECT, EntityKind.PILOT, EntityKind.CHALLENGE}),
        EntityKind.POLICY_RECOMMENDATION,
        "policy_recommendations",
    ),
    ConversionType.TO_SCALING_PLAN: ConversionRule(
        frozenset({EntityKind.PILOT}), EntityKind.SCALING_PLAN, "scaling_plans",
    ),
}

REQUIRED_PAYLOAD_FIELDS = {
    EntityKind.PILOT: ("title", "objective"),
    EntityKind.SOLUTION: ("title", "description"),
    EntityKind.POLICY_RECOMMENDATION: ("title", "recommendation"),
    EntityKind.SCALING_PLAN: ("title", "target_units", "estimated_budget"),
}

SCALE_READY_STATUSES = frozenset({"completed", "scale_eligible"})

# Payload keys that map onto entity columns; everything else lands in ``details``.
_SCALING_COLUMNS = ("target_units", "phases", "estimated_budget")


@dataclass
class ConversionResult:
    target: object
    link: ConversionLink
    warnings: list = field(default_factory=list)
    back_reference_applied: bool = False
    replayed: bool = False

    def to_dict(self):
        return {
            "target": self.target.to_dict(),
            "link": self.link.to_dict(),
            "warnings": list(self.warnings),
            "back_reference_applied": self.back_reference_applied,
            "replayed": self.replayed,
        }


# ── Private helpers ────────────────────────────────────────────────────────────


def _coerce_conversion_type(conversion_type) -> ConversionType:
    try:
        return ConversionType(getattr(conversion_type, "value", conversion_type))
    except ValueError:
        raise ValidationError(
            f"Unknown conversion type '{conversion_type}'",
            details={"conversion_type": f"must be one of {[c.value for c in ConversionType]}"},
        ) from None


def _check_gate(conversion_type: ConversionType, source) -> list[str]:
    """Raise GateError for hard gates; return warnings for soft ones."""
    warnings = []
    trl = source.trl_current
    if conversion_type is ConversionType.TO_PILOT:
        if trl is None or trl < PILOT_READY_LEVEL:
            raise GateError(
                "pilot_trl",
                required=PILOT_READY_LEVEL,
                actual=trl,
                message=(f"TRL {trl if trl is not None else 'unassessed'} is below the minimum "
                         f"of {PILOT_READY_LEVEL} required for pilot conversion"),
            )
    elif conversion_type is ConversionType.TO_SOLUTION:
        if trl is None or trl < COMMERCIALIZATION_READY_LEVEL:
            warnings.append(
                f"TRL {trl if trl is not None else 'unassessed'} is below the recommended "
                f"{COMMERCIALIZATION_READY_LEVEL} for solution conversion"
            )
    elif conversion_type is ConversionType.TO_SCALING_PLAN:
        if source.status not in SCALE_READY_STATUSES:
            raise GateError(
                "scale_readiness",
                required=sorted(SCALE_READY_STATUSES),
                actual=source.status,
                message=(f"Pilot status '{source.status}' is not eligible for scaling; "
                         f"it must be one of {', '.join(sorted(SCALE_READY_STATUSES))}"),
            )
    return warnings


def _is_blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return False


def _check_payload(target_kind: EntityKind, payload: dict) -> None:
    errors = {}
    for name in REQUIRED_PAYLOAD_FIELDS[target_kind]:
        if _is_blank(payload.get(name)):
            errors[name] = "required"

    if target_kind is EntityKind.SCALING_PLAN:
        units = payload.get("target_units")
        if "target_units" not in errors:
            if not isinstance(units, list) or not all(isinstance(u, str) and u.strip() for u in units):
                errors["target_units"] = "must be a list of unit ids"
            elif len(set(units)) != len(units):
                errors["target_units"] = "unit ids must be unique"
        budget = payload.get("estimated_budget")
        if "estimated_budget" not in errors and (
            isinstance(budget, bool) or not isinstance(budget, (int, float)) or budget < 0
        ):
            errors["estimated_budget"] = "must be a non-negative number"
        phases = payload.get("phases") or []
        if not isinstance(phases, list):
            errors["phases"] = "must be a list"
        elif "target_units" not in errors:
            known = set(units)
            for i, phase in enumerate(phases):
                if not isinstance(phase, dict) or not str(phase.get("name") or "").strip():
                    errors[f"phases[{i}].name"] = "required"
                    continue
                unknown = [u for u in phase.get("units") or [] if u not in known]
                if unknown:
                    errors[f"phases[{i}].units"] = f"not in target_units: {', '.join(map(str, unknown))}"

    if errors:
        raise ValidationError(
            f"Missing or invalid fields for {target_kind.value}: {', '.join(sorted(errors))}",
            details=errors,
        )


def _target_fields(target_kind: EntityKind, source, payload: dict, actor: str) -> dict:
    fields = {
        "title": str(payload["title"]).strip(),
        "status": "draft",
        "created_by": actor,
    }
    columns = _SCALING_COLUMNS if target_kind is EntityKind.SCALING_PLAN else ()
    fields["details"] = {k: v for k, v in payload.items() if k != "title" and k not in columns}

    if target_kind is EntityKind.PILOT:
        fields["trl_current"] = source.trl_current
        fields["trl_target"] = source.trl_target
    elif target_kind is EntityKind.SCALING_PLAN:
        fields["target_units"] = list(payload["target_units"])
        fields["estimated_budget"] = float(payload["estimated_budget"])
        fields["phases"] = [
            {"name": str(p["name"]).strip(), "units": list(p.get("units") or []), "status": "planned"}
            for p in payload.get("phases") or []
        ]
        fields["rollout_stage"] = "planning"
    return fields


def _back_reference_entry(link: ConversionLink) -> dict:
    return {
        "target_id": link.target_id,
        "target_kind": link.target_kind,
        "conversion_type": link.conversion_type,
        "link_id": link.id,
        "status": "converted",
        "created_at": link.created_at.isoformat() if link.created_at else None,
    }


def _apply_back_reference(link: ConversionLink, expected_version: int, actor: str) -> bool:
    """Phase 2: patch the source's tracking array.  Commits on success."""
    source_kind = EntityKind(link.source_kind)
    field_name = CONVERSION_RULES[ConversionType(link.conversion_type)].back_reference_field
    source, _version = entity_store.get(source_kind, link.source_id)

    refs = list(getattr(source, field_name) or [])
    if not any(r.get("link_id") == link.id for r in refs):
        refs.append(_back_reference_entry(link))
        entity_store.update(source_kind, source.id, {field_name: refs}, expected_version)
    link.back_reference_applied = True
    write_activity(
        entity_kind=source_kind.value,
        entity_id=source.id,
        activity_type="converted",
        actor=actor,
        description=f"Converted to {link.target_kind} {link.target_id}",
        details={"link_id": link.id, "conversion_type": link.conversion_type, "target_id": link.target_id},
    )
    db.session.commit()
    return True


def _replay(idempotency_key: str, source_id: str):
    link = ConversionLink.query.filter_by(idempotency_key=idempotency_key).first()
    if link is None:
        return None
    if link.source_id != str(source_id):
        raise ValidationError(
            "idempotency_key was already used for a different source",
            details={"idempotency_key": "conflict"},
        )
    target, _version = entity_store.get(link.target_kind, link.target_id)
    return ConversionResult(
        target=target, link=link, warnings=[],
        back_reference_applied=link.back_reference_applied, replayed=True,
    )


# ── Public API ─────────────────────────────────────────────────────────────────


def convert(
    source_kind,
    source_id: str,
    conversion_type,
    payload: dict,
    actor: str,
    expected_version: int | None = None,
    idempotency_key: str | None = None,
) -> ConversionResult:
    """Create the target entity for ``conversion_type`` from the source.

    Args:
        payload:          Field values for the target; taken as-is.
        expected_version: Version of the source the caller read.
        idempotency_key:  Replays with the same key return the original
                          target and link without creating anything.

    Raises:
        StaleVersionError, NotFoundError, ValidationError, GateError
    """
    source_kind = entity_store.coerce_kind(source_kind)
    conversion_type = _coerce_conversion_type(conversion_type)

    if idempotency_key:
        replay = _replay(idempotency_key, source_id)
        if replay is not None:
            logger.info(
                "Conversion replayed for key %s", idempotency_key,
                extra={"entity_kind": source_kind.value, "entity_id": str(source_id), "event_type": "conversion_replayed"},
            )
            return replay

    source, version = entity_store.get(source_kind, source_id, expected_version=expected_version)

    rule = CONVERSION_RULES[conversion_type]
    if source_kind not in rule.sources:
        raise ValidationError(
            f"{conversion_type.value} is not available for {source_kind.value}",
            details={"source_kind": f"must be one of {sorted(k.value for k in rule.sources)}"},
        )

    warnings = _check_gate(conversion_type, source)
    payload = dict(payload or {})
    _check_payload(rule.target, payload)

    # Phase 1: target + link
    try:
        target = entity_store.create(rule.target, _target_fields(rule.target, source, payload, actor))
        link = ConversionLink(
            source_kind=source_kind.value,
            source_id=source.id,
            target_kind=rule.target.value,
            target_id=target.id,
            conversion_type=conversion_type.value,
            created_by=actor,
            back_reference_applied=False,
            idempotency_key=idempotency_key or None,
        )
        db.session.add(link)
        db.session.flush()
        write_activity(
            entity_kind=rule.target.value,
            entity_id=target.id,
            activity_type="conversion_created",
            actor=actor,
            description=f"Created from {source_kind.value} {source.id}",
            details={"link_id": link.id, "conversion_type": conversion_type.value, "warnings": warnings},
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        if idempotency_key:
            replay = _replay(idempotency_key, source_id)
            if replay is not None:
                return replay
        raise
    except EngineError:
        db.session.rollback()
        raise

    log_extra = {"entity_kind": source_kind.value, "entity_id": source.id, "event_type": "conversion"}
    logger.info("Converted %s via %s (link %s)", source.id, conversion_type.value, link.id, extra=log_extra)

    # Phase 2: source back-reference
    applied = False
    try:
        applied = _apply_back_reference(link, version, actor)
    except (EngineError, SQLAlchemyError):
        db.session.rollback()
        logger.error(
            "Back-reference patch failed for conversion link %s; target %s kept, retry required",
            link.id, link.target_id, extra=log_extra, exc_info=True,
        )

    dispatch_best_effort(NotificationEvent(
        title=f"New {rule.target.value.replace('_', ' ')} created: {target.title}",
        body=f"Converted from {source_kind.value.replace('_', ' ')} '{source.title}'.",
        entity_kind=rule.target.value,
        entity_id=target.id,
    ))

    target, _ = entity_store.get(rule.target, target.id)
    return ConversionResult(target=target, link=link, warnings=warnings, back_reference_applied=applied)


def retry_back_reference(link_id, actor: str = "system") -> ConversionLink:
    """Re-apply the source back-reference for a link left unflagged by phase 2.

    Idempotent: an entry already present on the source is not duplicated.
    """
    link = db.session.get(ConversionLink, link_id)
    if link is None:
        raise NotFoundError("ConversionLink", link_id)
    if link.back_reference_applied:
        return link

    _source, version = entity_store.get(link.source_kind, link.source_id)
    try:
        _apply_back_reference(link, version, actor)
    except EngineError:
        db.session.rollback()
        raise
    logger.info(
        "Back-reference applied on retry for link %s", link.id,
        extra={"entity_kind": link.source_kind, "entity_id": link.source_id, "event_type": "back_reference_retry"},
    )
    return link
