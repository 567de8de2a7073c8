"""
Workflow Blueprint: HTTP surface over the lifecycle engine.

Routes:
  GET    /entities/<kind>/<id>                                – entity with version
  GET    /entities/<kind>/<id>/approval-status                – approval chain position
  POST   /entities/<kind>/<id>/decisions                      – approve / reject current step
  POST   /entities/<kind>/<id>/milestones                     – plan milestones
  PUT    /entities/<kind>/<id>/milestones/<mid>/status        – move a milestone
  POST   /entities/<kind>/<id>/milestones/<mid>/approve       – complete with evidence
  GET    /entities/<kind>/<id>/trl-assessments                – TRL history
  POST   /entities/<kind>/<id>/trl-assessments                – assess TRL
  POST   /entities/<kind>/<id>/conversions                    – convert to another kind
  GET    /entities/<kind>/<id>/activities                     – activity trail
  POST   /conversions/<link_id>/retry-back-reference          – repair phase 2
  POST   /scaling-plans/<id>/units/<unit_id>/progress         – unit execution update
  POST   /scaling-plans/<id>/advance-phase                    – next rollout phase
  POST   /scaling-plans/<id>/budget-decision                  – budget gate
  POST   /scaling-plans/<id>/integration-decision             – national integration gate

The acting user comes from the X-User header; their role is resolved
through the role provider, never taken from the body; role assignments are
managed outside this API (see the ``assign-role`` CLI command).  ``expected_version``
may be sent in the body or as an If-Match header.
"""

import logging

from flask import Blueprint, jsonify, request

from lifecycle_engine.core.exceptions import EngineError, ValidationError
from lifecycle_engine.models.activity import list_activities
from lifecycle_engine.services import (
    approval_chain,
    conversion,
    entity_store,
    milestone_gate,
    role_provider,
    scaling_rollout,
    trl_tracker,
)
from lifecycle_engine.utils.errors import engine_error_response, error_code_for

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")


# ── helpers ──────────────────────────────────────────────────────────────

def _current_user():
    """Best-effort current user extraction (authentication happens upstream)."""
    return (
        request.headers.get("X-User", "")
        or request.headers.get("X-Forwarded-User", "")
        or "system"
    )


def _body():
    return request.get_json(silent=True) or {}


def _expected_version(data):
    """expected_version from the body, else from If-Match; None when absent."""
    raw = data.get("expected_version")
    if raw is None:
        header = (request.headers.get("If-Match") or "").strip()
        if header.startswith("W/"):
            header = header[2:]
        raw = header.strip('"') or None
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(
            "expected_version must be an integer",
            details={"expected_version": str(raw)},
        ) from None


# ── error handlers ───────────────────────────────────────────────────────

@workflow_bp.errorhandler(EngineError)
def _handle_engine_error(error: EngineError):
    logger.info("Engine rejected %s %s: %s", request.method, request.path, error,
                extra={"event_type": error_code_for(error)})
    return engine_error_response(error)


# ═════════════════════════════════════════════════════════════════════════════
# ENTITIES & APPROVAL CHAIN
# ═════════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/entities/<kind>/<entity_id>", methods=["GET"])
def get_entity(kind, entity_id):
    entity, version = entity_store.get(kind, entity_id)
    resp = jsonify(entity.to_dict())
    resp.headers["ETag"] = f'"{version}"'
    return resp


@workflow_bp.route("/entities/<kind>/<entity_id>/approval-status", methods=["GET"])
def approval_status(kind, entity_id):
    return jsonify(approval_chain.get_approval_status(kind, entity_id))


@workflow_bp.route("/entities/<kind>/<entity_id>/decisions", methods=["POST"])
def submit_decision(kind, entity_id):
    """Approve or reject the entity's current step.

    Body: { decision: "approved"|"rejected", comment?, step?, expected_version? }
    """
    data = _body()
    user = _current_user()
    result = approval_chain.submit_decision(
        kind,
        entity_id,
        actor_role=role_provider.actor_role(user),
        actor_name=user,
        decision=data.get("decision"),
        comment=data.get("comment"),
        step=data.get("step"),
        expected_version=_expected_version(data),
    )
    return jsonify(result.to_dict())


@workflow_bp.route("/entities/<kind>/<entity_id>/activities", methods=["GET"])
def entity_activities(kind, entity_id):
    entity, _version = entity_store.get(kind, entity_id)
    return jsonify([a.to_dict() for a in list_activities(entity.id)])


# ═════════════════════════════════════════════════════════════════════════════
# MILESTONES
# ═════════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/entities/<kind>/<entity_id>/milestones", methods=["POST"])
def plan_milestones(kind, entity_id):
    """Body: { milestones: [{name, description?, due_date?, deliverables?, requires_approval?}] }"""
    data = _body()
    created = milestone_gate.plan_milestones(
        kind, entity_id, data.get("milestones"), _current_user(),
        expected_version=_expected_version(data),
    )
    return jsonify([m.to_dict() for m in created]), 201


@workflow_bp.route("/entities/<kind>/<entity_id>/milestones/<milestone_id>/status", methods=["PUT"])
def update_milestone_status(kind, entity_id, milestone_id):
    data = _body()
    milestone = milestone_gate.update_milestone_status(
        kind, entity_id, milestone_id, data.get("status"), _current_user(),
        expected_version=_expected_version(data),
    )
    return jsonify(milestone.to_dict())


@workflow_bp.route("/entities/<kind>/<entity_id>/milestones/<milestone_id>/approve", methods=["POST"])
def approve_milestone(kind, entity_id, milestone_id):
    """Body: { evidence: [uri, ...], notes?, expected_version? }"""
    data = _body()
    milestone = milestone_gate.approve_milestone(
        kind, entity_id, milestone_id,
        approver_name=_current_user(),
        evidence=data.get("evidence"),
        notes=data.get("notes"),
        expected_version=_expected_version(data),
    )
    return jsonify(milestone.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# TRL
# ═════════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/entities/<kind>/<entity_id>/trl-assessments", methods=["GET"])
def trl_history(kind, entity_id):
    return jsonify([a.to_dict() for a in trl_tracker.get_trl_history(kind, entity_id)])


@workflow_bp.route("/entities/<kind>/<entity_id>/trl-assessments", methods=["POST"])
def assess_trl(kind, entity_id):
    """Body: { level, evidence_text?, confidence, expected_version? }"""
    data = _body()
    assessment = trl_tracker.assess_trl(
        kind, entity_id,
        new_level=data.get("level"),
        evidence_text=data.get("evidence_text", ""),
        confidence=data.get("confidence", 0),
        assessor_id=_current_user(),
        expected_version=_expected_version(data),
    )
    return jsonify(assessment.to_dict()), 201


# ═════════════════════════════════════════════════════════════════════════════
# CONVERSIONS
# ═════════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/entities/<kind>/<entity_id>/conversions", methods=["POST"])
def convert(kind, entity_id):
    """Body: { conversion_type, payload: {...}, expected_version? }

    An Idempotency-Key header (or ``idempotency_key`` in the body) makes
    retries return the original result.
    """
    data = _body()
    result = conversion.convert(
        kind, entity_id,
        conversion_type=data.get("conversion_type"),
        payload=data.get("payload") or {},
        actor=_current_user(),
        expected_version=_expected_version(data),
        idempotency_key=request.headers.get("Idempotency-Key") or data.get("idempotency_key"),
    )
    return jsonify(result.to_dict()), 200 if result.replayed else 201


@workflow_bp.route("/conversions/<int:link_id>/retry-back-reference", methods=["POST"])
def retry_back_reference(link_id):
    link = conversion.retry_back_reference(link_id, actor=_current_user())
    return jsonify(link.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# SCALING ROLLOUT
# ═════════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/scaling-plans/<plan_id>/units/<unit_id>/progress", methods=["POST"])
def record_unit_progress(plan_id, unit_id):
    """Body: { progress, kpi_status, status?, expected_version? }"""
    data = _body()
    plan, execution = scaling_rollout.record_unit_progress(
        plan_id, unit_id,
        progress=data.get("progress"),
        kpi_status=data.get("kpi_status", "on_track"),
        actor=_current_user(),
        status=data.get("status"),
        expected_version=_expected_version(data),
    )
    return jsonify({"plan": plan.to_dict(), "unit": execution.to_dict()})


@workflow_bp.route("/scaling-plans/<plan_id>/advance-phase", methods=["POST"])
def advance_phase(plan_id):
    data = _body()
    plan = scaling_rollout.advance_phase(plan_id, _current_user(), expected_version=_expected_version(data))
    return jsonify(plan.to_dict())


@workflow_bp.route("/scaling-plans/<plan_id>/budget-decision", methods=["POST"])
def budget_decision(plan_id):
    """Body: { decision: "approved"|"rejected", comments?, expected_version? }"""
    data = _body()
    plan = scaling_rollout.decide_budget(
        plan_id, data.get("decision"), data.get("comments"), _current_user(),
        expected_version=_expected_version(data),
    )
    return jsonify(plan.to_dict())


@workflow_bp.route("/scaling-plans/<plan_id>/integration-decision", methods=["POST"])
def integration_decision(plan_id):
    """Body: { checklist: {criterion: bool}, notes?, decision?, expected_version? }"""
    data = _body()
    plan = scaling_rollout.decide_national_integration(
        plan_id,
        checklist=data.get("checklist"),
        notes=data.get("notes"),
        decided_by=_current_user(),
        decision=data.get("decision", "approved"),
        expected_version=_expected_version(data),
    )
    return jsonify(plan.to_dict())
