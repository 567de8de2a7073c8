"""
Scaling Rollout Controller.

Runs a ScalingPlan through its rollout stages:

    planning ──(budget gate)──► executing ──(progress ≥ 80%, integration gate)──► integrated

A rejection at either gate sends the plan back to the preceding stage with
``revision_requested`` set; neither rejection is terminal.

``rollout_stage`` is separate from ``status``: the approval chain owns
``status``, this controller owns the stage.

Rollout progress is the mean unit progress over the target units of every
active or completed phase.  Units with no execution record count as 0.  A
plan without phases treats all of its target units as active.
"""

from __future__ import annotations

import copy
import logging

from sqlalchemy.exc import SQLAlchemyError

from lifecycle_engine.core.exceptions import (
    AlreadyCompletedError,
    EngineError,
    GateError,
    InvalidStepError,
    ValidationError,
)
from lifecycle_engine.models import db
from lifecycle_engine.models.activity import write_activity
from lifecycle_engine.models.approval import Decision
from lifecycle_engine.models.entity import EntityKind
from lifecycle_engine.models.scaling import (
    ACTIVE_PHASE_STATUSES,
    GATE_BUDGET,
    GATE_NATIONAL_INTEGRATION,
    INTEGRATION_PROGRESS_THRESHOLD,
    KPI_STATUSES,
    NATIONAL_INTEGRATION_CRITERIA,
    UNIT_STATUSES,
    ScalingGateDecision,
    ScalingUnitExecution,
)
from lifecycle_engine.services import entity_store
from lifecycle_engine.services.notification import NotificationEvent, dispatch_best_effort

logger = logging.getLogger(__name__)

KIND = EntityKind.SCALING_PLAN


# ── Private helpers ────────────────────────────────────────────────────────────


def _extra(plan_id, event_type):
    return {"entity_kind": KIND.value, "entity_id": str(plan_id), "event_type": event_type}


def _coerce_decision(decision) -> Decision:
    try:
        return Decision(getattr(decision, "value", decision))
    except ValueError:
        raise ValidationError(
            f"Invalid decision '{decision}'",
            details={"decision": "must be 'approved' or 'rejected'"},
        ) from None


def _require_budget(plan):
    if not plan.budget_approved:
        raise GateError(
            GATE_BUDGET,
            required=True,
            actual=False,
            message="The scaling budget has not been approved; rollout cannot proceed",
        )


def _executions(plan_id) -> dict:
    rows = ScalingUnitExecution.query.filter_by(plan_id=str(plan_id)).all()
    return {r.unit_id: r for r in rows}


def _derive_unit_status(progress) -> str:
    if progress >= 100:
        return "completed"
    if progress > 0:
        return "in_progress"
    return "planning"


def active_units(target_units, phases) -> list:
    """Target units counted toward rollout progress, in plan order."""
    if not phases:
        return list(target_units or [])
    seen = []
    for phase in phases:
        if phase.get("status") in ACTIVE_PHASE_STATUSES:
            for unit in phase.get("units") or []:
                if unit not in seen:
                    seen.append(unit)
    return seen


def mean_unit_progress(target_units, phases, progress_by_unit: dict) -> float:
    """Unrounded mean progress over the active units; gates compare against this."""
    units = active_units(target_units, phases)
    if not units:
        return 0.0
    total = sum(float(progress_by_unit.get(u, 0) or 0) for u in units)
    return total / len(units)


def compute_rollout_progress(target_units, phases, progress_by_unit: dict) -> float:
    return round(mean_unit_progress(target_units, phases, progress_by_unit), 2)


def _progress_for(plan, phases, executions) -> float:
    return compute_rollout_progress(
        plan.target_units, phases, {u: e.progress for u, e in executions.items()},
    )


def _activate_first_planned(phases) -> bool:
    for phase in phases:
        if phase.get("status") == "planned":
            phase["status"] = "active"
            return True
    return False


def _notify_owner(plan, title, body="", priority="normal"):
    dispatch_best_effort(NotificationEvent(
        title=title,
        body=body,
        priority=priority,
        entity_kind=KIND.value,
        entity_id=plan.id,
        recipients=[plan.created_by] if plan.created_by else [],
    ))


# ── Public API ─────────────────────────────────────────────────────────────────


def record_unit_progress(
    plan_id: str,
    unit_id: str,
    progress,
    kpi_status: str,
    actor: str,
    status: str | None = None,
    expected_version: int | None = None,
):
    """Upsert one unit's execution state and recompute rollout progress.

    Returns:
        (plan, execution)
    """
    plan, version = entity_store.get(KIND, plan_id, expected_version=expected_version)
    _require_budget(plan)
    if plan.rollout_stage == "integrated":
        raise InvalidStepError(
            "Rollout is integrated; unit progress is frozen",
            status=plan.rollout_stage,
        )

    errors = {}
    if unit_id not in (plan.target_units or []):
        errors["unit_id"] = f"'{unit_id}' is not a target unit of this plan"
    if isinstance(progress, bool) or not isinstance(progress, (int, float)) or not 0 <= progress <= 100:
        errors["progress"] = "must be between 0 and 100"
    if kpi_status not in KPI_STATUSES:
        errors["kpi_status"] = f"must be one of {list(KPI_STATUSES)}"
    if status is not None and status not in UNIT_STATUSES:
        errors["status"] = f"must be one of {list(UNIT_STATUSES)}"
    if errors:
        raise ValidationError("Invalid unit progress update", details=errors)

    executions = _executions(plan.id)
    execution = executions.get(unit_id)
    old = execution.to_dict() if execution else None
    if execution is None:
        execution = ScalingUnitExecution(plan_id=plan.id, unit_id=unit_id)
        db.session.add(execution)
        executions[unit_id] = execution
    execution.progress = float(progress)
    execution.kpi_status = kpi_status
    execution.status = status or _derive_unit_status(progress)
    execution.updated_by = actor

    rollout_progress = _progress_for(plan, plan.phases, executions)
    try:
        plan = entity_store.update(KIND, plan.id, {"rollout_progress": rollout_progress}, version)
        write_activity(
            entity_kind=KIND.value,
            entity_id=plan.id,
            activity_type="kpi_updated",
            actor=actor,
            description=f"Unit {unit_id}: {progress}% ({kpi_status})",
            details={
                "unit_id": unit_id,
                "old": old,
                "new": {"progress": float(progress), "kpi_status": kpi_status, "status": execution.status},
                "rollout_progress": rollout_progress,
            },
        )
        db.session.commit()
    except (EngineError, SQLAlchemyError):
        db.session.rollback()
        raise

    logger.info("Unit %s at %s%%, rollout %s%%", unit_id, progress, rollout_progress,
                extra=_extra(plan.id, "kpi_updated"))
    return plan, execution


def advance_phase(plan_id: str, actor: str, expected_version: int | None = None):
    """Complete the active phase and activate the next planned one.

    The active phase completes only when every one of its units is
    completed.  When it was the last phase it is simply completed.
    """
    plan, version = entity_store.get(KIND, plan_id, expected_version=expected_version)
    _require_budget(plan)

    phases = copy.deepcopy(plan.phases or [])
    active = next((p for p in phases if p.get("status") == "active"), None)
    has_planned = any(p.get("status") == "planned" for p in phases)
    if active is None and not has_planned:
        raise InvalidStepError("No phase left to advance", status=plan.rollout_stage)

    executions = _executions(plan.id)
    completed_name = None
    if active is not None:
        incomplete = [
            u for u in active.get("units") or []
            if executions.get(u) is None or executions[u].status != "completed"
        ]
        if incomplete:
            raise GateError(
                "phase_completion",
                required="all units completed",
                actual=incomplete,
                message=f"Phase '{active['name']}' has incomplete units: {', '.join(incomplete)}",
                details={"phase": active["name"], "incomplete_units": incomplete},
            )
        active["status"] = "completed"
        completed_name = active["name"]

    _activate_first_planned(phases)
    activated = next((p["name"] for p in phases if p.get("status") == "active"), None)
    rollout_progress = _progress_for(plan, phases, executions)

    try:
        plan = entity_store.update(KIND, plan.id, {
            "phases": phases,
            "rollout_progress": rollout_progress,
        }, version)
        write_activity(
            entity_kind=KIND.value,
            entity_id=plan.id,
            activity_type="phase_advanced",
            actor=actor,
            description=f"Phase completed: {completed_name or '-'}; now active: {activated or '-'}",
            details={"completed": completed_name, "activated": activated, "rollout_progress": rollout_progress},
        )
        db.session.commit()
    except (EngineError, SQLAlchemyError):
        db.session.rollback()
        raise

    logger.info("Phase advanced (%s -> %s)", completed_name, activated, extra=_extra(plan.id, "phase_advanced"))
    return plan


def decide_budget(plan_id: str, decision, comments: str | None, decided_by: str,
                  expected_version: int | None = None):
    """Budget approval gate: planning → executing on approval."""
    plan, version = entity_store.get(KIND, plan_id, expected_version=expected_version)
    decision = _coerce_decision(decision)

    if plan.budget_approved:
        raise AlreadyCompletedError(
            "The scaling budget is already approved",
            details={"gate": GATE_BUDGET, "rollout_stage": plan.rollout_stage},
        )
    if not (decided_by or "").strip():
        raise ValidationError("decided_by is required", details={"decided_by": "required"})

    if decision is Decision.APPROVED:
        phases = copy.deepcopy(plan.phases or [])
        _activate_first_planned(phases)
        patch = {
            "budget_approved": True,
            "rollout_stage": "executing",
            "phases": phases,
            "revision_requested": False,
            "revision_notes": None,
            "rollout_progress": _progress_for(plan, phases, _executions(plan.id)),
        }
        activity_type = "budget_approved"
    else:
        patch = {
            "rollout_stage": "planning",
            "revision_requested": True,
            "revision_notes": (comments or "").strip() or None,
        }
        activity_type = "budget_rejected"

    try:
        plan = entity_store.update(KIND, plan.id, patch, version)
        db.session.add(ScalingGateDecision(
            plan_id=plan.id,
            gate=GATE_BUDGET,
            decision=decision.value,
            comments=(comments or "").strip() or None,
            decided_by=decided_by.strip(),
        ))
        write_activity(
            entity_kind=KIND.value,
            entity_id=plan.id,
            activity_type=activity_type,
            actor=decided_by,
            description=f"Budget {decision.value}",
            details={"estimated_budget": plan.estimated_budget, "comments": comments},
        )
        db.session.commit()
    except (EngineError, SQLAlchemyError):
        db.session.rollback()
        raise

    logger.info("Budget %s", decision.value, extra=_extra(plan.id, activity_type))
    if decision is Decision.APPROVED:
        _notify_owner(plan, f"Budget approved for {plan.title}", "Rollout can begin.")
    else:
        _notify_owner(plan, f"Budget revision requested for {plan.title}", comments or "", priority="high")
    return plan


def decide_national_integration(
    plan_id: str,
    checklist: dict,
    notes: str | None,
    decided_by: str,
    decision="approved",
    expected_version: int | None = None,
):
    """National integration gate: executing → integrated on approval.

    Preconditions run in order: not yet integrated, budget approved,
    rollout progress at the threshold, then a well-formed checklist.
    """
    plan, version = entity_store.get(KIND, plan_id, expected_version=expected_version)

    if plan.integration_approved or plan.rollout_stage == "integrated":
        raise AlreadyCompletedError(
            "National integration is already approved",
            details={"gate": GATE_NATIONAL_INTEGRATION},
        )
    _require_budget(plan)

    progress = mean_unit_progress(
        plan.target_units, plan.phases,
        {u: e.progress for u, e in _executions(plan.id).items()},
    )
    if progress < INTEGRATION_PROGRESS_THRESHOLD:
        raise GateError(
            "integration_progress",
            required=INTEGRATION_PROGRESS_THRESHOLD,
            actual=progress,
            message=(f"Rollout progress is {progress:g}%; national integration requires at least "
                     f"{INTEGRATION_PROGRESS_THRESHOLD}%"),
        )

    if not isinstance(checklist, dict):
        raise ValidationError("checklist must be an object", details={"checklist": "required"})
    expected_keys = set(NATIONAL_INTEGRATION_CRITERIA)
    errors = {k: "unknown criterion" for k in set(checklist) - expected_keys}
    errors.update({k: "required" for k in expected_keys - set(checklist)})
    errors.update({
        k: "must be true or false"
        for k, v in checklist.items() if k in expected_keys and not isinstance(v, bool)
    })
    if errors:
        raise ValidationError("Invalid national integration checklist", details=errors)

    decision = _coerce_decision(decision)
    if not (decided_by or "").strip():
        raise ValidationError("decided_by is required", details={"decided_by": "required"})

    checklist = {k: checklist[k] for k in NATIONAL_INTEGRATION_CRITERIA}
    if decision is Decision.APPROVED:
        unmet = [k for k in NATIONAL_INTEGRATION_CRITERIA if not checklist[k]]
        if unmet:
            raise GateError(
                "integration_checklist",
                required=list(NATIONAL_INTEGRATION_CRITERIA),
                actual=unmet,
                message=f"National integration criteria not met: {', '.join(unmet)}",
                details={"unmet_criteria": unmet},
            )
        patch = {
            "integration_approved": True,
            "integration_checklist": checklist,
            "rollout_stage": "integrated",
            "revision_requested": False,
            "revision_notes": None,
        }
        activity_type = "integration_approved"
    else:
        patch = {
            "integration_checklist": checklist,
            "rollout_stage": "executing",
            "revision_requested": True,
            "revision_notes": (notes or "").strip() or None,
        }
        activity_type = "integration_rejected"

    try:
        plan = entity_store.update(KIND, plan.id, patch, version)
        db.session.add(ScalingGateDecision(
            plan_id=plan.id,
            gate=GATE_NATIONAL_INTEGRATION,
            decision=decision.value,
            comments=(notes or "").strip() or None,
            checklist=checklist,
            decided_by=decided_by.strip(),
        ))
        write_activity(
            entity_kind=KIND.value,
            entity_id=plan.id,
            activity_type=activity_type,
            actor=decided_by,
            description=f"National integration {decision.value} at {progress:g}% rollout",
            details={"checklist": checklist, "notes": notes, "rollout_progress": progress},
        )
        db.session.commit()
    except (EngineError, SQLAlchemyError):
        db.session.rollback()
        raise

    logger.info("National integration %s", decision.value, extra=_extra(plan.id, activity_type))
    if decision is Decision.APPROVED:
        _notify_owner(plan, f"{plan.title} is integrated nationally", notes or "", priority="high")
    else:
        _notify_owner(plan, f"National integration revision requested for {plan.title}", notes or "")
    return plan
