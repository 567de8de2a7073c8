"""
Tests: Milestone Gate Engine.

Approval-gated milestones need evidence URIs and an approver; plain
milestones move through status updates; overdue milestones are flagged.
"""

from datetime import date

import pytest

from lifecycle_engine.core.exceptions import (
    AlreadyCompletedError,
    NotFoundError,
    StaleVersionError,
    ValidationError,
)
from lifecycle_engine.models import db as _db
from lifecycle_engine.models.activity import list_activities
from lifecycle_engine.models.entity import EntityKind
from lifecycle_engine.models.milestone import Milestone
from lifecycle_engine.services import entity_store
from lifecycle_engine.services.milestone_gate import (
    approve_milestone,
    mark_overdue_milestones,
    plan_milestones,
    update_milestone_status,
)

EVIDENCE = ["https://docs.example.org/pilot/report.pdf"]


# ── Helpers ──────────────────────────────────────────────────────────────


def _plan(entity, *items):
    items = items or ({"name": "Field trial sign-off", "requires_approval": True},)
    return plan_milestones(EntityKind.PILOT, entity.id, list(items), actor="pm@test.local")


@pytest.fixture()
def active_pilot(make_entity):
    return make_entity(EntityKind.PILOT, title="Smart Lighting Pilot", status="active")


# ═════════════════════════════════════════════════════════════════════════
# Planning
# ═════════════════════════════════════════════════════════════════════════


class TestPlanMilestones:

    def test_plan_creates_pending_milestones_in_order(self, active_pilot):
        created = _plan(
            active_pilot,
            {"name": "Design", "due_date": "2026-01-15", "deliverables": ["Design doc"]},
            {"name": "Launch", "requires_approval": True},
        )

        assert [m.name for m in created] == ["Design", "Launch"]
        assert [m.sort_order for m in created] == [0, 1]
        assert all(m.status == "pending" for m in created)
        assert created[0].due_date == date(2026, 1, 15)
        assert created[0].deliverables == ["Design doc"]
        _, version = entity_store.get(EntityKind.PILOT, active_pilot.id)
        assert version == 2

    def test_second_plan_continues_sort_order(self, active_pilot):
        _plan(active_pilot, {"name": "A"}, {"name": "B"})
        more = _plan(active_pilot, {"name": "C"})
        assert more[0].sort_order == 2

    def test_plan_requires_names(self, active_pilot):
        with pytest.raises(ValidationError) as exc_info:
            _plan(active_pilot, {"name": "ok"}, {"description": "no name"})
        assert "milestones[1].name" in exc_info.value.details

    def test_plan_rejects_bad_due_date(self, active_pilot):
        with pytest.raises(ValidationError):
            _plan(active_pilot, {"name": "x", "due_date": "next week"})

    def test_plan_rejects_empty_list(self, active_pilot):
        with pytest.raises(ValidationError):
            plan_milestones(EntityKind.PILOT, active_pilot.id, [], actor="pm")


# ═════════════════════════════════════════════════════════════════════════
# Approval with evidence
# ═════════════════════════════════════════════════════════════════════════


class TestApproveMilestone:

    def test_approve_with_evidence_completes(self, active_pilot):
        milestone = _plan(active_pilot)[0]

        result = approve_milestone(
            EntityKind.PILOT, active_pilot.id, milestone.id, "Dr. Approver", EVIDENCE,
            notes="All KPIs met",
        )

        assert result.status == "completed"
        assert result.evidence == EVIDENCE
        assert result.approved_by == "Dr. Approver"
        assert result.notes == "All KPIs met"
        assert result.completed_at is not None
        assert "milestone_completed" in [a.activity_type for a in list_activities(active_pilot.id)]

    @pytest.mark.parametrize("evidence", [[], None, ""])
    def test_empty_evidence_is_rejected(self, active_pilot, evidence):
        milestone = _plan(active_pilot)[0]

        with pytest.raises(ValidationError) as exc_info:
            approve_milestone(EntityKind.PILOT, active_pilot.id, milestone.id, "Approver", evidence)

        assert any(k.startswith("evidence") for k in exc_info.value.details)
        assert _db.session.get(Milestone, milestone.id).status == "pending"

    def test_non_uri_evidence_is_rejected(self, active_pilot):
        milestone = _plan(active_pilot)[0]

        with pytest.raises(ValidationError) as exc_info:
            approve_milestone(
                EntityKind.PILOT, active_pilot.id, milestone.id, "Approver",
                [EVIDENCE[0], "just some words"],
            )
        assert "evidence[1]" in exc_info.value.details

    def test_single_uri_string_is_accepted(self, active_pilot):
        milestone = _plan(active_pilot)[0]

        result = approve_milestone(
            EntityKind.PILOT, active_pilot.id, milestone.id, "Approver", "s3://bucket/evidence.zip",
        )
        assert result.evidence == ["s3://bucket/evidence.zip"]

    def test_approver_name_is_required(self, active_pilot):
        milestone = _plan(active_pilot)[0]
        with pytest.raises(ValidationError):
            approve_milestone(EntityKind.PILOT, active_pilot.id, milestone.id, "", EVIDENCE)

    def test_second_approval_is_already_completed(self, active_pilot):
        milestone = _plan(active_pilot)[0]
        approve_milestone(EntityKind.PILOT, active_pilot.id, milestone.id, "Approver", EVIDENCE)

        with pytest.raises(AlreadyCompletedError):
            approve_milestone(EntityKind.PILOT, active_pilot.id, milestone.id, "Approver", EVIDENCE)

    def test_milestone_without_approval_flag_is_rejected(self, active_pilot):
        milestone = _plan(active_pilot, {"name": "Internal check"})[0]
        with pytest.raises(ValidationError):
            approve_milestone(EntityKind.PILOT, active_pilot.id, milestone.id, "Approver", EVIDENCE)

    def test_milestone_of_another_entity_is_not_found(self, active_pilot, make_entity):
        other = make_entity(EntityKind.PILOT, title="Other pilot")
        milestone = _plan(other)[0]

        with pytest.raises(NotFoundError):
            approve_milestone(EntityKind.PILOT, active_pilot.id, milestone.id, "Approver", EVIDENCE)

    def test_unknown_milestone_is_not_found(self, active_pilot):
        with pytest.raises(NotFoundError):
            approve_milestone(EntityKind.PILOT, active_pilot.id, 9999, "Approver", EVIDENCE)

    def test_stale_version_is_rejected(self, active_pilot):
        milestone = _plan(active_pilot)[0]  # version 1 -> 2

        with pytest.raises(StaleVersionError):
            approve_milestone(
                EntityKind.PILOT, active_pilot.id, milestone.id, "Approver", EVIDENCE,
                expected_version=1,
            )

    def test_failed_write_leaves_milestone_pending(self, active_pilot, monkeypatch):
        milestone = _plan(active_pilot)[0]

        def _broken_activity(**kwargs):
            raise NotFoundError("Activity", "trail")

        monkeypatch.setattr("lifecycle_engine.services.milestone_gate.write_activity", _broken_activity)

        with pytest.raises(NotFoundError):
            approve_milestone(EntityKind.PILOT, active_pilot.id, milestone.id, "Approver", EVIDENCE)

        assert _db.session.get(Milestone, milestone.id).status == "pending"
        _, version = entity_store.get(EntityKind.PILOT, active_pilot.id)
        assert version == 2


# ═════════════════════════════════════════════════════════════════════════
# Status updates and overdue detection
# ═════════════════════════════════════════════════════════════════════════


class TestMilestoneStatus:

    def test_move_to_in_progress(self, active_pilot):
        milestone = _plan(active_pilot, {"name": "Install sensors"})[0]

        result = update_milestone_status(EntityKind.PILOT, active_pilot.id, milestone.id, "in_progress", "pm")

        assert result.status == "in_progress"

    def test_plain_milestone_can_be_completed_directly(self, active_pilot):
        milestone = _plan(active_pilot, {"name": "Install sensors"})[0]

        result = update_milestone_status(EntityKind.PILOT, active_pilot.id, milestone.id, "completed", "pm")

        assert result.status == "completed"
        assert result.completed_at is not None

    def test_gated_milestone_cannot_bypass_approval(self, active_pilot):
        milestone = _plan(active_pilot)[0]
        with pytest.raises(ValidationError):
            update_milestone_status(EntityKind.PILOT, active_pilot.id, milestone.id, "completed", "pm")

    def test_completed_milestone_cannot_move_back(self, active_pilot):
        milestone = _plan(active_pilot, {"name": "Install sensors"})[0]
        update_milestone_status(EntityKind.PILOT, active_pilot.id, milestone.id, "completed", "pm")

        with pytest.raises(AlreadyCompletedError):
            update_milestone_status(EntityKind.PILOT, active_pilot.id, milestone.id, "pending", "pm")

    def test_unknown_status_is_rejected(self, active_pilot):
        milestone = _plan(active_pilot, {"name": "Install sensors"})[0]
        with pytest.raises(ValidationError):
            update_milestone_status(EntityKind.PILOT, active_pilot.id, milestone.id, "done", "pm")

    def test_overdue_milestones_become_delayed(self, active_pilot):
        _plan(
            active_pilot,
            {"name": "Late", "due_date": "2026-03-01"},
            {"name": "On time", "due_date": "2026-12-01"},
            {"name": "Undated"},
        )

        changed = mark_overdue_milestones(EntityKind.PILOT, active_pilot.id, today=date(2026, 6, 1))

        assert [m.name for m in changed] == ["Late"]
        statuses = {m.name: m.status for m in Milestone.query.filter_by(entity_id=active_pilot.id)}
        assert statuses == {"Late": "delayed", "On time": "pending", "Undated": "pending"}

    def test_no_overdue_leaves_version_alone(self, active_pilot):
        _plan(active_pilot, {"name": "Future", "due_date": "2030-01-01"})
        _, before = entity_store.get(EntityKind.PILOT, active_pilot.id)

        assert mark_overdue_milestones(EntityKind.PILOT, active_pilot.id, today=date(2026, 6, 1)) == []

        _, after = entity_store.get(EntityKind.PILOT, active_pilot.id)
        assert after == before
