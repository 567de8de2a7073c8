"""Tests: TRL progression tracker."""

import pytest
from sqlalchemy.exc import OperationalError

from lifecycle_engine.core.exceptions import GateError, StaleVersionError, ValidationError
from lifecycle_engine.models.entity import EntityKind
from lifecycle_engine.models.trl import TRLAssessment
from lifecycle_engine.services import entity_store
from lifecycle_engine.services.notification import NotificationService
from lifecycle_engine.services.trl_tracker import assess_trl, get_trl_history


def _assess(entity, level, kind=EntityKind.RD_PROJECT, **kw):
    return assess_trl(kind, entity.id, level, "Lab validation report", kw.pop("confidence", 80),
                      kw.pop("assessor_id", "assessor@test.local"), **kw)


class TestAssessTRL:

    def test_reaching_six_sets_pilot_ready(self, rd_project):
        assessment = _assess(rd_project, 6)

        assert assessment.previous_level == 5
        assert assessment.level == 6
        assert assessment.is_regression is False
        entity, version = entity_store.get(EntityKind.RD_PROJECT, rd_project.id)
        assert entity.trl_current == 6
        assert entity.pilot_ready is True
        assert entity.commercialization_ready is False
        assert version == 2

    def test_reaching_seven_sets_commercialization_ready(self, rd_project):
        _assess(rd_project, 7)

        entity, _ = entity_store.get(EntityKind.RD_PROJECT, rd_project.id)
        assert entity.pilot_ready is True
        assert entity.commercialization_ready is True

    def test_pilots_are_tracked_too(self, pilot):
        assessment = _assess(pilot, 8, kind=EntityKind.PILOT)
        assert assessment.previous_level == 7

    @pytest.mark.parametrize("level", [0, 10, -1, 5.5, "6", True])
    def test_level_outside_range_is_rejected(self, rd_project, level):
        with pytest.raises(ValidationError) as exc_info:
            _assess(rd_project, level)
        assert "new_level" in exc_info.value.details

    def test_confidence_outside_range_is_rejected(self, rd_project):
        with pytest.raises(ValidationError) as exc_info:
            _assess(rd_project, 6, confidence=101)
        assert "confidence" in exc_info.value.details

    def test_assessor_is_required(self, rd_project):
        with pytest.raises(ValidationError):
            _assess(rd_project, 6, assessor_id=" ")

    def test_untracked_kind_is_rejected(self, make_entity):
        challenge = make_entity(EntityKind.CHALLENGE)
        with pytest.raises(ValidationError):
            _assess(challenge, 6, kind=EntityKind.CHALLENGE)

    def test_stale_version_is_rejected(self, rd_project):
        _assess(rd_project, 6)
        with pytest.raises(StaleVersionError):
            _assess(rd_project, 7, expected_version=1)
        assert TRLAssessment.query.count() == 1

    def test_failed_write_rolls_back_the_entity_update(self, rd_project, monkeypatch):
        def _broken_activity(**kwargs):
            raise OperationalError("INSERT INTO activities", {}, Exception("disk I/O error"))

        monkeypatch.setattr("lifecycle_engine.services.trl_tracker.write_activity", _broken_activity)

        with pytest.raises(OperationalError):
            _assess(rd_project, 6)

        entity, version = entity_store.get(EntityKind.RD_PROJECT, rd_project.id)
        assert version == 1
        assert entity.trl_current == 5
        assert TRLAssessment.query.count() == 0


class TestRegression:

    def test_regression_is_recorded_by_default(self, rd_project):
        _assess(rd_project, 7)

        assessment = _assess(rd_project, 4)

        assert assessment.is_regression is True
        entity, _ = entity_store.get(EntityKind.RD_PROJECT, rd_project.id)
        assert entity.trl_current == 4
        assert entity.pilot_ready is False
        assert entity.commercialization_ready is False

    def test_regression_rejected_when_monotonic_enforced(self, app, rd_project):
        app.config["TRL_ENFORCE_MONOTONIC"] = True

        with pytest.raises(GateError) as exc_info:
            _assess(rd_project, 3)

        assert exc_info.value.gate == "trl_monotonic"
        assert exc_info.value.required == 5
        entity, _ = entity_store.get(EntityKind.RD_PROJECT, rd_project.id)
        assert entity.trl_current == 5

    def test_same_level_is_not_a_regression(self, app, rd_project):
        app.config["TRL_ENFORCE_MONOTONIC"] = True
        assert _assess(rd_project, 5).is_regression is False


class TestReadinessNotifications:

    def test_crossing_pilot_threshold_notifies(self, rd_project):
        _assess(rd_project, 6)

        notes = NotificationService.list_for_entity(rd_project.id)
        assert len(notes) == 1
        assert "ready for piloting" in notes[0].title
        assert notes[0].priority == "high"

    def test_jump_to_seven_announces_commercialization(self, rd_project):
        _assess(rd_project, 7)

        notes = NotificationService.list_for_entity(rd_project.id)
        assert "ready for commercialization" in notes[0].title

    def test_no_notification_without_flag_change(self, rd_project):
        _assess(rd_project, 4)
        assert NotificationService.list_for_entity(rd_project.id) == []


def test_history_is_oldest_first(rd_project):
    for level in (6, 7, 8):
        _assess(rd_project, level)

    history = get_trl_history(EntityKind.RD_PROJECT, rd_project.id)

    assert [h.level for h in history] == [6, 7, 8]
    assert [h.previous_level for h in history] == [5, 6, 7]
