"""
Tests: Entity Store Adapter: optimistic versioning contract.

Every engine component writes through entity_store.update; these tests pin
the conditional-update semantics the rest of the suite relies on.
"""

import pytest

from lifecycle_engine.core.exceptions import NotFoundError, StaleVersionError, ValidationError
from lifecycle_engine.models import db as _db
from lifecycle_engine.models.entity import EntityKind, Pilot, RDProject
from lifecycle_engine.services import entity_store


def test_create_starts_at_version_one(make_entity):
    entity = make_entity(EntityKind.RD_PROJECT, title="Desalination membranes")

    loaded, version = entity_store.get(EntityKind.RD_PROJECT, entity.id)

    assert version == 1
    assert isinstance(loaded, RDProject)
    assert loaded.kind == "rd_project"
    assert loaded.status == "draft"


def test_get_accepts_kind_as_string(make_entity):
    entity = make_entity(EntityKind.PILOT)

    loaded, _ = entity_store.get("pilot", entity.id)

    assert isinstance(loaded, Pilot)


def test_update_applies_patch_and_bumps_version(make_entity):
    entity = make_entity(EntityKind.RD_PROJECT)

    updated = entity_store.update(EntityKind.RD_PROJECT, entity.id, {"trl_current": 4}, 1)
    _db.session.commit()

    assert updated.version == 2
    assert updated.trl_current == 4
    _, version = entity_store.get(EntityKind.RD_PROJECT, entity.id)
    assert version == 2


def test_update_with_stale_version_raises_and_reports_versions(make_entity):
    entity = make_entity(EntityKind.RD_PROJECT)
    entity_store.update(EntityKind.RD_PROJECT, entity.id, {"trl_current": 3}, 1)
    _db.session.commit()

    with pytest.raises(StaleVersionError) as exc_info:
        entity_store.update(EntityKind.RD_PROJECT, entity.id, {"trl_current": 4}, 1)

    assert exc_info.value.expected == 1
    assert exc_info.value.actual == 2
    assert exc_info.value.details["actual_version"] == 2
    _db.session.rollback()
    loaded, _ = entity_store.get(EntityKind.RD_PROJECT, entity.id)
    assert loaded.trl_current == 3


def test_get_with_expected_version_mismatch_is_stale(make_entity):
    entity = make_entity(EntityKind.CHALLENGE)

    with pytest.raises(StaleVersionError):
        entity_store.get(EntityKind.CHALLENGE, entity.id, expected_version=7)


def test_get_rejects_other_kind(make_entity):
    entity = make_entity(EntityKind.PILOT)

    with pytest.raises(NotFoundError):
        entity_store.get(EntityKind.RD_PROJECT, entity.id)


def test_get_missing_entity_raises_not_found():
    with pytest.raises(NotFoundError) as exc_info:
        entity_store.get(EntityKind.PILOT, "does-not-exist")
    assert "does-not-exist" in str(exc_info.value)


def test_update_missing_entity_raises_not_found():
    with pytest.raises(NotFoundError):
        entity_store.update(EntityKind.PILOT, "does-not-exist", {"title": "x"}, 1)


def test_unknown_kind_is_validation_error():
    with pytest.raises(ValidationError) as exc_info:
        entity_store.get("spaceship", "abc")
    assert "kind" in exc_info.value.details


@pytest.mark.parametrize("patch", [
    {"no_such_column": 1},
    {"version": 5},
    {"kind": "pilot"},
])
def test_update_rejects_unknown_or_read_only_fields(make_entity, patch):
    entity = make_entity(EntityKind.RD_PROJECT)

    with pytest.raises(ValidationError):
        entity_store.update(EntityKind.RD_PROJECT, entity.id, patch, 1)


def test_update_rejects_status_outside_kind_vocabulary(make_entity):
    entity = make_entity(EntityKind.RD_PROJECT)

    with pytest.raises(ValidationError) as exc_info:
        entity_store.update(EntityKind.RD_PROJECT, entity.id, {"status": "scale_eligible"}, 1)
    assert "status" in exc_info.value.details


def test_create_requires_title():
    with pytest.raises(ValidationError):
        entity_store.create(EntityKind.PROGRAM, {"title": "  "})


def test_to_dict_exposes_kind_specific_fields(make_entity):
    rd = make_entity(EntityKind.RD_PROJECT, trl_current=5)
    challenge = make_entity(EntityKind.CHALLENGE)

    rd_data = rd.to_dict()
    challenge_data = challenge.to_dict()

    assert rd_data["trl_current"] == 5
    assert rd_data["pilot_opportunities"] == []
    assert "trl_current" not in challenge_data
    assert challenge_data["policy_recommendations"] == []
