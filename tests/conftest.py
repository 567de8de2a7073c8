"""
Shared pytest fixtures for the Innovation Lifecycle Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_entity: factory that inserts a committed entity of any kind
    - grant_role: factory that assigns a workflow role to a user id
    - rd_project / pilot / scaling_plan: pre-created entities
"""

import pytest

from lifecycle_engine import create_app
from lifecycle_engine.models import db as _db
from lifecycle_engine.models.entity import EntityKind
from lifecycle_engine.services import entity_store, role_provider


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        app.config["NOTIFICATIONS_ENABLED"] = True
        app.config["TRL_ENFORCE_MONOTONIC"] = False
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def make_entity():
    """Return a factory: make_entity(kind, **fields) -> committed entity at version 1."""

    def _make(kind, **fields):
        fields.setdefault("title", f"Test {EntityKind(kind).value.replace('_', ' ')}")
        fields.setdefault("created_by", "owner@test.local")
        entity = entity_store.create(kind, fields)
        _db.session.commit()
        return entity

    return _make


@pytest.fixture()
def grant_role():
    """Return a factory: grant_role(user_id, role) assigns and commits."""
    return role_provider.assign_role


@pytest.fixture()
def rd_project(make_entity):
    """An R&D project assessed at TRL 5, below the pilot threshold."""
    return make_entity(EntityKind.RD_PROJECT, title="Smart Water Metering", trl_current=5, trl_target=8)


@pytest.fixture()
def pilot(make_entity):
    """A completed pilot, eligible for scaling."""
    return make_entity(EntityKind.PILOT, title="Smart Parking Pilot", status="completed", trl_current=7)


@pytest.fixture()
def scaling_plan(make_entity):
    """A scaling plan in planning with two target units and no phases."""
    return make_entity(
        EntityKind.SCALING_PLAN,
        title="National Parking Rollout",
        target_units=["riyadh", "jeddah"],
        estimated_budget=250000.0,
        rollout_stage="planning",
    )
