"""
Entity Store Adapter.

Thin CRUD surface over ``workflow_entities`` with optimistic versioning.
Every engine component reads and writes entities exclusively through the
three functions here:

    get(kind, id)                                -> (entity, version)
    update(kind, id, patch, expected_version)    -> entity | StaleVersionError
    create(kind, fields)                         -> entity

Conflict contract:
    ``update`` issues a single conditional UPDATE filtered on
    (id, kind, version == expected_version) and bumps ``version`` by one.
    Zero matched rows means another writer got there first and the call
    raises StaleVersionError with the version actually stored.  The caller
    must re-fetch and retry; nothing here retries.

Transaction boundary:
    The store flushes but never commits.  The calling service owns commit
    and rollback, so an entity write and the records that go with it
    (approval records, milestones, activity rows) land together.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update as sa_update

from lifecycle_engine.core.exceptions import NotFoundError, StaleVersionError, ValidationError
from lifecycle_engine.models import db
from lifecycle_engine.models.entity import MODEL_BY_KIND, EntityKind, WorkflowEntity

logger = logging.getLogger(__name__)

_TABLE = WorkflowEntity.__table__
_WRITABLE_FIELDS = frozenset(_TABLE.columns.keys()) - {"id", "kind", "version", "created_at", "updated_at"}


def coerce_kind(kind: EntityKind | str) -> EntityKind:
    """Normalise a kind given as enum or string; unknown kinds are a ValidationError."""
    if isinstance(kind, EntityKind):
        return kind
    try:
        return EntityKind(str(kind))
    except ValueError:
        raise ValidationError(
            f"Unknown entity kind '{kind}'",
            details={"kind": f"must be one of {sorted(k.value for k in EntityKind)}"},
        ) from None


def _check_fields(model, fields: dict) -> None:
    unknown = sorted(set(fields) - _WRITABLE_FIELDS)
    if unknown:
        raise ValidationError(
            f"Unknown or read-only fields for {model.__name__}: {', '.join(unknown)}",
            details={f: "not writable" for f in unknown},
        )
    status = fields.get("status")
    if status is not None and status not in model.STATUSES:
        raise ValidationError(
            f"Invalid status '{status}' for {model.__name__}",
            details={"status": f"must be one of {list(model.STATUSES)}"},
        )


# ── Public API ────────────────────────────────────────────────────────────────


def get(kind: EntityKind | str, entity_id: str, *, expected_version: int | None = None):
    """Re-read the authoritative entity state.

    ``populate_existing`` discards anything the session had cached for this
    row, so validation always runs against what is actually stored.

    Args:
        expected_version: The version the caller read earlier.  When given
            and different from the stored version, StaleVersionError is
            raised before the caller validates anything.

    Returns:
        (entity, version)
    """
    kind = coerce_kind(kind)
    model = MODEL_BY_KIND[kind]
    entity = db.session.get(WorkflowEntity, str(entity_id), populate_existing=True)
    if entity is None or entity.kind != kind.value:
        raise NotFoundError(model.__name__, entity_id)
    if expected_version is not None and int(expected_version) != entity.version:
        raise StaleVersionError(kind.value, entity.id, int(expected_version), entity.version)
    return entity, entity.version


def update(kind: EntityKind | str, entity_id: str, patch: dict, expected_version: int):
    """Apply ``patch`` iff the stored version still equals ``expected_version``.

    An empty patch is valid and still bumps the version; services use that
    to claim the entity when the real change lives in a child table.

    Raises:
        StaleVersionError: the row moved on since it was read.
        NotFoundError: the row no longer exists.
        ValidationError: unknown or read-only fields, or an invalid status.
    """
    kind = coerce_kind(kind)
    model = MODEL_BY_KIND[kind]
    _check_fields(model, patch)

    values = dict(patch)
    values["version"] = int(expected_version) + 1
    values["updated_at"] = datetime.now(timezone.utc)

    result = db.session.execute(
        sa_update(_TABLE)
        .where(
            _TABLE.c.id == str(entity_id),
            _TABLE.c.kind == kind.value,
            _TABLE.c.version == int(expected_version),
        )
        .values(**values)
    )
    if result.rowcount != 1:
        current = db.session.execute(
            select(_TABLE.c.version).where(_TABLE.c.id == str(entity_id), _TABLE.c.kind == kind.value)
        ).scalar_one_or_none()
        if current is None:
            raise NotFoundError(model.__name__, entity_id)
        logger.info(
            "Optimistic version conflict on %s %s (expected v%s, stored v%s)",
            kind.value, entity_id, expected_version, current,
            extra={"entity_kind": kind.value, "entity_id": str(entity_id), "event_type": "stale_version"},
        )
        raise StaleVersionError(kind.value, str(entity_id), int(expected_version), current)

    return db.session.get(WorkflowEntity, str(entity_id), populate_existing=True)


def create(kind: EntityKind | str, fields: dict):
    """Insert a new entity of ``kind`` at version 1.

    Args:
        fields: Column values; ``title`` is mandatory.
    """
    kind = coerce_kind(kind)
    model = MODEL_BY_KIND[kind]
    _check_fields(model, fields)
    if not (fields.get("title") or "").strip():
        raise ValidationError("title is required", details={"title": "required"})

    entity = model(**fields)
    entity.version = 1
    db.session.add(entity)
    db.session.flush()
    logger.debug(
        "Created %s %s", kind.value, entity.id,
        extra={"entity_kind": kind.value, "entity_id": entity.id, "event_type": "entity_created"},
    )
    return entity
