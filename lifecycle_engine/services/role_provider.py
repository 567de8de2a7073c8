"""
Role/Permission Provider.

Answers ``actor_role(user_id)`` from the ``user_roles`` table.  Who the
user is (authentication) is decided before a request reaches the engine.
"""

import logging

from lifecycle_engine.core.exceptions import ValidationError
from lifecycle_engine.models import db
from lifecycle_engine.models.approval import RoleId
from lifecycle_engine.models.user_role import UserRole

logger = logging.getLogger(__name__)


def actor_role(user_id):
    """Return the RoleId assigned to ``user_id``, or None when unassigned."""
    if not user_id:
        return None
    row = UserRole.query.filter_by(user_id=str(user_id)).first()
    if row is None:
        return None
    try:
        return RoleId(row.role)
    except ValueError:
        logger.warning("User %s holds unknown role '%s'", user_id, row.role)
        return None


def assign_role(user_id, role):
    """Create or replace the role assignment for ``user_id``."""
    if not user_id:
        raise ValidationError("user_id is required", details={"user_id": "required"})
    try:
        role = RoleId(getattr(role, "value", role))
    except ValueError:
        raise ValidationError(
            f"Unknown role '{role}'",
            details={"role": f"must be one of {[r.value for r in RoleId]}"},
        ) from None

    row = UserRole.query.filter_by(user_id=str(user_id)).first()
    if row is None:
        row = UserRole(user_id=str(user_id), role=role.value)
        db.session.add(row)
    else:
        row.role = role.value
    db.session.commit()
    return row
