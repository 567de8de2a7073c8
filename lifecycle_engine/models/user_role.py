"""
Innovation Lifecycle Engine
Role assignments consumed by the role provider.

Authentication is handled elsewhere; this table only answers
"which workflow role does this user act in".
"""

from datetime import datetime, timezone

from lifecycle_engine.models import db


class UserRole(db.Model):
    __tablename__ = "user_roles"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(150), nullable=False, unique=True, index=True)
    role = db.Column(db.String(50), nullable=False)
    assigned_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "role": self.role,
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
        }

    def __repr__(self):
        return f"<UserRole {self.user_id}={self.role}>"
