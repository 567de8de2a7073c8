"""
Innovation Lifecycle Engine
Flask Application Factory.

Usage:
    from lifecycle_engine import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import event as _sa_event, engine as _sa_engine

from lifecycle_engine.config import config
from lifecycle_engine.middleware.logging_config import configure_logging
from lifecycle_engine.middleware.rate_limiter import init_rate_limits
from lifecycle_engine.middleware.timing import init_request_timing
from lifecycle_engine.models import db
from lifecycle_engine.utils.errors import E, api_error

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit; limits are per-blueprint
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.

    Raises:
        ValueError: an approval workflow template is malformed.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    config_cls = config[config_name]
    app.config.from_object(config_cls() if config_name == "production" else config_cls)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Approval templates are checked before anything can serve ─────────
    from lifecycle_engine.models.approval import validate_templates
    kinds = validate_templates()
    app.logger.debug("Approval workflow templates valid for %d kinds", len(kinds))

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from lifecycle_engine.models import activity as _activity_models          # noqa: F401
    from lifecycle_engine.models import approval as _approval_models          # noqa: F401
    from lifecycle_engine.models import conversion as _conversion_models      # noqa: F401
    from lifecycle_engine.models import entity as _entity_models              # noqa: F401
    from lifecycle_engine.models import milestone as _milestone_models        # noqa: F401
    from lifecycle_engine.models import notification as _notification_models  # noqa: F401
    from lifecycle_engine.models import scaling as _scaling_models            # noqa: F401
    from lifecycle_engine.models import trl as _trl_models                    # noqa: F401
    from lifecycle_engine.models import user_role as _user_role_models        # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from lifecycle_engine.blueprints.notification_bp import notification_bp
    from lifecycle_engine.blueprints.workflow_bp import workflow_bp

    app.register_blueprint(workflow_bp)
    app.register_blueprint(notification_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("validate-templates")
    def validate_templates_cmd():
        """Validate every approval workflow template and list the kinds covered."""
        checked = validate_templates()
        logger.info("Approval workflow templates valid: %s",
                    ", ".join(k.value for k in checked))

    @app.cli.command("assign-role")
    @click.argument("user_id")
    @click.argument("role")
    def assign_role_cmd(user_id, role):
        """Assign a workflow role to a user in the role provider table."""
        from lifecycle_engine.services.role_provider import assign_role
        row = assign_role(user_id, role)
        logger.info("User %s now holds role %s.", row.user_id, row.role)

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Innovation Lifecycle Engine"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", details={"retry_after": e.description})

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
