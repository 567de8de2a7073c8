"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in lifecycle_engine/__init__.py with no
default limits; this module applies granular limits per route category.

Usage:
    from lifecycle_engine.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WORKFLOW_LIMIT = "60/minute"
NOTIFICATION_READ_LIMIT = "200/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Workflow endpoints:      60/minute  (decisions, conversions, gates)
        - Notification reads:      200/minute (polled by the SPA)
        - Health check:            unlimited (app route, no default limits)

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("workflow")
    if bp:
        limiter.limit(WORKFLOW_LIMIT)(bp)

    bp = app.blueprints.get("notifications")
    if bp:
        limiter.limit(NOTIFICATION_READ_LIMIT)(bp)

    app.logger.info(
        "Rate limiter configured: workflow: %s, notifications: %s",
        WORKFLOW_LIMIT, NOTIFICATION_READ_LIMIT,
    )
