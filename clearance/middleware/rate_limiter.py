"""
Rate limiting configuration.

The Limiter instance is created in clearance/__init__.py with no default
limits; this module applies per-blueprint limits.

Usage:
    from clearance.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Clearance workflow:  60/minute  (gate decisions, step updates)
        - Notifications:       200/minute (polled by the reviewer inbox)
        - Health check:        exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        logger.debug("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("clearance_bp")
    if bp:
        limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("notification_bp")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    logger.info("Rate limiter configured: clearance=%s notification=%s",
                WRITE_LIMIT, READ_LIMIT)
