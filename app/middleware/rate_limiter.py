"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter. The Limiter instance
is created in app/__init__.py with no default limits; this module applies
limits per route category, keyed by tenant where one is resolved.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

JOURNEY_WRITE_LIMIT = "120/minute"
JOURNEY_READ_LIMIT = "300/minute"


def tenant_rate_limit_key():
    """Dynamic rate limit key: tenant_id if available, else remote IP."""
    tenant_id = getattr(g, "tenant_id", None)
    if tenant_id:
        return f"tenant:{tenant_id}"
    return flask_request.remote_addr or "unknown"


def _is_read_request():
    return flask_request.method in ("GET", "HEAD", "OPTIONS")


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per tenant, falling back to remote IP):
        - Journey writes:  120/minute (POST/PUT/DELETE)
        - Journey reads:   300/minute (GET, dashboards poll analytics)
        - Health check:    exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("journey")
    if bp:
        limiter.limit(JOURNEY_WRITE_LIMIT, key_func=tenant_rate_limit_key,
                      exempt_when=_is_read_request)(bp)
        limiter.limit(JOURNEY_READ_LIMIT, key_func=tenant_rate_limit_key,
                      exempt_when=lambda: not _is_read_request())(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — journey write: %s, read: %s",
        JOURNEY_WRITE_LIMIT, JOURNEY_READ_LIMIT,
    )
