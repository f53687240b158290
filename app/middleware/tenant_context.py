"""
Tenant Context Middleware — resolves the practice a request acts for.

The journey engine never resolves tenants itself; every service takes
tenant_id explicitly. This hook does the resolution once per request:

  1. Reads X-Tenant-ID (non-numeric values are rejected as unknown)
  2. Verifies the tenant exists and is active
  3. Sets g.tenant, g.tenant_id and g.actor (from X-User-ID)

Requests without a tenant header fall through untouched; journey endpoints
reject them with 400 themselves.
"""

import logging

from flask import g, jsonify, request

from app.models import db
from app.models.tenant import Tenant

logger = logging.getLogger(__name__)

# Paths that skip tenant context
TENANT_SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


def _header_tenant_id():
    raw = request.headers.get("X-Tenant-ID", "").strip()
    if not raw:
        return None
    if not raw.isdigit():
        return -1
    return int(raw)


def init_tenant_context(app):
    """Register tenant context middleware as a before_request hook."""

    @app.before_request
    def _tenant_context():
        g.tenant = None
        g.tenant_id = None
        g.actor = request.headers.get("X-User-ID") or None

        if not request.path.startswith("/api/v1/"):
            return None

        for prefix in TENANT_SKIP_PREFIXES:
            if request.path.startswith(prefix):
                return None

        tenant_id = _header_tenant_id()
        if tenant_id is None:
            return None

        tenant = db.session.get(Tenant, tenant_id) if tenant_id > 0 else None
        if tenant is None:
            logger.warning("Tenant %s not found", tenant_id,
                           extra={"request_id": getattr(g, "request_id", None)})
            return jsonify({"error": "Tenant not found"}), 403

        if not tenant.is_active:
            logger.warning("Tenant %d is deactivated", tenant_id)
            return jsonify({"error": "Tenant account is deactivated"}), 403

        g.tenant = tenant
        g.tenant_id = tenant.id
        return None

    logger.info("Tenant context middleware installed")
