"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — 200 once the app is serving
    GET /api/v1/health/live   — dependency status (database, rate-limit store,
                                journey repository); 503 when a hard
                                dependency is down
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from app.models import db
from app.services.journey_repository import get_journey_repository

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


def _timed(check):
    t0 = time.perf_counter()
    detail = check()
    result = {"status": "ok", "latency_ms": round((time.perf_counter() - t0) * 1000, 1)}
    if detail:
        result.update(detail)
    return result


def _check_database():
    db.session.execute(db.text("SELECT 1"))


def _check_rate_limit_store(redis_url):
    import redis as redis_lib
    redis_lib.from_url(redis_url, socket_timeout=2).ping()


def _check_journey_store():
    repo = get_journey_repository()
    return {"kind": repo.kind, "templates": len(repo.list_templates())}


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    checks = {}
    healthy = True

    try:
        checks["database"] = _timed(_check_database)
    except Exception as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        healthy = False
        logger.error("Health check: database failed: %s", exc)

    redis_url = current_app.config.get("REDIS_URL", "")
    if redis_url.startswith("redis"):
        try:
            checks["redis"] = _timed(lambda: _check_rate_limit_store(redis_url))
        except Exception as exc:
            # Rate limiting degrades to per-process; not a hard failure
            checks["redis"] = {"status": "error", "detail": str(exc)}
    else:
        checks["redis"] = {"status": "skipped", "detail": "in-memory rate-limit storage"}

    try:
        checks["journey_repository"] = _timed(_check_journey_store)
    except Exception as exc:
        db.session.rollback()
        checks["journey_repository"] = {"status": "error", "detail": str(exc)}
        healthy = False
        logger.error("Health check: journey store failed: %s", exc)

    return jsonify({
        "status": "healthy" if healthy else "degraded",
        "app": "Compliance Journey Platform",
        "checks": checks,
    }), 200 if healthy else 503
