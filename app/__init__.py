"""
Compliance Journey Platform
Flask Application Factory.

Usage:
    from app import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os
from datetime import date

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from app.config import config
from app.models import db
from app.middleware.logging_config import configure_logging
from app.middleware.timing import init_request_timing
from app.middleware.diagnostics import run_startup_diagnostics
from app.middleware.rate_limiter import init_rate_limits
from app.middleware.tenant_context import init_tenant_context

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


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
    default_limits=[],                     # no global limit, applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
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
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

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

    # ── Tenant context middleware (sets g.tenant from X-Tenant-ID) ───────
    init_tenant_context(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    @app.before_request
    def _guard_request():
        from flask import request as _req, abort
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and _req.content_length and _req.content_length > max_len:
            abort(413, description="Request body too large")
        if _req.method in ("POST", "PUT", "PATCH") and _req.path.startswith("/api/"):
            ct = _req.content_type or ""
            if _req.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from app.models import tenant as _tenant_models          # noqa: F401
    from app.models import journey as _journey_models        # noqa: F401
    from app.models import scheduling as _scheduling_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ──────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Journey repository (SQL or in-process) ───────────────────────────
    from app.services.journey_repository import init_journey_repository
    from app.services.template_catalog import seed_default_templates

    repo = init_journey_repository(app)
    if repo.kind == "memory":
        # The in-process store starts empty on every boot.
        with app.app_context():
            seed_default_templates(repo=repo)
            repo.commit()

    # ── Blueprints ───────────────────────────────────────────────────────
    from app.blueprints.health_bp import health_bp
    from app.blueprints.journey_bp import journey_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(journey_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-journey-templates")
    def seed_journey_templates_cmd():
        """Seed the built-in compliance frameworks and journey templates."""
        from app.services.journey_repository import get_journey_repository
        catalog_repo = get_journey_repository()
        count = seed_default_templates(repo=catalog_repo)
        catalog_repo.commit()
        logger.info("Seeded %s new journey catalog rows.", count)

    @app.cli.command("record-journey-snapshots")
    @click.option("--date", "snapshot_date", default=None,
                  help="Snapshot date (YYYY-MM-DD); defaults to today (UTC).")
    def record_journey_snapshots_cmd(snapshot_date):
        """Record a progress snapshot for every non-cancelled journey."""
        from app.services.journey_snapshot import record_all_snapshots
        day = date.fromisoformat(snapshot_date) if snapshot_date else None
        result = record_all_snapshots(day)
        logger.info("Recorded %s snapshots for %s (%s failed).",
                    result["snapshots_recorded"], result["snapshot_date"], result["failed"])

    @app.cli.command("run-job")
    @click.argument("job_name")
    def run_job_cmd(job_name):
        """Run one registered scheduled job now."""
        from app.services.scheduler_service import SchedulerService
        SchedulerService.ensure_jobs_registered()
        outcome = SchedulerService.run_job(job_name)
        logger.info("Job %s finished: %s", job_name, outcome.get("status"))

    # ── Health check (detailed version at /health/live) ─────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Compliance Journey Platform"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Startup diagnostics ──────────────────────────────────────────────
    run_startup_diagnostics(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import jobs to register them) ──────────
    import importlib
    importlib.import_module("app.services.scheduled_jobs")  # registers @register_job handlers
    from app.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)

    return app
