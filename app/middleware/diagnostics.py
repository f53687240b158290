"""
Startup diagnostics — runs once when the Flask app starts.

Checks critical dependencies and logs a summary banner.
"""

import logging
import sys

from flask import Flask

from app.models import db

logger = logging.getLogger(__name__)


def run_startup_diagnostics(app: Flask):
    """Run diagnostic checks during app startup (inside app context)."""
    if app.config.get("TESTING"):
        return

    issues: list[str] = []

    with app.app_context():
        py = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"

        # ── Database connectivity ────────────────────────────────────
        db_status = "ok"
        db_uri = str(app.config.get("SQLALCHEMY_DATABASE_URI", ""))
        db_type = "PostgreSQL" if "postgresql" in db_uri else "SQLite" if "sqlite" in db_uri else "unknown"
        try:
            db.session.execute(db.text("SELECT 1"))
        except Exception as exc:
            db_status = f"FAILED ({exc})"
            issues.append(f"Database unreachable: {exc}")

        # ── Journey catalog ──────────────────────────────────────────
        template_count = "?"
        try:
            template_count = db.session.execute(
                db.text("SELECT COUNT(*) FROM journey_templates WHERE is_active")
            ).scalar()
            if not template_count:
                issues.append("No journey templates — run 'flask seed-journey-templates'")
        except Exception:
            db.session.rollback()
            issues.append("journey_templates table missing — run 'flask db upgrade'")

        repo_kind = app.config.get("JOURNEY_REPOSITORY", "sql")
        if repo_kind == "memory" and not app.config.get("TESTING"):
            issues.append("JOURNEY_REPOSITORY=memory — journey state is not durable")

        banner = f"""
╔══════════════════════════════════════════════════════════════╗
║  Compliance Journey Platform — Startup Diagnostics          ║
╠══════════════════════════════════════════════════════════════╣
║  Python      : {py:<46s}║
║  Debug       : {str(app.debug):<46s}║
║  Database    : {f'{db_type} ({db_status})':<46s}║
║  Templates   : {str(template_count):<46s}║
║  Repository  : {repo_kind:<46s}║
╚══════════════════════════════════════════════════════════════╝"""
        logger.info(banner)

        if issues:
            logger.warning("Startup issues detected:")
            for issue in issues:
                logger.warning("  ⚠ %s", issue)
        else:
            logger.info("✅ All startup checks passed")
