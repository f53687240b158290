"""
Compliance Journey Platform
Scheduler Service.

Lightweight job registry: job functions register themselves by name, a
ScheduledJob row persists their schedule and run history, and jobs execute
inside the Flask app context. An external cron (or `flask run-job`) drives
execution; nothing here spawns threads.

Architecture:
    - register_job: decorator that adds a function to the registry
    - SchedulerService: persistence + execution of registered jobs
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from flask import Flask

from app.models import db
from app.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


_job_registry: dict[str, Callable] = {}

# Cron config per job; unknown jobs fall back to midnight daily
_DEFAULT_SCHEDULES = {
    "journey_snapshot_daily": {"hour": "1", "minute": "0", "description": "Daily at 01:00"},
}
_FALLBACK_SCHEDULE = {"hour": "0", "minute": "0", "description": "Daily at midnight"}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("journey_snapshot_daily")
        def snapshot_all_journeys(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    return dict(_job_registry)


class SchedulerService:
    """Job persistence and execution, bound to one Flask app."""

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("Scheduler bound with jobs: %s", ", ".join(sorted(_job_registry)) or "none")

    @classmethod
    def _job_row(cls, job_name: str) -> ScheduledJob | None:
        return ScheduledJob.query.filter_by(job_name=job_name).first()

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create a ScheduledJob row for every registered job that lacks one."""
        if not cls._app:
            return []

        created = []
        with cls._app.app_context():
            for name, fn in _job_registry.items():
                if cls._job_row(name) is not None:
                    continue
                summary = (fn.__doc__ or "").strip().splitlines()
                job = ScheduledJob(
                    job_name=name,
                    description=summary[0] if summary else name,
                    schedule_type="cron",
                    schedule_config=_DEFAULT_SCHEDULES.get(name, _FALLBACK_SCHEDULE),
                    status="active",
                    is_enabled=True,
                )
                db.session.add(job)
                created.append(job)
            if created:
                db.session.commit()
                logger.info("Registered %d scheduled job row(s)", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name inside the app context.

        A job whose row is disabled is reported as skipped without running.

        Returns:
            {job_name, status (success|failed|skipped|error), duration_ms, result, error}
        """
        fn = _job_registry.get(job_name)
        if fn is None:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if cls._app is None:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        with cls._app.app_context():
            row = cls._job_row(job_name)
            if row is not None and not row.is_enabled:
                logger.info("Job %s is disabled; skipping", job_name)
                return {"job_name": job_name, "status": "skipped", "duration_ms": 0,
                        "result": None, "error": None}

        outcome = {"job_name": job_name, "status": "success", "result": None, "error": None}
        start = time.monotonic()
        try:
            with cls._app.app_context():
                outcome["result"] = fn(cls._app)
        except Exception as exc:
            outcome["status"] = "failed"
            outcome["error"] = str(exc)
            logger.exception("Job %s failed", job_name)
        outcome["duration_ms"] = int((time.monotonic() - start) * 1000)

        cls._record(job_name, outcome)
        return outcome

    @classmethod
    def _record(cls, job_name: str, outcome: dict) -> None:
        result = outcome["result"]
        try:
            with cls._app.app_context():
                row = cls._job_row(job_name)
                if row is None:
                    return
                row.record_run(
                    status=outcome["status"],
                    duration_ms=outcome["duration_ms"],
                    result=result if isinstance(result, dict) else {"output": str(result)},
                    error=outcome["error"],
                )
                db.session.commit()
        except Exception:
            logger.exception("Could not store run history for job %s", job_name)

    @classmethod
    def list_jobs(cls) -> list[dict]:
        return [
            {"job_name": name, "registered": True,
             "db_record": row.to_dict() if (row := cls._job_row(name)) else None}
            for name in _job_registry
        ]
