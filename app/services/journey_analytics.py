"""
Compliance Journey Platform
Journey analytics — tenant-wide summary computed from live state only.

Snapshots are never read here; they feed the progress series instead.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone

from flask import current_app, has_app_context

from app.models.journey import JourneyStatus, StepStatus
from app.services.journey_repository import JourneyRepository, get_journey_repository
from app.services.journey_snapshot import linked_evidence_count

logger = logging.getLogger(__name__)

DEFAULT_UPCOMING_DEADLINE_DAYS = 7


def _upcoming_window() -> int:
    if has_app_context():
        return int(current_app.config.get("JOURNEY_UPCOMING_DEADLINE_DAYS", DEFAULT_UPCOMING_DEADLINE_DAYS))
    return DEFAULT_UPCOMING_DEADLINE_DAYS


def get_analytics(tenant_id: int, today: date | None = None, *,
                  repo: JourneyRepository | None = None) -> dict:
    """Summary of every journey of one tenant.

    overdue_steps:      due before today and not completed
    upcoming_deadlines: due within [today, today + JOURNEY_UPCOMING_DEADLINE_DAYS]
    average_progress:   mean journey progress, one decimal; 0 without journeys
    """
    repo = repo or get_journey_repository()
    today = today or datetime.now(timezone.utc).date()
    horizon = today + timedelta(days=_upcoming_window())

    journeys = repo.list_journeys(tenant_id)
    by_status = {status.value: 0 for status in JourneyStatus}
    total_steps_completed = 0
    overdue_steps = 0
    upcoming_deadlines = 0
    all_step_ids = []

    for journey in journeys:
        by_status[journey.status] = by_status.get(journey.status, 0) + 1
        steps = repo.list_steps(tenant_id, journey.id)
        all_step_ids.extend(s.id for s in steps)
        for step in steps:
            if step.status == StepStatus.COMPLETED.value:
                total_steps_completed += 1
            if step.due_date is None:
                continue
            if step.due_date < today and step.status != StepStatus.COMPLETED.value:
                overdue_steps += 1
            elif today <= step.due_date <= horizon:
                upcoming_deadlines += 1

    progress_values = [j.progress_percentage or 0 for j in journeys]
    average = round(sum(progress_values) / len(progress_values), 1) if progress_values else 0.0

    result = {
        "total_journeys": len(journeys),
        "by_status": by_status,
        "active_journeys": by_status[JourneyStatus.IN_PROGRESS.value],
        "completed_journeys": by_status[JourneyStatus.COMPLETED.value],
        "average_progress": average,
        "total_steps_completed": total_steps_completed,
        "evidence_items_linked": linked_evidence_count(repo.list_evidence(tenant_id, all_step_ids)),
        "overdue_steps": overdue_steps,
        "upcoming_deadlines": upcoming_deadlines,
    }
    logger.debug("Analytics computed for %d journeys", len(journeys), extra={"tenant_id": tenant_id})
    return result
