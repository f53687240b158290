"""
Compliance Journey Platform
Progress aggregator — the single place a journey's progress and derived
status are computed.

    progress  = mean(step.completion_percentage), one decimal, equal weights
    completed ⇐ every mandatory step completed
                (no mandatory steps: every non-skipped step completed, ≥ 1)
    in_progress ⇐ any step left not_started
    not_started otherwise

paused / cancelled are explicit and completed is frozen: recompute() refreshes
the progress cache in those states but never moves the status. Resuming a
paused journey calls recompute(..., resume=True) to re-derive it.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from flask import current_app, has_app_context

from app.models.journey import (
    JourneyMilestone,
    JourneyStatus,
    StepStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_MILESTONE_THRESHOLDS = (25, 50, 75, 100)
JOURNEY_COMPLETED_MILESTONE = "journey_completed"

_MILESTONE_COPY = {
    25: ("25% Complete", "A quarter of the way there. Great start!"),
    50: ("Halfway There", "Half of the journey is done. Keep the momentum going!"),
    75: ("75% Complete", "Three quarters complete. The finish line is in sight!"),
    100: ("All Steps Complete", "Every step has been completed."),
}


def compute_progress(steps) -> float:
    """Arithmetic mean of step completion, rounded to one decimal; 0.0 without steps."""
    if not steps:
        return 0.0
    total = sum(step.completion_percentage or 0 for step in steps)
    return round(total / len(steps), 1)


def is_journey_complete(steps, definitions: dict) -> bool:
    mandatory = [s for s in steps if _is_mandatory(s, definitions)]
    if mandatory:
        return all(s.status == StepStatus.COMPLETED.value for s in mandatory)
    relevant = [s for s in steps if s.status != StepStatus.SKIPPED.value]
    return bool(relevant) and all(s.status == StepStatus.COMPLETED.value for s in relevant)


def derive_status(steps, definitions: dict) -> JourneyStatus:
    if steps and is_journey_complete(steps, definitions):
        return JourneyStatus.COMPLETED
    if any(s.status != StepStatus.NOT_STARTED.value for s in steps):
        return JourneyStatus.IN_PROGRESS
    return JourneyStatus.NOT_STARTED


def _is_mandatory(step, definitions: dict) -> bool:
    definition = definitions.get(step.step_definition_id)
    return True if definition is None else bool(definition.is_mandatory)


def milestone_thresholds() -> tuple[int, ...]:
    if has_app_context():
        return tuple(current_app.config.get("JOURNEY_MILESTONE_THRESHOLDS", DEFAULT_MILESTONE_THRESHOLDS))
    return DEFAULT_MILESTONE_THRESHOLDS


def recompute(repo, journey, steps, definitions: dict, *, now: datetime,
              resume: bool = False) -> list[JourneyMilestone]:
    """Refresh journey progress, derived status and milestones in place.

    Must run in the same unit of work as the step mutation that triggered it.
    Returns milestones created by this call.
    """
    old_status = journey.status
    journey.progress_percentage = compute_progress(steps)

    explicit = {JourneyStatus.PAUSED.value, JourneyStatus.CANCELLED.value, JourneyStatus.COMPLETED.value}
    if resume or journey.status not in explicit:
        new_status = derive_status(steps, definitions)
        journey.status = new_status.value
        if new_status != JourneyStatus.NOT_STARTED and journey.started_at is None:
            journey.started_at = now
        if new_status == JourneyStatus.COMPLETED and journey.actual_completion_date is None:
            journey.actual_completion_date = now

    if journey.status != old_status:
        logger.info(
            "Journey %s: %s → %s (%.1f%%)", journey.id, old_status, journey.status,
            journey.progress_percentage,
            extra={"tenant_id": journey.tenant_id, "journey_id": journey.id},
        )

    return _award_milestones(repo, journey, now)


def _award_milestones(repo, journey, now: datetime) -> list[JourneyMilestone]:
    existing = {m.milestone_type for m in repo.list_milestones(journey.tenant_id, journey.id)}
    created = []

    for threshold in milestone_thresholds():
        milestone_type = f"progress_{threshold}"
        if journey.progress_percentage < threshold or milestone_type in existing:
            continue
        title, message = _MILESTONE_COPY.get(
            threshold, (f"{threshold}% Complete", f"{threshold}% of the journey is complete."),
        )
        created.append(_new_milestone(
            journey, milestone_type, title, message, now,
            target_date=_interpolated_target(journey, threshold),
        ))

    if journey.status == JourneyStatus.COMPLETED.value and JOURNEY_COMPLETED_MILESTONE not in existing:
        created.append(_new_milestone(
            journey, JOURNEY_COMPLETED_MILESTONE, "Journey Completed",
            "Congratulations! The compliance journey is complete.", now,
            target_date=journey.target_completion_date,
        ))

    for milestone in created:
        repo.add(milestone)
        logger.info("Milestone %s achieved", milestone.milestone_type,
                    extra={"tenant_id": journey.tenant_id, "journey_id": journey.id})
    return created


def _new_milestone(journey, milestone_type, title, message, now, target_date=None):
    return JourneyMilestone(
        tenant_id=journey.tenant_id,
        journey_id=journey.id,
        milestone_type=milestone_type,
        title=title,
        description=message,
        achieved_at=now,
        target_date=target_date,
        is_celebrated=False,
        celebration_message=message,
        created_at=now,
    )


def _interpolated_target(journey, threshold: int) -> date | None:
    if journey.started_at is None or journey.target_completion_date is None:
        return None
    start = journey.started_at.date()
    span = (journey.target_completion_date - start).days
    if span < 0:
        return journey.target_completion_date
    return start + timedelta(days=round(span * threshold / 100))
