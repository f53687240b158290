"""
Compliance Journey Platform
Journey snapshot engine — dated progress points and the series built on them.

One JourneyProgressSnapshot per (journey, calendar day). Capturing again on
the same day overwrites that day's row; earlier days are never touched.

Velocity (steps completed per week):

    baseline = latest earlier snapshot dated ≤ day − window
               else the oldest earlier snapshot
    velocity = (completed_now − completed_at_baseline) / days_between × 7

No earlier snapshot → 0. Estimated completion projects the remaining
(neither completed nor skipped) steps forward at that velocity.
"""

from __future__ import annotations

import logging
import math
from datetime import date, datetime, timedelta, timezone

from flask import current_app, has_app_context

from app.core.exceptions import JourneyError, NotFoundError, ValidationError
from app.models.journey import JourneyProgressSnapshot, JourneyStatus, StepStatus
from app.services.helpers.unit_of_work import run_journey_write
from app.services.journey_progress import compute_progress
from app.services.journey_repository import JourneyRepository, get_journey_repository

logger = logging.getLogger(__name__)

DEFAULT_VELOCITY_WINDOW_DAYS = 7


def _today() -> date:
    return datetime.now(timezone.utc).date()


def _velocity_window() -> int:
    if has_app_context():
        return int(current_app.config.get("JOURNEY_VELOCITY_WINDOW_DAYS", DEFAULT_VELOCITY_WINDOW_DAYS))
    return DEFAULT_VELOCITY_WINDOW_DAYS


def _as_date(value, field: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date", details={field: value}) from None


# ── Pure calculations ────────────────────────────────────────────────────────


def compute_velocity(earlier: list, completed_now: int, snapshot_date: date,
                     window_days: int = DEFAULT_VELOCITY_WINDOW_DAYS) -> float:
    """Steps completed per week against the baseline snapshot.

    ``earlier`` holds snapshots dated strictly before snapshot_date,
    ascending by date.
    """
    if not earlier:
        return 0.0
    cutoff = snapshot_date - timedelta(days=window_days)
    in_window = [s for s in earlier if s.snapshot_date <= cutoff]
    baseline = in_window[-1] if in_window else earlier[0]
    days = (snapshot_date - baseline.snapshot_date).days
    if days <= 0:
        return 0.0
    delta = completed_now - (baseline.completed_steps or 0)
    return round(delta / days * 7, 2)


def estimate_completion_date(remaining_steps: int, velocity: float, snapshot_date: date) -> date | None:
    if remaining_steps <= 0:
        return snapshot_date
    if velocity <= 0:
        return None
    return snapshot_date + timedelta(days=math.ceil(remaining_steps / velocity * 7))


def distinct_evidence_count(links) -> int:
    return len({link.evidence_item_id for link in links})


def linked_evidence_count(links) -> int:
    """Distinct (step, artifact) pairs; one artifact on two steps counts twice."""
    return len({(link.journey_step_id, link.evidence_item_id) for link in links})


# ── Capture ──────────────────────────────────────────────────────────────────


def capture(repo: JourneyRepository, journey, steps, snapshot_date: date) -> JourneyProgressSnapshot:
    """Upsert the snapshot row for (journey, snapshot_date) from live state.

    Runs inside the caller's unit of work.
    """
    completed = sum(1 for s in steps if s.status == StepStatus.COMPLETED.value)
    in_progress = sum(1 for s in steps if s.status == StepStatus.IN_PROGRESS.value)
    remaining = sum(
        1 for s in steps
        if s.status not in (StepStatus.COMPLETED.value, StepStatus.SKIPPED.value)
    )
    links = repo.list_evidence(journey.tenant_id, [s.id for s in steps])

    earlier = repo.list_snapshots(
        journey.tenant_id, journey.id, until=snapshot_date - timedelta(days=1),
    )
    velocity = compute_velocity(earlier, completed, snapshot_date, _velocity_window())

    snapshot = repo.get_snapshot(journey.tenant_id, journey.id, snapshot_date)
    if snapshot is None:
        snapshot = JourneyProgressSnapshot(
            tenant_id=journey.tenant_id,
            journey_id=journey.id,
            snapshot_date=snapshot_date,
            created_at=datetime.now(timezone.utc),
        )
        repo.add(snapshot)

    snapshot.total_steps = len(steps)
    snapshot.completed_steps = completed
    snapshot.in_progress_steps = in_progress
    snapshot.evidence_items_linked = linked_evidence_count(links)
    snapshot.progress_percentage = compute_progress(steps)
    snapshot.velocity = velocity
    snapshot.estimated_completion_date = estimate_completion_date(remaining, velocity, snapshot_date)

    logger.debug(
        "Snapshot %s: %d/%d steps, velocity %.2f", snapshot_date, completed, len(steps), velocity,
        extra={"tenant_id": journey.tenant_id, "journey_id": journey.id},
    )
    return snapshot


def record_snapshot(tenant_id: int, journey_id: str, snapshot_date=None,
                    *, repo: JourneyRepository | None = None) -> dict:
    """Capture today's (or snapshot_date's) progress point for one journey.

    Idempotent per day: the last capture of a day wins.

    Raises:
        NotFoundError: journey does not exist for this tenant.
    """
    repo = repo or get_journey_repository()
    day = _as_date(snapshot_date, "snapshot_date") if snapshot_date else _today()

    def _capture():
        journey = repo.get_journey(tenant_id, journey_id)
        if journey is None:
            raise NotFoundError(resource="PracticeJourney", resource_id=journey_id)
        steps = repo.list_steps(tenant_id, journey.id)
        snapshot = capture(repo, journey, steps, day)
        repo.flush()
        return snapshot.to_dict()

    return run_journey_write(repo, journey_id, "record_snapshot", _capture)


def record_all_snapshots(snapshot_date=None, *, repo: JourneyRepository | None = None) -> dict:
    """Snapshot every non-cancelled journey across all tenants.

    One journey failing is logged and counted; the rest still get captured.
    """
    repo = repo or get_journey_repository()
    day = _as_date(snapshot_date, "snapshot_date") if snapshot_date else _today()

    targets = [
        (j.tenant_id, j.id) for j in repo.list_journeys(None)
        if j.status != JourneyStatus.CANCELLED.value
    ]
    recorded = 0
    failed = 0
    for tenant_id, journey_id in targets:
        try:
            record_snapshot(tenant_id, journey_id, day, repo=repo)
            recorded += 1
        except JourneyError as exc:
            failed += 1
            logger.error("Snapshot failed: %s", exc,
                         extra={"tenant_id": tenant_id, "journey_id": journey_id})

    logger.info("Recorded %d journey snapshots for %s (%d failed)", recorded, day, failed)
    return {"snapshot_date": day.isoformat(), "snapshots_recorded": recorded, "failed": failed}


# ── Series ───────────────────────────────────────────────────────────────────


def get_progress_series(tenant_id: int, journey_id: str, window_days: int = 30,
                        today=None, *, repo: JourneyRepository | None = None) -> dict:
    """Stored snapshots within [today − window_days, today], ascending by date.

    Missing days stay missing; nothing is interpolated.
    """
    repo = repo or get_journey_repository()
    if isinstance(window_days, bool) or not isinstance(window_days, int) or window_days < 0:
        raise ValidationError("window_days must be a non-negative integer",
                              details={"window_days": window_days})
    end = _as_date(today, "today") if today else _today()
    start = end - timedelta(days=window_days)

    if repo.get_journey(tenant_id, journey_id) is None:
        raise NotFoundError(resource="PracticeJourney", resource_id=journey_id)

    snapshots = repo.list_snapshots(tenant_id, journey_id, since=start, until=end)
    return {
        "journey_id": journey_id,
        "window_days": window_days,
        "dates": [s.snapshot_date.isoformat() for s in snapshots],
        "progress_percentages": [s.progress_percentage for s in snapshots],
        "completed_steps": [s.completed_steps for s in snapshots],
        "evidence_linked": [s.evidence_items_linked for s in snapshots],
        "velocity": [s.velocity for s in snapshots],
    }
