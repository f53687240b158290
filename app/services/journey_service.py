"""
Compliance Journey Platform
Journey service — instantiation, step and journey state machines.

Rules:
  - tenant_id is always an explicit parameter (never read from flask.g).
  - Every mutation is one unit of work (run_journey_write): validation
    happens before any field changes, so a rejected command leaves the step
    and journey exactly as they were.
  - Journey progress / status / milestones are only ever written through
    journey_progress.recompute(), in the same unit of work as the step change.
  - Every step mutation touches the journey row, so concurrent writers of one
    journey collide on its version column and get retried.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from flask import current_app, has_app_context

from app.core.exceptions import (
    ConcurrencyConflictError,
    CreationFailedError,
    InsufficientEvidenceError,
    InvalidRangeError,
    InvalidTransitionError,
    JourneyError,
    JourneyPausedError,
    JourneyTerminalError,
    NotFoundError,
    PrerequisiteNotMetError,
    ValidationError,
)
from app.models.journey import (
    JourneyStatus,
    JourneyStepInstance,
    JourneyMilestone,
    PracticeJourney,
    PREREQUISITE_GATED_STATUSES,
    ReviewStatus,
    StepStatus,
    validate_journey_transition,
    validate_step_transition,
)
from app.services import journey_progress, journey_snapshot
from app.services.helpers.unit_of_work import run_journey_write
from app.services.journey_repository import JourneyRepository, get_journey_repository

logger = logging.getLogger(__name__)

STEP_UPDATE_FIELDS = frozenset({"status", "completion_percentage", "notes", "due_date", "assigned_to"})
JOURNEY_UPDATE_FIELDS = frozenset({"status", "assigned_to", "target_completion_date"})

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _today() -> date:
    return _utcnow().date()


def _setting(key, default):
    if has_app_context():
        return current_app.config.get(key, default)
    return default


def _log_extra(tenant_id, journey_id=None, step_id=None) -> dict:
    return {"tenant_id": tenant_id, "journey_id": journey_id, "step_id": step_id}


# ── Input parsing ────────────────────────────────────────────────────────────


def _reject_unknown(data: dict, allowed: frozenset, entity: str) -> None:
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ValidationError(
            f"Unsupported {entity} field(s): {', '.join(unknown)}",
            details={field: "not allowed" for field in unknown},
        )


def _parse_date(value, field: str) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)",
                              details={field: value}) from None


def _parse_percentage(value) -> int:
    if isinstance(value, bool):
        raise ValidationError("completion_percentage must be a number",
                              details={"completion_percentage": value})
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError("completion_percentage must be a number",
                              details={"completion_percentage": value}) from None
    if not 0 <= number <= 100:
        raise InvalidRangeError("completion_percentage", value, 0, 100)
    return int(round(number))


def _parse_status(enum_cls, value, entity: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(s.value for s in enum_cls)
        raise ValidationError(f"Unknown {entity} status {value!r}; expected one of: {allowed}",
                              details={"status": value}) from None


def _check_version(journey: PracticeJourney, expected_version) -> None:
    if expected_version is not None and journey.version != int(expected_version):
        raise ConcurrencyConflictError(
            "Journey has changed since it was read",
            details={"journey_id": journey.id, "expected_version": expected_version,
                     "current_version": journey.version},
            retryable=False,
        )


def ensure_steps_mutable(journey: PracticeJourney) -> None:
    """Step-level writes need a live journey."""
    if journey.status == JourneyStatus.PAUSED.value:
        raise JourneyPausedError(journey.id)
    if journey.status in (JourneyStatus.COMPLETED.value, JourneyStatus.CANCELLED.value):
        raise JourneyTerminalError(journey.id, journey.status)


def _load_journey(repo, tenant_id, journey_id) -> PracticeJourney:
    journey = repo.get_journey(tenant_id, journey_id)
    if journey is None:
        raise NotFoundError(resource="PracticeJourney", resource_id=journey_id)
    return journey


def _load_step(repo, tenant_id, step_id) -> JourneyStepInstance:
    step = repo.get_step(tenant_id, step_id)
    if step is None:
        raise NotFoundError(resource="JourneyStepInstance", resource_id=step_id)
    return step


def _locate(repo, tenant_id, model, pk) -> str:
    journey_id = repo.journey_id_of(tenant_id, model, pk)
    if journey_id is None:
        raise NotFoundError(resource=model.__name__, resource_id=pk)
    return journey_id


def _definitions_by_id(repo, template_id) -> dict:
    return {d.id: d for d in repo.list_step_definitions(template_id)}


def _journey_summary(journey: PracticeJourney) -> dict:
    return {
        "id": journey.id,
        "status": journey.status,
        "progress_percentage": journey.progress_percentage,
        "version": journey.version,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Journey Instantiator
# ═════════════════════════════════════════════════════════════════════════════


def create_journey(
    tenant_id: int,
    template_id: str,
    assigned_to: str | None = None,
    target_completion_date=None,
    created_by: str | None = None,
    *,
    repo: JourneyRepository | None = None,
) -> dict:
    """Instantiate a journey and all of its step instances atomically.

    Args:
        tenant_id:              Practice that owns the journey.
        template_id:            Active JourneyTemplate to instantiate.
        assigned_to:            Owner of the journey; inherited by every step.
        target_completion_date: Optional ISO date / date.
        created_by:             Actor id for the audit trail.

    Returns:
        Serialized PracticeJourney with its ordered steps.

    Raises:
        NotFoundError:       template missing or inactive.
        ValidationError:     malformed target_completion_date.
        CreationFailedError: step creation failed; nothing was persisted.
    """
    repo = repo or get_journey_repository()
    target = _parse_date(target_completion_date, "target_completion_date")

    template = repo.get_template(template_id)
    if template is None or not template.is_active:
        raise NotFoundError(resource="JourneyTemplate", resource_id=template_id)
    definitions = repo.list_step_definitions(template.id)

    def _create():
        now = _utcnow()
        journey = PracticeJourney(
            tenant_id=tenant_id,
            template_id=template.id,
            status=JourneyStatus.NOT_STARTED.value,
            progress_percentage=0.0,
            target_completion_date=target,
            assigned_to=assigned_to,
            created_by=created_by,
            version=1,
            created_at=now,
            updated_at=now,
        )
        repo.add(journey)
        repo.flush()

        steps = []
        try:
            for definition in definitions:
                step = JourneyStepInstance(
                    tenant_id=tenant_id,
                    journey_id=journey.id,
                    step_definition_id=definition.id,
                    step_number=definition.step_number,
                    status=StepStatus.NOT_STARTED.value,
                    completion_percentage=0,
                    assigned_to=assigned_to,
                    created_at=now,
                    updated_at=now,
                )
                repo.add(step)
                steps.append(step)
            repo.flush()
        except JourneyError as exc:
            raise CreationFailedError(
                "Journey steps could not be created",
                details={"template_id": template.id, "reason": str(exc)},
            ) from exc
        return journey, steps

    try:
        journey, steps = run_journey_write(repo, None, "create_journey", _create)
    except CreationFailedError:
        logger.error("Journey creation rolled back", extra=_log_extra(tenant_id))
        raise

    logger.info(
        "Journey created from template %s with %d steps", template.id, len(steps),
        extra=_log_extra(tenant_id, journey.id),
    )
    result = journey.to_dict()
    result["steps"] = [s.to_dict() for s in steps]
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Journey reads
# ═════════════════════════════════════════════════════════════════════════════


def get_journey(tenant_id: int, journey_id: str, *, repo: JourneyRepository | None = None) -> dict:
    """Journey with template, ordered steps (with definitions and evidence) and milestones."""
    repo = repo or get_journey_repository()
    journey = _load_journey(repo, tenant_id, journey_id)
    template = repo.get_template(journey.template_id)
    definitions = _definitions_by_id(repo, journey.template_id)
    steps = repo.list_steps(tenant_id, journey.id)
    links_by_step = _links_by_step(repo, tenant_id, steps)

    result = journey.to_dict()
    result["template"] = template.to_dict() if template else None
    result["steps"] = [
        s.to_dict(definition=definitions.get(s.step_definition_id),
                  evidence=links_by_step.get(s.id, []))
        for s in steps
    ]
    result["milestones"] = [m.to_dict() for m in repo.list_milestones(tenant_id, journey.id)]
    return result


def _links_by_step(repo, tenant_id, steps) -> dict:
    grouped: dict[str, list] = {}
    for link in repo.list_evidence(tenant_id, [s.id for s in steps]):
        grouped.setdefault(link.journey_step_id, []).append(link)
    return grouped


def _is_journey_overdue(journey, today: date) -> bool:
    return (
        journey.target_completion_date is not None
        and journey.target_completion_date < today
        and journey.status not in (JourneyStatus.COMPLETED.value, JourneyStatus.CANCELLED.value)
    )


def list_journeys(tenant_id: int, filters: dict | None = None, *,
                  repo: JourneyRepository | None = None) -> dict:
    """Filtered, paginated journeys of one tenant, newest first.

    Filters: status (list), template_id, assigned_to, overdue_only,
    search_term (template name / description), page, page_size.
    """
    repo = repo or get_journey_repository()
    filters = dict(filters or {})

    statuses = filters.get("status") or []
    if isinstance(statuses, str):
        statuses = [statuses]
    for status in statuses:
        _parse_status(JourneyStatus, status, "journey")

    try:
        page = max(int(filters.get("page") or 1), 1)
        page_size = min(max(int(filters.get("page_size") or DEFAULT_PAGE_SIZE), 1), MAX_PAGE_SIZE)
    except (TypeError, ValueError):
        raise ValidationError("page and page_size must be integers") from None

    today = _today()
    search = (filters.get("search_term") or "").strip().lower()
    templates = {}

    def _template(template_id):
        if template_id not in templates:
            templates[template_id] = repo.get_template(template_id)
        return templates[template_id]

    matched = []
    for journey in repo.list_journeys(tenant_id):
        if statuses and journey.status not in statuses:
            continue
        if filters.get("template_id") and journey.template_id != filters["template_id"]:
            continue
        if filters.get("assigned_to") and journey.assigned_to != filters["assigned_to"]:
            continue
        if filters.get("overdue_only") and not _is_journey_overdue(journey, today):
            continue
        if search:
            template = _template(journey.template_id)
            haystack = f"{template.name} {template.description or ''}".lower() if template else ""
            if search not in haystack:
                continue
        matched.append(journey)

    start = (page - 1) * page_size
    page_items = matched[start:start + page_size]
    journeys = []
    for journey in page_items:
        item = journey.to_dict()
        template = _template(journey.template_id)
        item["template_name"] = template.name if template else None
        journeys.append(item)

    applied = {k: v for k, v in filters.items() if v not in (None, "", [], False)}
    return {
        "journeys": journeys,
        "total_count": len(matched),
        "page": page,
        "page_size": page_size,
        "filters_applied": applied,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Journey State Machine (explicit transitions)
# ═════════════════════════════════════════════════════════════════════════════


def update_journey(tenant_id: int, journey_id: str, data: dict, *,
                   expected_version: int | None = None,
                   repo: JourneyRepository | None = None) -> dict:
    """Pause / resume / cancel a journey or change its owner or target date.

    progress_percentage is never accepted; completed / not_started can't be
    requested because they are derived from the steps.
    """
    repo = repo or get_journey_repository()
    data = dict(data or {})
    _reject_unknown(data, JOURNEY_UPDATE_FIELDS, "journey")

    requested = None
    if data.get("status") is not None:
        requested = _parse_status(JourneyStatus, data["status"], "journey")
    target = _parse_date(data["target_completion_date"], "target_completion_date") \
        if "target_completion_date" in data else None

    def _update():
        journey = _load_journey(repo, tenant_id, journey_id)
        _check_version(journey, expected_version)
        current = JourneyStatus(journey.status)
        now = _utcnow()
        changed = False

        if journey.status in (JourneyStatus.COMPLETED.value, JourneyStatus.CANCELLED.value):
            if requested not in (None, current) or set(data) - {"status"}:
                raise JourneyTerminalError(journey.id, journey.status)

        resume = False
        if requested is not None and requested != current:
            if not validate_journey_transition(current, requested):
                raise InvalidTransitionError("journey", current.value, requested.value)
            resume = current == JourneyStatus.PAUSED and requested == JourneyStatus.IN_PROGRESS
            if not resume:
                journey.status = requested.value
            changed = True

        if "assigned_to" in data and data["assigned_to"] != journey.assigned_to:
            journey.assigned_to = data["assigned_to"]
            changed = True
        if "target_completion_date" in data and target != journey.target_completion_date:
            journey.target_completion_date = target
            changed = True

        if not changed:
            return journey.to_dict()

        journey.updated_at = now
        if resume:
            steps = repo.list_steps(tenant_id, journey.id)
            recorded = journey.progress_percentage
            journey.status = JourneyStatus.IN_PROGRESS.value
            journey_progress.recompute(
                repo, journey, steps, _definitions_by_id(repo, journey.template_id),
                now=now, resume=True,
            )
            if journey.progress_percentage != recorded:
                logger.warning("Progress drifted while paused: %.1f → %.1f",
                               recorded, journey.progress_percentage,
                               extra=_log_extra(tenant_id, journey.id))

        if requested is not None and requested != current:
            logger.info("Journey %s → %s", current.value, journey.status,
                        extra=_log_extra(tenant_id, journey.id))
        return journey.to_dict()

    run_journey_write(repo, journey_id, "update_journey", _update)
    # Re-read: the version column is bumped on commit
    return _load_journey(repo, tenant_id, journey_id).to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Step State Machine
# ═════════════════════════════════════════════════════════════════════════════


def _incomplete_prerequisites(definition, steps) -> list[str]:
    prerequisites = list(definition.prerequisites or []) if definition is not None else []
    if not prerequisites:
        return []
    by_definition = {s.step_definition_id: s for s in steps}
    missing = []
    for prerequisite_id in prerequisites:
        instance = by_definition.get(prerequisite_id)
        if instance is None:
            logger.warning("Prerequisite %s has no step instance; ignoring", prerequisite_id)
            continue
        if instance.status != StepStatus.COMPLETED.value:
            missing.append(prerequisite_id)
    return missing


def _distinct_evidence(repo, tenant_id, step_id) -> int:
    return journey_snapshot.distinct_evidence_count(repo.list_evidence(tenant_id, [step_id]))


def update_step(tenant_id: int, step_id: str, data: dict, actor: str | None = None, *,
                expected_version: int | None = None,
                repo: JourneyRepository | None = None) -> dict:
    """Apply a status / progress / metadata change to one step instance.

    Transitions:
        not_started → in_progress | completed | skipped
        in_progress → completed | blocked | skipped
        blocked     → in_progress
        completed, skipped → terminal

    Requesting the current status again is a no-op. A completion_percentage
    above 0 on a not_started step starts it implicitly.

    Raises:
        ValidationError / InvalidRangeError: malformed input.
        InvalidTransitionError:   status pair not allowed.
        PrerequisiteNotMetError:  entering in_progress/completed too early.
        InsufficientEvidenceError: completing with too few distinct evidence items.
        JourneyPausedError / JourneyTerminalError: journey not accepting changes.
    """
    repo = repo or get_journey_repository()
    data = dict(data or {})
    _reject_unknown(data, STEP_UPDATE_FIELDS, "step")

    requested = None
    if data.get("status") is not None:
        requested = _parse_status(StepStatus, data["status"], "step")
    percentage = None
    if data.get("completion_percentage") is not None:
        percentage = _parse_percentage(data["completion_percentage"])
    due_date = _parse_date(data.get("due_date"), "due_date") if "due_date" in data else None

    journey_id = _locate(repo, tenant_id, JourneyStepInstance, step_id)

    def _update():
        step = _load_step(repo, tenant_id, step_id)
        journey = _load_journey(repo, tenant_id, step.journey_id)
        _check_version(journey, expected_version)
        ensure_steps_mutable(journey)

        steps = repo.list_steps(tenant_id, journey.id)
        definitions = _definitions_by_id(repo, journey.template_id)
        definition = definitions.get(step.step_definition_id)

        current = StepStatus(step.status)
        target = current
        if requested is not None and requested != current:
            if not validate_step_transition(current, requested):
                raise InvalidTransitionError("step", current.value, requested.value)
            target = requested

        if percentage is not None:
            if current in (StepStatus.COMPLETED, StepStatus.SKIPPED) and percentage != step.completion_percentage:
                raise ValidationError(
                    f"completion_percentage of a {current.value} step cannot change",
                    details={"status": current.value},
                )
            if target == StepStatus.NOT_STARTED and percentage > 0:
                target = StepStatus.IN_PROGRESS

        if target != current:
            if target in PREREQUISITE_GATED_STATUSES:
                missing = _incomplete_prerequisites(definition, steps)
                if missing:
                    logger.warning("Step %s blocked by prerequisites %s", step.id, missing,
                                   extra=_log_extra(tenant_id, journey.id, step.id))
                    raise PrerequisiteNotMetError(step.id, missing)
            if target == StepStatus.COMPLETED:
                required = (definition.min_evidence_count or 0) if definition is not None else 0
                linked = _distinct_evidence(repo, tenant_id, step.id)
                if linked < required:
                    logger.warning("Step %s has %d/%d evidence items", step.id, linked, required,
                                   extra=_log_extra(tenant_id, journey.id, step.id))
                    raise InsufficientEvidenceError(step.id, linked, required)

        now = _utcnow()
        changed = False

        if target != current:
            step.status = target.value
            if target in (StepStatus.IN_PROGRESS, StepStatus.COMPLETED) and step.started_at is None:
                step.started_at = now
            if target == StepStatus.COMPLETED:
                step.completion_percentage = 100
                step.completed_at = now
            changed = True

        if (percentage is not None and target not in (StepStatus.COMPLETED, StepStatus.SKIPPED)
                and percentage != step.completion_percentage):
            step.completion_percentage = percentage
            changed = True

        for field in ("notes", "assigned_to"):
            if field in data and data[field] != getattr(step, field):
                setattr(step, field, data[field])
                changed = True
        if "due_date" in data and due_date != step.due_date:
            step.due_date = due_date
            changed = True

        result = step.to_dict(definition=definition)
        if not changed:
            result["journey"] = _journey_summary(journey)
            result["milestones_achieved"] = []
            return result

        step.updated_at = now
        journey.updated_at = now
        milestones = journey_progress.recompute(repo, journey, steps, definitions, now=now)

        if target == StepStatus.COMPLETED and _setting("JOURNEY_SNAPSHOT_ON_COMPLETION", True):
            journey_snapshot.capture(repo, journey, steps, now.date())
        repo.flush()

        if target != current:
            logger.info("Step #%s %s → %s by %s", step.step_number, current.value, target.value,
                        actor or "unknown", extra=_log_extra(tenant_id, journey.id, step.id))

        result = step.to_dict(definition=definition)
        result["journey"] = _journey_summary(journey)
        result["milestones_achieved"] = [m.to_dict() for m in milestones]
        return result

    result = run_journey_write(repo, journey_id, "update_step", _update)
    # Version is bumped on commit
    journey = repo.get_journey(tenant_id, journey_id)
    if journey is not None:
        result["journey"]["version"] = journey.version
    return result


def list_steps(tenant_id: int, journey_id: str, filters: dict | None = None, *,
               repo: JourneyRepository | None = None) -> dict:
    """Steps of a journey with definitions and evidence, optionally filtered.

    Filters: status (list), category (list), assigned_to, overdue_only,
    missing_evidence (fewer distinct items than min_evidence_count).
    """
    repo = repo or get_journey_repository()
    filters = dict(filters or {})
    journey = _load_journey(repo, tenant_id, journey_id)
    definitions = _definitions_by_id(repo, journey.template_id)
    steps = repo.list_steps(tenant_id, journey.id)
    links_by_step = _links_by_step(repo, tenant_id, steps)
    today = _today()

    statuses = filters.get("status") or []
    if isinstance(statuses, str):
        statuses = [statuses]
    categories = filters.get("category") or []
    if isinstance(categories, str):
        categories = [categories]

    result = []
    for step in steps:
        definition = definitions.get(step.step_definition_id)
        links = links_by_step.get(step.id, [])
        if statuses and step.status not in statuses:
            continue
        if categories and (definition is None or definition.category not in categories):
            continue
        if filters.get("assigned_to") and step.assigned_to != filters["assigned_to"]:
            continue
        if filters.get("overdue_only") and not (
            step.due_date is not None and step.due_date < today
            and step.status != StepStatus.COMPLETED.value
        ):
            continue
        if filters.get("missing_evidence"):
            required = (definition.min_evidence_count or 0) if definition else 0
            if journey_snapshot.distinct_evidence_count(links) >= required:
                continue
        result.append(step.to_dict(definition=definition, evidence=links))

    applied = {k: v for k, v in filters.items() if v not in (None, "", [], False)}
    return {"steps": result, "total_count": len(result), "filters_applied": applied}


def review_step(tenant_id: int, step_id: str, review_status: str, reviewed_by: str | None = None,
                review_notes: str | None = None, *, repo: JourneyRepository | None = None) -> dict:
    """Record a reviewer's verdict on a completed step. Never reopens the step."""
    repo = repo or get_journey_repository()
    verdict = _parse_status(ReviewStatus, review_status, "review")
    journey_id = _locate(repo, tenant_id, JourneyStepInstance, step_id)

    def _review():
        step = _load_step(repo, tenant_id, step_id)
        journey = _load_journey(repo, tenant_id, step.journey_id)
        if journey.status == JourneyStatus.PAUSED.value:
            raise JourneyPausedError(journey.id)
        if journey.status == JourneyStatus.CANCELLED.value:
            raise JourneyTerminalError(journey.id, journey.status)
        if step.status != StepStatus.COMPLETED.value:
            raise ValidationError("Only completed steps can be reviewed",
                                  details={"status": step.status})

        now = _utcnow()
        step.review_status = verdict.value
        step.reviewed_by = reviewed_by
        step.reviewed_at = now
        step.review_notes = review_notes
        step.updated_at = now
        journey.updated_at = now
        logger.info("Step #%s reviewed: %s", step.step_number, verdict.value,
                    extra=_log_extra(tenant_id, journey.id, step.id))
        return step.to_dict()

    return run_journey_write(repo, journey_id, "review_step", _review)


def celebrate_milestone(tenant_id: int, milestone_id: str, *,
                        repo: JourneyRepository | None = None) -> dict:
    repo = repo or get_journey_repository()
    journey_id = _locate(repo, tenant_id, JourneyMilestone, milestone_id)

    def _celebrate():
        milestone = repo.get_milestone(tenant_id, milestone_id)
        if milestone is None:
            raise NotFoundError(resource="JourneyMilestone", resource_id=milestone_id)
        milestone.is_celebrated = True
        return milestone.to_dict()

    return run_journey_write(repo, journey_id, "celebrate_milestone", _celebrate)
