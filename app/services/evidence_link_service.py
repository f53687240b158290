"""
Compliance Journey Platform
Evidence link registry — ties step instances to evidence artifacts.

The artifacts themselves live in the external evidence catalog; only their
ids are stored here. Duplicate (step, artifact) links are tolerated on write
and collapsed on read. Step gating counts distinct artifacts per step; the
journey-wide totals count distinct (step, artifact) pairs.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from app.core.exceptions import InvalidRangeError, NotFoundError, ValidationError
from app.models.journey import JourneyStepEvidence, JourneyStepInstance, StepStatus
from app.services.helpers.unit_of_work import run_journey_write
from app.services.journey_repository import JourneyRepository, get_journey_repository
from app.services.journey_service import ensure_steps_mutable
from app.services.journey_snapshot import distinct_evidence_count
from app.utils.errors import E, warning

logger = logging.getLogger(__name__)

DEFAULT_RELEVANCE = 5
RELEVANCE_RANGE = (1, 10)


def _parse_relevance(value) -> int:
    if value is None:
        return DEFAULT_RELEVANCE
    if isinstance(value, bool) or not isinstance(value, (int, float)) or int(value) != value:
        raise ValidationError("relevance_score must be an integer",
                              details={"relevance_score": value})
    low, high = RELEVANCE_RANGE
    if not low <= value <= high:
        raise InvalidRangeError("relevance_score", value, low, high)
    return int(value)


def _step_and_journey(repo, tenant_id, step_id):
    step = repo.get_step(tenant_id, step_id)
    if step is None:
        raise NotFoundError(resource="JourneyStepInstance", resource_id=step_id)
    journey = repo.get_journey(tenant_id, step.journey_id)
    if journey is None:
        raise NotFoundError(resource="PracticeJourney", resource_id=step.journey_id)
    return step, journey


def link_evidence(
    tenant_id: int,
    step_id: str,
    evidence_item_id: str,
    relevance_score: int | None = None,
    is_primary: bool = False,
    notes: str | None = None,
    linked_by: str | None = None,
    idempotency_key: str | None = None,
    *,
    repo: JourneyRepository | None = None,
) -> dict:
    """Attach an evidence artifact to a step.

    A retried call carrying the same idempotency_key returns the link created
    by the first call instead of adding another.

    Raises:
        NotFoundError:        step missing in this tenant.
        ValidationError:      evidence_item_id empty or relevance not an integer.
        InvalidRangeError:    relevance outside 1..10.
        JourneyPausedError / JourneyTerminalError: journey not accepting changes.
    """
    repo = repo or get_journey_repository()
    if not evidence_item_id or not str(evidence_item_id).strip():
        raise ValidationError("evidence_item_id is required", details={"evidence_item_id": "required"})
    evidence_item_id = str(evidence_item_id).strip()
    score = _parse_relevance(relevance_score)

    journey_id = repo.journey_id_of(tenant_id, JourneyStepInstance, step_id)
    if journey_id is None:
        raise NotFoundError(resource="JourneyStepInstance", resource_id=step_id)

    def _link():
        if idempotency_key:
            existing = repo.find_evidence_by_key(tenant_id, idempotency_key)
            if existing is not None:
                if existing.journey_step_id != step_id or existing.evidence_item_id != evidence_item_id:
                    raise ValidationError(
                        "idempotency_key was already used for a different evidence link",
                        details={
                            "idempotency_key": idempotency_key,
                            "journey_step_id": existing.journey_step_id,
                            "evidence_item_id": existing.evidence_item_id,
                        },
                    )
                logger.info("Idempotent replay of evidence link %s", existing.id,
                            extra={"tenant_id": tenant_id, "step_id": existing.journey_step_id})
                return existing.to_dict()

        step, journey = _step_and_journey(repo, tenant_id, step_id)
        ensure_steps_mutable(journey)

        current_links = repo.list_evidence(tenant_id, [step.id])
        if any(link.evidence_item_id == evidence_item_id for link in current_links):
            logger.warning("Evidence %s is already linked to step %s", evidence_item_id, step.id,
                           extra={"tenant_id": tenant_id, "journey_id": journey.id, "step_id": step.id})

        now = datetime.now(timezone.utc)
        if is_primary:
            for link in current_links:
                if link.is_primary:
                    link.is_primary = False

        link = JourneyStepEvidence(
            tenant_id=tenant_id,
            journey_step_id=step.id,
            evidence_item_id=evidence_item_id,
            relevance_score=score,
            is_primary=bool(is_primary),
            linked_by=linked_by,
            linked_at=now,
            notes=notes,
            idempotency_key=idempotency_key,
        )
        repo.add(link)
        repo.flush()
        journey.updated_at = now

        logger.info("Evidence %s linked (relevance %d)", evidence_item_id, score,
                    extra={"tenant_id": tenant_id, "journey_id": journey.id, "step_id": step.id})
        return link.to_dict()

    return run_journey_write(repo, journey_id, "link_evidence", _link)


def unlink_evidence(tenant_id: int, link_id: str, *, repo: JourneyRepository | None = None) -> dict:
    """Remove an evidence link.

    A completed step stays completed; if it now has fewer distinct artifacts
    than its definition requires, an EVIDENCE_BELOW_MINIMUM warning is
    returned alongside the deletion.
    """
    repo = repo or get_journey_repository()
    journey_id = repo.journey_id_of(tenant_id, JourneyStepEvidence, link_id)
    if journey_id is None:
        raise NotFoundError(resource="JourneyStepEvidence", resource_id=link_id)

    def _unlink():
        link = repo.get_evidence(tenant_id, link_id)
        if link is None:
            raise NotFoundError(resource="JourneyStepEvidence", resource_id=link_id)
        step, journey = _step_and_journey(repo, tenant_id, link.journey_step_id)
        ensure_steps_mutable(journey)

        repo.delete(link)
        repo.flush()
        journey.updated_at = datetime.now(timezone.utc)

        warnings = []
        if step.status == StepStatus.COMPLETED.value:
            definition = next(
                (d for d in repo.list_step_definitions(journey.template_id) if d.id == step.step_definition_id),
                None,
            )
            required = (definition.min_evidence_count or 0) if definition is not None else 0
            remaining = distinct_evidence_count(
                other for other in repo.list_evidence(tenant_id, [step.id]) if other.id != link_id
            )
            if remaining < required:
                warnings.append(warning(
                    E.EVIDENCE_BELOW_MINIMUM,
                    "Completed step now has fewer evidence items than required",
                    step_id=step.id, linked=remaining, required=required,
                ))
                logger.warning("Completed step %s below evidence minimum (%d/%d)",
                               step.id, remaining, required,
                               extra={"tenant_id": tenant_id, "journey_id": journey.id, "step_id": step.id})

        logger.info("Evidence link %s removed", link_id,
                    extra={"tenant_id": tenant_id, "journey_id": journey.id, "step_id": step.id})
        return {"deleted": True, "link_id": link_id, "warnings": warnings}

    return run_journey_write(repo, journey_id, "unlink_evidence", _unlink)


def list_step_evidence(tenant_id: int, step_id: str, *, repo: JourneyRepository | None = None) -> list[dict]:
    """Links of a step, one per artifact: primary first, then by relevance."""
    repo = repo or get_journey_repository()
    if repo.get_step(tenant_id, step_id) is None:
        raise NotFoundError(resource="JourneyStepInstance", resource_id=step_id)

    def _rank(link):
        return (not link.is_primary, -(link.relevance_score or 0))

    best: dict[str, JourneyStepEvidence] = {}
    for link in repo.list_evidence(tenant_id, [step_id]):
        kept = best.get(link.evidence_item_id)
        if kept is None or _rank(link) < _rank(kept):
            best[link.evidence_item_id] = link
    return [link.to_dict() for link in sorted(best.values(), key=_rank)]
