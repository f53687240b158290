"""Compliance Journey blueprint.

REST API over the journey engine.

Endpoint groups:
  Catalog       GET  /api/v1/journey-frameworks
                GET  /api/v1/journey-templates[?framework_id=]
                GET  /api/v1/journey-templates/<id>
  Journeys      GET/POST /api/v1/journeys
                GET  /api/v1/journeys/analytics
                GET/PUT  /api/v1/journeys/<id>
                GET  /api/v1/journeys/<id>/steps
                GET  /api/v1/journeys/<id>/progress?days=30
                POST /api/v1/journeys/<id>/snapshots
  Steps         PUT  /api/v1/journey-steps/<id>
                POST /api/v1/journey-steps/<id>/review
                GET/POST /api/v1/journey-steps/<id>/evidence
  Evidence      DELETE /api/v1/journey-evidence/<id>
  Milestones    POST /api/v1/journey-milestones/<id>/celebrate

The tenant comes from the tenant-context middleware (X-Tenant-ID) and the
actor from X-User-ID. The service layer owns all business rules and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, g, jsonify, request
from werkzeug.exceptions import HTTPException

import app.services.evidence_link_service as evidence_svc
import app.services.journey_service as journey_svc
from app.core.exceptions import JourneyError, NotFoundError, ValidationError
from app.services import journey_analytics, journey_snapshot, template_catalog
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

journey_bp = Blueprint("journey", __name__, url_prefix="/api/v1")

_TRUTHY = {"1", "true", "yes", "on"}


# ── Request helpers ───────────────────────────────────────────────────────────


def _tenant_required() -> tuple[int | None, tuple | None]:
    tid = getattr(g, "tenant_id", None)
    if not tid:
        return None, api_error(E.VALIDATION_REQUIRED, "X-Tenant-ID header is required")
    return tid, None


def _flag(name: str) -> bool:
    return (request.args.get(name) or "").strip().lower() in _TRUTHY


def _list_arg(name: str) -> list[str]:
    values = []
    for raw in request.args.getlist(name):
        values.extend(v.strip() for v in raw.split(",") if v.strip())
    return values


def _expected_version(data: dict):
    raw = data.pop("expected_version", None)
    if raw is None:
        raw = request.headers.get("If-Match")
    if raw in (None, ""):
        return None
    try:
        return int(str(raw).strip('"'))
    except ValueError:
        raise ValidationError("expected_version must be an integer",
                              details={"expected_version": raw}) from None


# ── Error handlers ────────────────────────────────────────────────────────────


@journey_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, f"{error.resource} not found")


@journey_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(error.code, str(error), status=422, details=error.details)


@journey_bp.errorhandler(JourneyError)
def _handle_journey_error(error: JourneyError):
    if error.code in (E.CREATION_FAILED, E.STORAGE_UNAVAILABLE):
        logger.error("Journey endpoint %s failed: %s", request.endpoint, error)
    return api_error(error.code, str(error), details=error.details)


@journey_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in journey_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════
# Catalog
# ═════════════════════════════════════════════════════════════════════════


@journey_bp.route("/journey-frameworks", methods=["GET"])
def list_frameworks():
    return jsonify({"frameworks": template_catalog.list_frameworks()}), 200


@journey_bp.route("/journey-templates", methods=["GET"])
def list_templates():
    templates = template_catalog.list_templates(request.args.get("framework_id") or None)
    return jsonify({"templates": templates, "total_count": len(templates)}), 200


@journey_bp.route("/journey-templates/<template_id>", methods=["GET"])
def get_template(template_id: str):
    return jsonify(template_catalog.get_template(template_id)), 200


# ═════════════════════════════════════════════════════════════════════════
# Journeys
# ═════════════════════════════════════════════════════════════════════════


@journey_bp.route("/journeys", methods=["GET"])
def list_journeys():
    """List the tenant's journeys.

    Query params: status (repeatable or comma-separated), template_id,
    assigned_to, overdue_only, search, page, page_size.
    """
    tenant_id, err = _tenant_required()
    if err:
        return err
    filters = {
        "status": _list_arg("status"),
        "template_id": request.args.get("template_id"),
        "assigned_to": request.args.get("assigned_to"),
        "overdue_only": _flag("overdue_only"),
        "search_term": request.args.get("search"),
        "page": request.args.get("page"),
        "page_size": request.args.get("page_size"),
    }
    return jsonify(journey_svc.list_journeys(tenant_id, filters)), 200


@journey_bp.route("/journeys", methods=["POST"])
def create_journey():
    """Instantiate a journey from a template.

    Body: { template_id, assigned_to?, target_completion_date? }
    Returns: journey with its steps (201).
    """
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    template_id = (data.get("template_id") or "").strip()
    if not template_id:
        return api_error(E.VALIDATION_REQUIRED, "template_id is required")

    journey = journey_svc.create_journey(
        tenant_id,
        template_id,
        assigned_to=data.get("assigned_to"),
        target_completion_date=data.get("target_completion_date"),
        created_by=getattr(g, "actor", None),
    )
    return jsonify(journey), 201


@journey_bp.route("/journeys/analytics", methods=["GET"])
def get_analytics():
    tenant_id, err = _tenant_required()
    if err:
        return err
    return jsonify(journey_analytics.get_analytics(tenant_id)), 200


@journey_bp.route("/journeys/<journey_id>", methods=["GET"])
def get_journey(journey_id: str):
    tenant_id, err = _tenant_required()
    if err:
        return err
    return jsonify(journey_svc.get_journey(tenant_id, journey_id)), 200


@journey_bp.route("/journeys/<journey_id>", methods=["PUT"])
def update_journey(journey_id: str):
    """Pause, resume or cancel a journey; change owner or target date.

    Body: { status?, assigned_to?, target_completion_date?, expected_version? }
    """
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    expected = _expected_version(data)
    journey = journey_svc.update_journey(tenant_id, journey_id, data, expected_version=expected)
    return jsonify(journey), 200


@journey_bp.route("/journeys/<journey_id>/steps", methods=["GET"])
def list_steps(journey_id: str):
    tenant_id, err = _tenant_required()
    if err:
        return err
    filters = {
        "status": _list_arg("status"),
        "category": _list_arg("category"),
        "assigned_to": request.args.get("assigned_to"),
        "overdue_only": _flag("overdue_only"),
        "missing_evidence": _flag("missing_evidence"),
    }
    return jsonify(journey_svc.list_steps(tenant_id, journey_id, filters)), 200


@journey_bp.route("/journeys/<journey_id>/progress", methods=["GET"])
def get_progress(journey_id: str):
    tenant_id, err = _tenant_required()
    if err:
        return err
    raw = (request.args.get("days") or "30").strip()
    if not raw.isdigit():
        return api_error(E.VALIDATION_INVALID, "days must be a non-negative integer", status=400)
    days = int(raw)
    return jsonify(journey_snapshot.get_progress_series(tenant_id, journey_id, days)), 200


@journey_bp.route("/journeys/<journey_id>/snapshots", methods=["POST"])
def record_snapshot(journey_id: str):
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    snapshot = journey_snapshot.record_snapshot(tenant_id, journey_id, data.get("snapshot_date"))
    return jsonify(snapshot), 201


@journey_bp.route("/journey-milestones/<milestone_id>/celebrate", methods=["POST"])
def celebrate_milestone(milestone_id: str):
    tenant_id, err = _tenant_required()
    if err:
        return err
    return jsonify(journey_svc.celebrate_milestone(tenant_id, milestone_id)), 200


# ═════════════════════════════════════════════════════════════════════════
# Steps & evidence
# ═════════════════════════════════════════════════════════════════════════


@journey_bp.route("/journey-steps/<step_id>", methods=["PUT"])
def update_step(step_id: str):
    """Update a step.

    Body: { status?, completion_percentage?, notes?, due_date?, assigned_to?,
            expected_version? }
    """
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    expected = _expected_version(data)
    step = journey_svc.update_step(
        tenant_id, step_id, data, actor=getattr(g, "actor", None), expected_version=expected,
    )
    return jsonify(step), 200


@journey_bp.route("/journey-steps/<step_id>/review", methods=["POST"])
def review_step(step_id: str):
    """Body: { review_status: pending|approved|needs_revision, review_notes? }"""
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    if not data.get("review_status"):
        return api_error(E.VALIDATION_REQUIRED, "review_status is required")
    step = journey_svc.review_step(
        tenant_id, step_id, data["review_status"],
        reviewed_by=getattr(g, "actor", None), review_notes=data.get("review_notes"),
    )
    return jsonify(step), 200


@journey_bp.route("/journey-steps/<step_id>/evidence", methods=["GET"])
def list_step_evidence(step_id: str):
    tenant_id, err = _tenant_required()
    if err:
        return err
    links = evidence_svc.list_step_evidence(tenant_id, step_id)
    return jsonify({"evidence": links, "total_count": len(links)}), 200


@journey_bp.route("/journey-steps/<step_id>/evidence", methods=["POST"])
def link_evidence(step_id: str):
    """Body: { evidence_item_id, relevance_score?, is_primary?, notes? }

    An Idempotency-Key header (or idempotency_key field) makes retries safe.
    """
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    if not data.get("evidence_item_id"):
        return api_error(E.VALIDATION_REQUIRED, "evidence_item_id is required")
    link = evidence_svc.link_evidence(
        tenant_id,
        step_id,
        data["evidence_item_id"],
        relevance_score=data.get("relevance_score"),
        is_primary=bool(data.get("is_primary", False)),
        notes=data.get("notes"),
        linked_by=getattr(g, "actor", None),
        idempotency_key=request.headers.get("Idempotency-Key") or data.get("idempotency_key"),
    )
    return jsonify(link), 201


@journey_bp.route("/journey-evidence/<link_id>", methods=["DELETE"])
def unlink_evidence(link_id: str):
    tenant_id, err = _tenant_required()
    if err:
        return err
    return jsonify(evidence_svc.unlink_evidence(tenant_id, link_id)), 200
