"""
Compliance Journey Platform
Template Catalog — read-only access to frameworks and journey templates.

Templates are global (shared by every practice) and immutable once a live
journey references them. The catalog only reads; the single write path is
seed_default_templates(), used by the CLI and by the in-memory repository
at startup.
"""

from __future__ import annotations

import logging

from app.core.exceptions import NotFoundError
from app.models.journey import ComplianceFramework, JourneyStepDefinition, JourneyTemplate
from app.services.journey_repository import JourneyRepository, get_journey_repository

logger = logging.getLogger(__name__)


def list_frameworks(*, repo: JourneyRepository | None = None) -> list[dict]:
    repo = repo or get_journey_repository()
    return [f.to_dict() for f in repo.list_frameworks()]


def list_templates(framework_id: str | None = None, *, repo: JourneyRepository | None = None) -> list[dict]:
    """Active templates ordered by name, each with its ordered steps."""
    repo = repo or get_journey_repository()
    result = []
    for template in repo.list_templates(framework_id):
        result.append(template.to_dict(
            step_definitions=repo.list_step_definitions(template.id),
            framework=repo.get_framework(template.framework_id),
        ))
    return result


def get_template(template_id: str, *, repo: JourneyRepository | None = None) -> dict:
    """Template with ordered step definitions.

    Raises:
        NotFoundError: template does not exist.
    """
    repo = repo or get_journey_repository()
    template = repo.get_template(template_id)
    if template is None:
        raise NotFoundError(resource="JourneyTemplate", resource_id=template_id)
    return template.to_dict(
        step_definitions=repo.list_step_definitions(template.id),
        framework=repo.get_framework(template.framework_id),
    )


# ── Seed data ────────────────────────────────────────────────────────────────

CQC_FRAMEWORK_ID = "cqc-fundamental-standards"
CQC_TEMPLATE_ID = "cqc-registration-compliance"


def seed_default_templates(*, repo: JourneyRepository | None = None) -> int:
    """
    Insert the default CQC framework and its five-step journey template.
    Safe to run multiple times; existing rows (matched by id) are skipped.

    Returns the number of rows created. Caller commits.
    """
    repo = repo or get_journey_repository()
    data = _get_default_catalog()
    created = 0

    fw = data["framework"]
    if repo.get_framework(fw["id"]) is None:
        repo.add(ComplianceFramework(**fw))
        # Models declare no relationships, so parents are flushed before children
        repo.flush()
        created += 1

    tpl = data["template"]
    if repo.get_template(tpl["id"]) is None:
        repo.add(JourneyTemplate(**tpl))
        repo.flush()
        created += 1
        for step in data["steps"]:
            repo.add(JourneyStepDefinition(template_id=tpl["id"], **step))
            created += 1

    if created:
        repo.flush()
        logger.info("Seeded %d journey catalog rows", created)
    return created


def _step_id(n: int) -> str:
    return f"{CQC_TEMPLATE_ID}-step-{n}"


def _get_default_catalog() -> dict:
    return {
        "framework": {
            "id": CQC_FRAMEWORK_ID,
            "name": "CQC Fundamental Standards",
            "description": "Care Quality Commission Fundamental Standards for Healthcare Providers",
            "version": "2024",
            "is_active": True,
        },
        "template": {
            "id": CQC_TEMPLATE_ID,
            "framework_id": CQC_FRAMEWORK_ID,
            "name": "CQC Registration & Compliance Journey",
            "description": (
                "Complete journey from CQC registration preparation through "
                "ongoing compliance maintenance"
            ),
            "estimated_duration_days": 180,
            "difficulty_level": "intermediate",
            "is_active": True,
        },
        "steps": [
            {
                "id": _step_id(1),
                "step_number": 1,
                "title": "Understand CQC Requirements",
                "description": "Review and understand all CQC fundamental standards and regulations",
                "category": "preparation",
                "estimated_hours": 8,
                "is_mandatory": True,
                "prerequisites": [],
                "evidence_types_required": ["document"],
                "min_evidence_count": 1,
                "guidance_text": (
                    "Start by reviewing the CQC guidance documents and understanding "
                    "what evidence you need to collect."
                ),
                "resources": {},
            },
            {
                "id": _step_id(2),
                "step_number": 2,
                "title": "Develop Policies & Procedures",
                "description": "Create comprehensive policies covering all CQC fundamental standards",
                "category": "policy",
                "estimated_hours": 40,
                "is_mandatory": True,
                "prerequisites": [_step_id(1)],
                "evidence_types_required": ["policy", "procedure"],
                "min_evidence_count": 5,
                "guidance_text": (
                    "Develop policies for person-centred care, dignity & respect, "
                    "consent, safe care, and safeguarding."
                ),
                "resources": {},
            },
            {
                "id": _step_id(3),
                "step_number": 3,
                "title": "Staff Training Program",
                "description": "Implement comprehensive staff training on CQC requirements and policies",
                "category": "training",
                "estimated_hours": 24,
                "is_mandatory": True,
                "prerequisites": [_step_id(2)],
                "evidence_types_required": ["training_record", "certificate"],
                "min_evidence_count": 3,
                "guidance_text": (
                    "Ensure all staff are trained on CQC requirements, policies, "
                    "and their roles in compliance."
                ),
                "resources": {},
            },
            {
                "id": _step_id(4),
                "step_number": 4,
                "title": "Risk Assessment & Management",
                "description": "Conduct comprehensive risk assessments and implement management plans",
                "category": "assessment",
                "estimated_hours": 16,
                "is_mandatory": True,
                "prerequisites": [_step_id(2)],
                "evidence_types_required": ["document", "audit_report"],
                "min_evidence_count": 2,
                "guidance_text": (
                    "Identify and assess all risks to service users and implement "
                    "appropriate management strategies."
                ),
                "resources": {},
            },
            {
                "id": _step_id(5),
                "step_number": 5,
                "title": "Quality Assurance Systems",
                "description": "Establish systems for monitoring and improving quality of care",
                "category": "system",
                "estimated_hours": 20,
                "is_mandatory": True,
                "prerequisites": [_step_id(3), _step_id(4)],
                "evidence_types_required": ["procedure", "audit_report"],
                "min_evidence_count": 2,
                "guidance_text": "Set up regular audits, feedback systems, and quality improvement processes.",
                "resources": {},
            },
        ],
    }
