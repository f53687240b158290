"""
Compliance Journey Platform
Compliance Journey domain models.

Models:
    - ComplianceFramework:       regulatory framework (e.g. CQC Fundamental Standards)
    - JourneyTemplate:           reusable blueprint for a journey within a framework
    - JourneyStepDefinition:     ordered, read-only step of a template
    - PracticeJourney:           one tenant's live instantiation of a template
    - JourneyStepInstance:       live state of one step within a journey
    - JourneyStepEvidence:       link between a step instance and an external evidence artifact
    - JourneyMilestone:          one-time marker generated when progress crosses a threshold
    - JourneyProgressSnapshot:   dated aggregate of a journey, one row per calendar day

Architecture:
    ComplianceFramework ──1:N──▶ JourneyTemplate ──1:N──▶ JourneyStepDefinition
    JourneyTemplate ──1:N──▶ PracticeJourney ──1:N──▶ JourneyStepInstance
    JourneyStepInstance ──1:N──▶ JourneyStepEvidence ──N:1──▶ (external evidence item)
    PracticeJourney ──1:N──▶ JourneyMilestone
    PracticeJourney ──1:N──▶ JourneyProgressSnapshot

Lifecycle states:
    PracticeJourney:      not_started → in_progress → completed     (derived from steps)
                          not_started | in_progress → paused | cancelled
                          paused → in_progress | cancelled
    JourneyStepInstance:  not_started → in_progress → completed
                          in_progress → blocked → in_progress
                          not_started | in_progress → skipped
"""

from datetime import datetime, timezone
from enum import Enum

from app.models import db
from app.models.base import TenantModel, new_id


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Status enums ─────────────────────────────────────────────────────────────


class JourneyStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    NEEDS_REVISION = "needs_revision"


DIFFICULTY_LEVELS = {"beginner", "intermediate", "advanced"}

TERMINAL_JOURNEY_STATUSES = {JourneyStatus.COMPLETED, JourneyStatus.CANCELLED}


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

# not_started → completed is the one-shot "start and finish" shortcut;
# prerequisite and evidence guards still apply.
STEP_TRANSITIONS = {
    StepStatus.NOT_STARTED: [StepStatus.IN_PROGRESS, StepStatus.COMPLETED, StepStatus.SKIPPED],
    StepStatus.IN_PROGRESS: [StepStatus.COMPLETED, StepStatus.BLOCKED, StepStatus.SKIPPED],
    StepStatus.BLOCKED:     [StepStatus.IN_PROGRESS],
    StepStatus.COMPLETED:   [],
    StepStatus.SKIPPED:     [],
}

# Only user-initiated journey transitions. not_started / in_progress / completed
# are derived by the progress aggregator and cannot be requested directly,
# except in_progress as the "resume" event out of paused.
JOURNEY_TRANSITIONS = {
    JourneyStatus.NOT_STARTED: [JourneyStatus.PAUSED, JourneyStatus.CANCELLED],
    JourneyStatus.IN_PROGRESS: [JourneyStatus.PAUSED, JourneyStatus.CANCELLED],
    JourneyStatus.PAUSED:      [JourneyStatus.IN_PROGRESS, JourneyStatus.CANCELLED],
    JourneyStatus.COMPLETED:   [],
    JourneyStatus.CANCELLED:   [],
}

# Statuses a step must leave through a guarded transition
PREREQUISITE_GATED_STATUSES = {StepStatus.IN_PROGRESS, StepStatus.COMPLETED}


def _coerce(enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError:
        return None


def validate_step_transition(old_status, new_status):
    """Return True if JourneyStepInstance status transition is valid."""
    old, new = _coerce(StepStatus, old_status), _coerce(StepStatus, new_status)
    if old is None or new is None:
        return False
    return new in STEP_TRANSITIONS[old]


def validate_journey_transition(old_status, new_status):
    """Return True if an explicit PracticeJourney status transition is valid."""
    old, new = _coerce(JourneyStatus, old_status), _coerce(JourneyStatus, new_status)
    if old is None or new is None:
        return False
    return new in JOURNEY_TRANSITIONS[old]


# ═════════════════════════════════════════════════════════════════════════════
# 1. ComplianceFramework
# ═════════════════════════════════════════════════════════════════════════════


class ComplianceFramework(db.Model):
    """Regulatory framework that groups journey templates. Global, not tenant-scoped."""

    __tablename__ = "compliance_frameworks"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    version = db.Column(db.String(30), nullable=True)
    is_active = db.Column(db.Boolean, default=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<ComplianceFramework {self.id}: {self.name}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. JourneyTemplate
# ═════════════════════════════════════════════════════════════════════════════


class JourneyTemplate(db.Model):
    """
    Reusable blueprint for a compliance journey.
    Immutable once referenced by a live journey; edits create a new template.
    """

    __tablename__ = "journey_templates"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    framework_id = db.Column(
        db.String(36), db.ForeignKey("compliance_frameworks.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    estimated_duration_days = db.Column(db.Integer, nullable=True)
    difficulty_level = db.Column(
        db.String(20), default="intermediate",
        comment="beginner | intermediate | advanced",
    )
    is_active = db.Column(db.Boolean, default=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.CheckConstraint(
            "difficulty_level IN ('beginner','intermediate','advanced')",
            name="ck_journey_template_difficulty",
        ),
    )

    def to_dict(self, step_definitions=None, framework=None):
        result = {
            "id": self.id,
            "framework_id": self.framework_id,
            "name": self.name,
            "description": self.description,
            "estimated_duration_days": self.estimated_duration_days,
            "difficulty_level": self.difficulty_level,
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if framework is not None:
            result["framework"] = framework.to_dict()
        if step_definitions is not None:
            result["steps"] = [s.to_dict() for s in step_definitions]
        return result

    def __repr__(self):
        return f"<JourneyTemplate {self.id}: {self.name}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. JourneyStepDefinition
# ═════════════════════════════════════════════════════════════════════════════


class JourneyStepDefinition(db.Model):
    """
    Ordered step of a journey template.
    prerequisites holds ids of other step definitions of the same template.
    """

    __tablename__ = "journey_step_definitions"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    template_id = db.Column(
        db.String(36), db.ForeignKey("journey_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_number = db.Column(db.Integer, nullable=False)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    category = db.Column(db.String(50), nullable=True)
    estimated_hours = db.Column(db.Float, nullable=True)
    is_mandatory = db.Column(db.Boolean, default=True)
    prerequisites = db.Column(db.JSON, default=list)
    evidence_types_required = db.Column(db.JSON, default=list)
    min_evidence_count = db.Column(db.Integer, default=0)
    guidance_text = db.Column(db.Text, default="")
    resources = db.Column(db.JSON, default=dict)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("template_id", "step_number", name="uq_step_def_template_number"),
        db.CheckConstraint("min_evidence_count >= 0", name="ck_step_def_min_evidence"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "template_id": self.template_id,
            "step_number": self.step_number,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "estimated_hours": self.estimated_hours,
            "is_mandatory": self.is_mandatory,
            "prerequisites": list(self.prerequisites or []),
            "evidence_types_required": list(self.evidence_types_required or []),
            "min_evidence_count": self.min_evidence_count or 0,
            "guidance_text": self.guidance_text,
            "resources": dict(self.resources or {}),
        }

    def __repr__(self):
        return f"<JourneyStepDefinition {self.template_id}#{self.step_number}: {self.title[:40]}>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. PracticeJourney
# ═════════════════════════════════════════════════════════════════════════════


class PracticeJourney(TenantModel):
    """
    One tenant's instantiation of a journey template.

    progress_percentage is a cache of the progress aggregator's output and is
    never written by callers. version is the optimistic concurrency token:
    every step mutation touches the journey row, so two writers on the same
    journey collide on flush.
    """

    __tablename__ = "practice_journeys"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    template_id = db.Column(
        db.String(36), db.ForeignKey("journey_templates.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    status = db.Column(
        db.String(20), nullable=False, default=JourneyStatus.NOT_STARTED.value,
        comment="not_started | in_progress | completed | paused | cancelled",
    )
    progress_percentage = db.Column(db.Float, nullable=False, default=0.0)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    target_completion_date = db.Column(db.Date, nullable=True)
    actual_completion_date = db.Column(db.DateTime(timezone=True), nullable=True)
    assigned_to = db.Column(db.String(100), nullable=True)
    created_by = db.Column(db.String(100), nullable=True)
    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('not_started','in_progress','completed','paused','cancelled')",
            name="ck_practice_journey_status",
        ),
        db.CheckConstraint(
            "progress_percentage >= 0 AND progress_percentage <= 100",
            name="ck_practice_journey_progress",
        ),
        TenantModel.tenant_composite_index("practice_journeys", "status"),
    )

    @property
    def is_terminal(self):
        return self.status in TERMINAL_JOURNEY_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "practice_id": self.tenant_id,
            "template_id": self.template_id,
            "status": self.status,
            "progress_percentage": self.progress_percentage,
            "started_at": _iso(self.started_at),
            "target_completion_date": _iso(self.target_completion_date),
            "actual_completion_date": _iso(self.actual_completion_date),
            "assigned_to": self.assigned_to,
            "created_by": self.created_by,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<PracticeJourney {self.id} [{self.status} {self.progress_percentage}%]>"


# ═════════════════════════════════════════════════════════════════════════════
# 5. JourneyStepInstance
# ═════════════════════════════════════════════════════════════════════════════


class JourneyStepInstance(TenantModel):
    """Live state of one template step within a journey. Never deleted."""

    __tablename__ = "journey_step_instances"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    journey_id = db.Column(
        db.String(36), db.ForeignKey("practice_journeys.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_definition_id = db.Column(
        db.String(36), db.ForeignKey("journey_step_definitions.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    step_number = db.Column(db.Integer, nullable=False, comment="Copied from the definition for ordering")
    status = db.Column(
        db.String(20), nullable=False, default=StepStatus.NOT_STARTED.value,
        comment="not_started | in_progress | completed | skipped | blocked",
    )
    completion_percentage = db.Column(db.Integer, nullable=False, default=0)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    due_date = db.Column(db.Date, nullable=True)
    assigned_to = db.Column(db.String(100), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # Review
    review_status = db.Column(
        db.String(20), nullable=True,
        comment="pending | approved | needs_revision",
    )
    reviewed_by = db.Column(db.String(100), nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    review_notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("journey_id", "step_definition_id", name="uq_step_instance_definition"),
        db.CheckConstraint(
            "status IN ('not_started','in_progress','completed','skipped','blocked')",
            name="ck_step_instance_status",
        ),
        db.CheckConstraint(
            "completion_percentage >= 0 AND completion_percentage <= 100",
            name="ck_step_instance_completion",
        ),
        db.CheckConstraint(
            "review_status IS NULL OR review_status IN ('pending','approved','needs_revision')",
            name="ck_step_instance_review_status",
        ),
    )

    def to_dict(self, definition=None, evidence=None):
        result = {
            "id": self.id,
            "practice_id": self.tenant_id,
            "journey_id": self.journey_id,
            "step_id": self.step_definition_id,
            "step_number": self.step_number,
            "status": self.status,
            "completion_percentage": self.completion_percentage,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "due_date": _iso(self.due_date),
            "assigned_to": self.assigned_to,
            "notes": self.notes,
            "review_status": self.review_status,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": _iso(self.reviewed_at),
            "review_notes": self.review_notes,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if definition is not None:
            result["step"] = definition.to_dict()
        if evidence is not None:
            result["evidence"] = [link.to_dict() for link in evidence]
        return result

    def __repr__(self):
        return f"<JourneyStepInstance {self.id}: #{self.step_number} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 6. JourneyStepEvidence
# ═════════════════════════════════════════════════════════════════════════════


class JourneyStepEvidence(TenantModel):
    """
    Link between a step instance and an evidence artifact owned by the
    external evidence catalog. Only the artifact id is stored here.
    Duplicate (step, evidence item) pairs are tolerated; read paths dedupe.
    """

    __tablename__ = "journey_step_evidence"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    journey_step_id = db.Column(
        db.String(36), db.ForeignKey("journey_step_instances.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    evidence_item_id = db.Column(db.String(100), nullable=False, index=True)
    relevance_score = db.Column(db.Integer, nullable=False, default=5)
    is_primary = db.Column(db.Boolean, nullable=False, default=False)
    linked_by = db.Column(db.String(100), nullable=True)
    linked_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    notes = db.Column(db.Text, nullable=True)
    idempotency_key = db.Column(
        db.String(100), nullable=True,
        comment="Client-supplied key; a retried link with the same key returns the original row",
    )

    __table_args__ = (
        db.CheckConstraint(
            "relevance_score >= 1 AND relevance_score <= 10",
            name="ck_step_evidence_relevance",
        ),
        db.UniqueConstraint("tenant_id", "idempotency_key", name="uq_step_evidence_idempotency"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "practice_id": self.tenant_id,
            "journey_step_id": self.journey_step_id,
            "evidence_item_id": self.evidence_item_id,
            "relevance_score": self.relevance_score,
            "is_primary": self.is_primary,
            "linked_by": self.linked_by,
            "linked_at": _iso(self.linked_at),
            "notes": self.notes,
        }

    def __repr__(self):
        return f"<JourneyStepEvidence {self.journey_step_id} → {self.evidence_item_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# 7. JourneyMilestone
# ═════════════════════════════════════════════════════════════════════════════


class JourneyMilestone(TenantModel):
    """Dated achievement marker; at most one per (journey, milestone_type)."""

    __tablename__ = "journey_milestones"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    journey_id = db.Column(
        db.String(36), db.ForeignKey("practice_journeys.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    milestone_type = db.Column(
        db.String(50), nullable=False,
        comment="progress_25 | progress_50 | progress_75 | progress_100 | journey_completed",
    )
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    achieved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    target_date = db.Column(db.Date, nullable=True)
    is_celebrated = db.Column(db.Boolean, nullable=False, default=False)
    celebration_message = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("journey_id", "milestone_type", name="uq_journey_milestone_type"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "practice_id": self.tenant_id,
            "journey_id": self.journey_id,
            "milestone_type": self.milestone_type,
            "title": self.title,
            "description": self.description,
            "achieved_at": _iso(self.achieved_at),
            "target_date": _iso(self.target_date),
            "is_celebrated": self.is_celebrated,
            "celebration_message": self.celebration_message,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<JourneyMilestone {self.journey_id}: {self.milestone_type}>"


# ═════════════════════════════════════════════════════════════════════════════
# 8. JourneyProgressSnapshot
# ═════════════════════════════════════════════════════════════════════════════


class JourneyProgressSnapshot(TenantModel):
    """
    One aggregate row per (journey, calendar date).
    Re-capturing on the same date overwrites that date's row; earlier dates
    are never touched.
    """

    __tablename__ = "journey_progress_snapshots"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    journey_id = db.Column(
        db.String(36), db.ForeignKey("practice_journeys.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    snapshot_date = db.Column(db.Date, nullable=False)
    total_steps = db.Column(db.Integer, nullable=False, default=0)
    completed_steps = db.Column(db.Integer, nullable=False, default=0)
    in_progress_steps = db.Column(db.Integer, nullable=False, default=0)
    evidence_items_linked = db.Column(db.Integer, nullable=False, default=0)
    progress_percentage = db.Column(db.Float, nullable=False, default=0.0)
    velocity = db.Column(db.Float, nullable=False, default=0.0, comment="Steps completed per rolling week")
    estimated_completion_date = db.Column(db.Date, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("journey_id", "snapshot_date", name="uq_journey_snapshot_date"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "practice_id": self.tenant_id,
            "journey_id": self.journey_id,
            "snapshot_date": _iso(self.snapshot_date),
            "total_steps": self.total_steps,
            "completed_steps": self.completed_steps,
            "in_progress_steps": self.in_progress_steps,
            "evidence_items_linked": self.evidence_items_linked,
            "progress_percentage": self.progress_percentage,
            "velocity": self.velocity,
            "estimated_completion_date": _iso(self.estimated_completion_date),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<JourneyProgressSnapshot {self.journey_id} @ {self.snapshot_date}>"
