"""Compliance journey engine — initial schema

Revision ID: a1c3e5f7b901
Revises:
Create Date: 2026-10-17 09:00:00.000000

Changes:
  - Create tenants table
  - Create compliance_frameworks, journey_templates, journey_step_definitions (global catalog)
  - Create practice_journeys, journey_step_instances, journey_step_evidence,
    journey_milestones, journey_progress_snapshots (tenant-scoped)
  - Create scheduled_jobs table
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "a1c3e5f7b901"
down_revision = None
branch_labels = None
depends_on = None


def _tenant_fk():
    return sa.Column(
        "tenant_id", sa.Integer(),
        sa.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )


def upgrade():
    # ── Tenant ──
    op.create_table(
        "tenants",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), server_default="1"),
        sa.Column("settings", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )

    # ── Catalog ──
    op.create_table(
        "compliance_frameworks",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("version", sa.String(30), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "journey_templates",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("framework_id", sa.String(36),
                  sa.ForeignKey("compliance_frameworks.id", ondelete="CASCADE"),
                  nullable=False, index=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("estimated_duration_days", sa.Integer(), nullable=True),
        sa.Column("difficulty_level", sa.String(20), server_default="intermediate",
                  comment="beginner | intermediate | advanced"),
        sa.Column("is_active", sa.Boolean(), server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "difficulty_level IN ('beginner','intermediate','advanced')",
            name="ck_journey_template_difficulty",
        ),
    )

    op.create_table(
        "journey_step_definitions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("template_id", sa.String(36),
                  sa.ForeignKey("journey_templates.id", ondelete="CASCADE"),
                  nullable=False, index=True),
        sa.Column("step_number", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(50), nullable=True),
        sa.Column("estimated_hours", sa.Float(), nullable=True),
        sa.Column("is_mandatory", sa.Boolean(), server_default="1"),
        sa.Column("prerequisites", sa.JSON(), nullable=True),
        sa.Column("evidence_types_required", sa.JSON(), nullable=True),
        sa.Column("min_evidence_count", sa.Integer(), server_default="0"),
        sa.Column("guidance_text", sa.Text(), nullable=True),
        sa.Column("resources", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("template_id", "step_number", name="uq_step_def_template_number"),
        sa.CheckConstraint("min_evidence_count >= 0", name="ck_step_def_min_evidence"),
    )

    # ── PracticeJourney ──
    op.create_table(
        "practice_journeys",
        sa.Column("id", sa.String(36), primary_key=True),
        _tenant_fk(),
        sa.Column("template_id", sa.String(36),
                  sa.ForeignKey("journey_templates.id", ondelete="RESTRICT"),
                  nullable=False, index=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="not_started",
                  comment="not_started | in_progress | completed | paused | cancelled"),
        sa.Column("progress_percentage", sa.Float(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("target_completion_date", sa.Date(), nullable=True),
        sa.Column("actual_completion_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assigned_to", sa.String(100), nullable=True),
        sa.Column("created_by", sa.String(100), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('not_started','in_progress','completed','paused','cancelled')",
            name="ck_practice_journey_status",
        ),
        sa.CheckConstraint(
            "progress_percentage >= 0 AND progress_percentage <= 100",
            name="ck_practice_journey_progress",
        ),
    )
    op.create_index("ix_practice_journeys_tenant_status", "practice_journeys",
                    ["tenant_id", "status"])

    # ── JourneyStepInstance ──
    op.create_table(
        "journey_step_instances",
        sa.Column("id", sa.String(36), primary_key=True),
        _tenant_fk(),
        sa.Column("journey_id", sa.String(36),
                  sa.ForeignKey("practice_journeys.id", ondelete="CASCADE"),
                  nullable=False, index=True),
        sa.Column("step_definition_id", sa.String(36),
                  sa.ForeignKey("journey_step_definitions.id", ondelete="RESTRICT"),
                  nullable=False, index=True),
        sa.Column("step_number", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="not_started",
                  comment="not_started | in_progress | completed | skipped | blocked"),
        sa.Column("completion_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("assigned_to", sa.String(100), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("review_status", sa.String(20), nullable=True),
        sa.Column("reviewed_by", sa.String(100), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("journey_id", "step_definition_id", name="uq_step_instance_definition"),
        sa.CheckConstraint(
            "status IN ('not_started','in_progress','completed','skipped','blocked')",
            name="ck_step_instance_status",
        ),
        sa.CheckConstraint(
            "completion_percentage >= 0 AND completion_percentage <= 100",
            name="ck_step_instance_completion",
        ),
        sa.CheckConstraint(
            "review_status IS NULL OR review_status IN ('pending','approved','needs_revision')",
            name="ck_step_instance_review_status",
        ),
    )

    # ── JourneyStepEvidence ──
    op.create_table(
        "journey_step_evidence",
        sa.Column("id", sa.String(36), primary_key=True),
        _tenant_fk(),
        sa.Column("journey_step_id", sa.String(36),
                  sa.ForeignKey("journey_step_instances.id", ondelete="CASCADE"),
                  nullable=False, index=True),
        sa.Column("evidence_item_id", sa.String(100), nullable=False, index=True),
        sa.Column("relevance_score", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("linked_by", sa.String(100), nullable=True),
        sa.Column("linked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(100), nullable=True),
        sa.CheckConstraint(
            "relevance_score >= 1 AND relevance_score <= 10",
            name="ck_step_evidence_relevance",
        ),
        sa.UniqueConstraint("tenant_id", "idempotency_key", name="uq_step_evidence_idempotency"),
    )

    # ── JourneyMilestone ──
    op.create_table(
        "journey_milestones",
        sa.Column("id", sa.String(36), primary_key=True),
        _tenant_fk(),
        sa.Column("journey_id", sa.String(36),
                  sa.ForeignKey("practice_journeys.id", ondelete="CASCADE"),
                  nullable=False, index=True),
        sa.Column("milestone_type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("achieved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("target_date", sa.Date(), nullable=True),
        sa.Column("is_celebrated", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("celebration_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("journey_id", "milestone_type", name="uq_journey_milestone_type"),
    )

    # ── JourneyProgressSnapshot ──
    op.create_table(
        "journey_progress_snapshots",
        sa.Column("id", sa.String(36), primary_key=True),
        _tenant_fk(),
        sa.Column("journey_id", sa.String(36),
                  sa.ForeignKey("practice_journeys.id", ondelete="CASCADE"),
                  nullable=False, index=True),
        sa.Column("snapshot_date", sa.Date(), nullable=False),
        sa.Column("total_steps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_steps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("in_progress_steps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("evidence_items_linked", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("progress_percentage", sa.Float(), nullable=False, server_default="0"),
        sa.Column("velocity", sa.Float(), nullable=False, server_default="0"),
        sa.Column("estimated_completion_date", sa.Date(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("journey_id", "snapshot_date", name="uq_journey_snapshot_date"),
    )

    # ── ScheduledJob ──
    op.create_table(
        "scheduled_jobs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("job_name", sa.String(100), nullable=False, unique=True),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column("schedule_type", sa.String(30), server_default="cron"),
        sa.Column("schedule_config", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(20), server_default="active"),
        sa.Column("is_enabled", sa.Boolean(), server_default="1"),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_status", sa.String(20), nullable=True),
        sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
        sa.Column("last_run_result", sa.JSON(), nullable=True),
        sa.Column("run_count", sa.Integer(), server_default="0"),
        sa.Column("error_count", sa.Integer(), server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade():
    op.drop_table("scheduled_jobs")
    op.drop_table("journey_progress_snapshots")
    op.drop_table("journey_milestones")
    op.drop_table("journey_step_evidence")
    op.drop_table("journey_step_instances")
    op.drop_index("ix_practice_journeys_tenant_status", table_name="practice_journeys")
    op.drop_table("practice_journeys")
    op.drop_table("journey_step_definitions")
    op.drop_table("journey_templates")
    op.drop_table("compliance_frameworks")
    op.drop_table("tenants")
