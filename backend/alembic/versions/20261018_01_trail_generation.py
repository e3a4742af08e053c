"""Curriculum, content reuse, trail and generation job schema."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "20261018_01_trail_generation"
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_TRAIL = sa.text("status != 'ARCHIVED'")
ACTIVE_JOB = sa.text("status IN ('QUEUED', 'PROCESSING')")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "levels",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("code", sa.String(length=8), nullable=False, unique=True),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("order_index", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "competencies",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("code", sa.String(length=32), nullable=False, unique=True),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("order_index", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "level_competencies",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("level_id", sa.String(length=36), sa.ForeignKey("levels.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "competency_id",
            sa.String(length=36),
            sa.ForeignKey("competencies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("weight", sa.Integer(), nullable=False, server_default="1"),
        sa.UniqueConstraint("level_id", "competency_id", name="uq_level_competency"),
    )
    op.create_index("ix_level_competencies_level_id", "level_competencies", ["level_id"])

    op.create_table(
        "descriptors",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("code", sa.String(length=64), nullable=False, unique=True),
        sa.Column("level_id", sa.String(length=36), sa.ForeignKey("levels.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "competency_id",
            sa.String(length=36),
            sa.ForeignKey("competencies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("language_code", sa.String(length=10), nullable=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("is_core", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("order_index", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_descriptors_level_competency", "descriptors", ["level_id", "competency_id"])

    op.create_table(
        "content_blocks",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("content_hash", sa.String(length=40), nullable=False),
        sa.Column(
            "descriptor_id",
            sa.String(length=36),
            sa.ForeignKey("descriptors.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("language_code", sa.String(length=10), nullable=False),
        sa.Column("lesson_type", sa.String(length=32), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("quality_score", sa.Numeric(5, 2), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_content_blocks_content_hash", "content_blocks", ["content_hash"], unique=True)
    op.create_index(
        "ix_content_blocks_lookup",
        "content_blocks",
        ["descriptor_id", "language_code", "lesson_type"],
    )

    op.create_table(
        "blueprints",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("language_code", sa.String(length=10), nullable=False),
        sa.Column("level_id", sa.String(length=36), sa.ForeignKey("levels.id"), nullable=False),
        sa.Column("blueprint_hash", sa.String(length=40), nullable=False),
        sa.Column("preferences_pattern", sa.JSON(), nullable=False),
        sa.Column("structure", sa.JSON(), nullable=False),
        sa.Column("is_approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("avg_completion_rate", sa.Numeric(5, 2), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_blueprints_blueprint_hash", "blueprints", ["blueprint_hash"], unique=True)
    op.create_index("ix_blueprints_language_level", "blueprints", ["language_code", "level_id"])

    op.create_table(
        "trails",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("student_id", sa.String(length=64), nullable=False),
        sa.Column("language_code", sa.String(length=10), nullable=False),
        sa.Column("level_id", sa.String(length=36), sa.ForeignKey("levels.id"), nullable=False),
        sa.Column(
            "blueprint_id",
            sa.String(length=36),
            sa.ForeignKey("blueprints.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="GENERATING"),
        sa.Column("content_hash", sa.String(length=40), nullable=False),
        sa.Column("curriculum_version", sa.String(length=16), nullable=False),
        sa.Column("preferences", sa.JSON(), nullable=False),
        sa.Column(
            "previous_trail_id",
            sa.String(length=36),
            sa.ForeignKey("trails.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("refresh_reason", sa.String(length=32), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_trails_student", "trails", ["student_id"])
    op.create_index(
        "uq_trails_active_student_language",
        "trails",
        ["student_id", "language_code"],
        unique=True,
        postgresql_where=ACTIVE_TRAIL,
        sqlite_where=ACTIVE_TRAIL,
    )

    op.create_table(
        "trail_modules",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("trail_id", sa.String(length=36), sa.ForeignKey("trails.id", ondelete="CASCADE"), nullable=False),
        sa.Column("competency_id", sa.String(length=36), sa.ForeignKey("competencies.id"), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("order_index", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        sa.UniqueConstraint("trail_id", "order_index", name="uq_trail_module_order"),
    )
    op.create_index("ix_trail_modules_trail_id", "trail_modules", ["trail_id"])

    op.create_table(
        "lessons",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column(
            "module_id",
            sa.String(length=36),
            sa.ForeignKey("trail_modules.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("descriptor_id", sa.String(length=36), sa.ForeignKey("descriptors.id"), nullable=True),
        sa.Column(
            "content_block_id",
            sa.String(length=36),
            sa.ForeignKey("content_blocks.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("lesson_type", sa.String(length=32), nullable=False),
        sa.Column("order_index", sa.Integer(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default="15"),
        sa.Column("is_placeholder", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("content", sa.JSON(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("score", sa.Numeric(5, 2), nullable=True),
        sa.Column("time_spent_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("module_id", "order_index", name="uq_lesson_order"),
    )
    op.create_index("ix_lessons_module_id", "lessons", ["module_id"])

    op.create_table(
        "trail_progress",
        sa.Column(
            "trail_id",
            sa.String(length=36),
            sa.ForeignKey("trails.id", ondelete="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
        sa.Column("total_lessons", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lessons_completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("progress_percentage", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("average_score", sa.Numeric(5, 2), nullable=True),
        sa.Column("time_spent_minutes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )

    op.create_table(
        "trail_generation_jobs",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("trail_id", sa.String(length=36), sa.ForeignKey("trails.id", ondelete="CASCADE"), nullable=False),
        sa.Column("student_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="QUEUED"),
        sa.Column("job_type", sa.String(length=32), nullable=False, server_default="full_generation"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("gaps", sa.JSON(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("error_details", sa.JSON(), nullable=True),
        sa.Column("worker_id", sa.String(length=128), nullable=True),
        sa.Column("tokens_used", sa.Integer(), nullable=True),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("queued_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_trail_generation_jobs_trail_id", "trail_generation_jobs", ["trail_id"])
    op.create_index("ix_trail_generation_jobs_status", "trail_generation_jobs", ["status", "priority"])
    op.create_index("ix_trail_generation_jobs_student", "trail_generation_jobs", ["student_id"])
    op.create_index(
        "uq_trail_generation_jobs_active_trail",
        "trail_generation_jobs",
        ["trail_id"],
        unique=True,
        postgresql_where=ACTIVE_JOB,
        sqlite_where=ACTIVE_JOB,
    )


def downgrade() -> None:
    op.drop_index("uq_trail_generation_jobs_active_trail", table_name="trail_generation_jobs")
    op.drop_index("ix_trail_generation_jobs_student", table_name="trail_generation_jobs")
    op.drop_index("ix_trail_generation_jobs_status", table_name="trail_generation_jobs")
    op.drop_index("ix_trail_generation_jobs_trail_id", table_name="trail_generation_jobs")
    op.drop_table("trail_generation_jobs")
    op.drop_table("trail_progress")
    op.drop_index("ix_lessons_module_id", table_name="lessons")
    op.drop_table("lessons")
    op.drop_index("ix_trail_modules_trail_id", table_name="trail_modules")
    op.drop_table("trail_modules")
    op.drop_index("uq_trails_active_student_language", table_name="trails")
    op.drop_index("ix_trails_student", table_name="trails")
    op.drop_table("trails")
    op.drop_index("ix_blueprints_language_level", table_name="blueprints")
    op.drop_index("ix_blueprints_blueprint_hash", table_name="blueprints")
    op.drop_table("blueprints")
    op.drop_index("ix_content_blocks_lookup", table_name="content_blocks")
    op.drop_index("ix_content_blocks_content_hash", table_name="content_blocks")
    op.drop_table("content_blocks")
    op.drop_index("ix_descriptors_level_competency", table_name="descriptors")
    op.drop_table("descriptors")
    op.drop_index("ix_level_competencies_level_id", table_name="level_competencies")
    op.drop_table("level_competencies")
    op.drop_table("competencies")
    op.drop_table("levels")
