"""ORM models backing the trail generation pipeline."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from ..job_lifecycle import JobStatus, JobType
from ..trail_state import ModuleStatus, TrailStatus
from .base import Base, TimestampMixin, utcnow

JSONType = JSON

_ACTIVE_TRAIL = text("status != 'ARCHIVED'")
_ACTIVE_JOB = text("status IN ('QUEUED', 'PROCESSING')")


def _uuid() -> str:
    return str(uuid.uuid4())


class LevelModel(Base):
    __tablename__ = "levels"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    code: Mapped[str] = mapped_column(String(8), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    order_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    competencies: Mapped[list["LevelCompetencyModel"]] = relationship(
        back_populates="level", cascade="all, delete-orphan"
    )


class CompetencyModel(Base):
    __tablename__ = "competencies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    order_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class LevelCompetencyModel(Base):
    __tablename__ = "level_competencies"
    __table_args__ = (UniqueConstraint("level_id", "competency_id", name="uq_level_competency"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    level_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("levels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    competency_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("competencies.id", ondelete="CASCADE"), nullable=False
    )
    weight: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    level: Mapped[LevelModel] = relationship(back_populates="competencies")
    competency: Mapped[CompetencyModel] = relationship()


class DescriptorModel(Base):
    __tablename__ = "descriptors"
    __table_args__ = (Index("ix_descriptors_level_competency", "level_id", "competency_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    level_id: Mapped[str] = mapped_column(String(36), ForeignKey("levels.id", ondelete="CASCADE"), nullable=False)
    competency_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("competencies.id", ondelete="CASCADE"), nullable=False
    )
    language_code: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    is_core: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    order_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    competency: Mapped[CompetencyModel] = relationship()


class ContentBlockModel(Base):
    __tablename__ = "content_blocks"
    __table_args__ = (
        Index("ix_content_blocks_content_hash", "content_hash", unique=True),
        Index("ix_content_blocks_lookup", "descriptor_id", "language_code", "lesson_type"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    content_hash: Mapped[str] = mapped_column(String(40), nullable=False)
    descriptor_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("descriptors.id", ondelete="SET NULL"), nullable=True
    )
    language_code: Mapped[str] = mapped_column(String(10), nullable=False)
    lesson_type: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
    quality_score: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class BlueprintModel(Base):
    __tablename__ = "blueprints"
    __table_args__ = (
        Index("ix_blueprints_blueprint_hash", "blueprint_hash", unique=True),
        Index("ix_blueprints_language_level", "language_code", "level_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    language_code: Mapped[str] = mapped_column(String(10), nullable=False)
    level_id: Mapped[str] = mapped_column(String(36), ForeignKey("levels.id"), nullable=False)
    blueprint_hash: Mapped[str] = mapped_column(String(40), nullable=False)
    preferences_pattern: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    structure: Mapped[dict] = mapped_column(JSONType, nullable=False)
    is_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    avg_completion_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class TrailModel(TimestampMixin, Base):
    __tablename__ = "trails"
    __table_args__ = (
        Index("ix_trails_student", "student_id"),
        Index(
            "uq_trails_active_student_language",
            "student_id",
            "language_code",
            unique=True,
            postgresql_where=_ACTIVE_TRAIL,
            sqlite_where=_ACTIVE_TRAIL,
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    language_code: Mapped[str] = mapped_column(String(10), nullable=False)
    level_id: Mapped[str] = mapped_column(String(36), ForeignKey("levels.id"), nullable=False)
    blueprint_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("blueprints.id", ondelete="SET NULL"), nullable=True
    )
    status: Mapped[str] = mapped_column(
        String(16), default=TrailStatus.GENERATING.value, nullable=False
    )
    content_hash: Mapped[str] = mapped_column(String(40), nullable=False)
    curriculum_version: Mapped[str] = mapped_column(String(16), nullable=False)
    preferences: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    previous_trail_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("trails.id", ondelete="SET NULL"), nullable=True
    )
    refresh_reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    level: Mapped[LevelModel] = relationship()
    modules: Mapped[list["TrailModuleModel"]] = relationship(
        back_populates="trail",
        cascade="all, delete-orphan",
        order_by="TrailModuleModel.order_index",
    )
    progress: Mapped[Optional["TrailProgressModel"]] = relationship(
        back_populates="trail", cascade="all, delete-orphan", uselist=False
    )


class TrailModuleModel(TimestampMixin, Base):
    __tablename__ = "trail_modules"
    __table_args__ = (UniqueConstraint("trail_id", "order_index", name="uq_trail_module_order"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    trail_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("trails.id", ondelete="CASCADE"), nullable=False, index=True
    )
    competency_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("competencies.id"), nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=ModuleStatus.PENDING.value, nullable=False)

    trail: Mapped[TrailModel] = relationship(back_populates="modules")
    competency: Mapped[Optional[CompetencyModel]] = relationship()
    lessons: Mapped[list["LessonModel"]] = relationship(
        back_populates="module",
        cascade="all, delete-orphan",
        order_by="LessonModel.order_index",
    )


class LessonModel(TimestampMixin, Base):
    __tablename__ = "lessons"
    __table_args__ = (UniqueConstraint("module_id", "order_index", name="uq_lesson_order"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    module_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("trail_modules.id", ondelete="CASCADE"), nullable=False, index=True
    )
    descriptor_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("descriptors.id"), nullable=True)
    content_block_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("content_blocks.id", ondelete="SET NULL"), nullable=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    lesson_type: Mapped[str] = mapped_column(String(32), nullable=False)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=15, nullable=False)
    is_placeholder: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    content: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    score: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    time_spent_seconds: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    module: Mapped[TrailModuleModel] = relationship(back_populates="lessons")
    descriptor: Mapped[Optional[DescriptorModel]] = relationship()

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None


class TrailProgressModel(Base):
    __tablename__ = "trail_progress"

    trail_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("trails.id", ondelete="CASCADE"), primary_key=True
    )
    total_lessons: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lessons_completed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    progress_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0.00"), nullable=False)
    average_score: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    time_spent_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    trail: Mapped[TrailModel] = relationship(back_populates="progress")


class TrailGenerationJobModel(Base):
    __tablename__ = "trail_generation_jobs"
    __table_args__ = (
        Index("ix_trail_generation_jobs_status", "status", "priority"),
        Index("ix_trail_generation_jobs_student", "student_id"),
        Index(
            "uq_trail_generation_jobs_active_trail",
            "trail_id",
            unique=True,
            postgresql_where=_ACTIVE_JOB,
            sqlite_where=_ACTIVE_JOB,
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    trail_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("trails.id", ondelete="CASCADE"), nullable=False, index=True
    )
    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=JobStatus.QUEUED.value, nullable=False)
    job_type: Mapped[str] = mapped_column(String(32), default=JobType.FULL_GENERATION.value, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    gaps: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_details: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)
    worker_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    tokens_used: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    queued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


__all__ = [
    "BlueprintModel",
    "CompetencyModel",
    "ContentBlockModel",
    "DescriptorModel",
    "LessonModel",
    "LevelCompetencyModel",
    "LevelModel",
    "TrailGenerationJobModel",
    "TrailModel",
    "TrailModuleModel",
    "TrailProgressModel",
]
