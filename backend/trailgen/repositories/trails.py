"""Trail, module and lesson persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Mapping, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from ..db.base import utcnow
from ..db.models import (
    LessonModel,
    TrailModel,
    TrailModuleModel,
    TrailProgressModel,
)
from ..trail_state import ModuleStatus, TrailStatus


class TrailRepository:
    def get(self, session: Session, trail_id: str) -> Optional[TrailModel]:
        return session.get(TrailModel, trail_id)

    def get_with_tree(self, session: Session, trail_id: str) -> Optional[TrailModel]:
        stmt = (
            select(TrailModel)
            .where(TrailModel.id == trail_id)
            .options(selectinload(TrailModel.modules).selectinload(TrailModuleModel.lessons))
            .execution_options(populate_existing=True)
        )
        return session.execute(stmt).scalar_one_or_none()

    def get_active(self, session: Session, student_id: str, language_code: str) -> Optional[TrailModel]:
        stmt = select(TrailModel).where(
            TrailModel.student_id == student_id,
            TrailModel.language_code == language_code.lower(),
            TrailModel.status != TrailStatus.ARCHIVED.value,
        )
        return session.execute(stmt).scalar_one_or_none()

    def list_active(self, session: Session, student_id: str) -> List[TrailModel]:
        stmt = (
            select(TrailModel)
            .where(
                TrailModel.student_id == student_id,
                TrailModel.status != TrailStatus.ARCHIVED.value,
            )
            .order_by(TrailModel.created_at.asc(), TrailModel.id.asc())
        )
        return list(session.execute(stmt).scalars())

    def count_active(self, session: Session, student_id: str) -> int:
        stmt = select(func.count()).select_from(TrailModel).where(
            TrailModel.student_id == student_id,
            TrailModel.status != TrailStatus.ARCHIVED.value,
        )
        return int(session.execute(stmt).scalar_one())

    def create(
        self,
        session: Session,
        *,
        student_id: str,
        language_code: str,
        level_id: str,
        content_hash: str,
        curriculum_version: str,
        preferences: Optional[Mapping[str, Any]] = None,
        blueprint_id: Optional[str] = None,
        previous_trail_id: Optional[str] = None,
        refresh_reason: Optional[str] = None,
    ) -> TrailModel:
        model = TrailModel(
            student_id=student_id,
            language_code=language_code.lower(),
            level_id=level_id,
            content_hash=content_hash,
            curriculum_version=curriculum_version,
            preferences=dict(preferences or {}),
            blueprint_id=blueprint_id,
            status=TrailStatus.GENERATING.value,
            previous_trail_id=previous_trail_id,
            refresh_reason=refresh_reason,
        )
        session.add(model)
        session.flush()
        return model

    def archive(self, session: Session, trail: TrailModel, *, at: Optional[datetime] = None) -> TrailModel:
        """Set ARCHIVED and stamp ``archived_at``; archiving twice keeps the first stamp."""
        trail.status = TrailStatus.ARCHIVED.value
        if trail.archived_at is None:
            trail.archived_at = at or utcnow()
        session.flush()
        return trail

    def add_module(
        self,
        session: Session,
        trail: TrailModel,
        *,
        title: str,
        competency_id: Optional[str],
    ) -> TrailModuleModel:
        stmt = select(func.coalesce(func.max(TrailModuleModel.order_index), -1)).where(
            TrailModuleModel.trail_id == trail.id
        )
        next_index = int(session.execute(stmt).scalar_one()) + 1
        module = TrailModuleModel(
            trail_id=trail.id,
            title=title,
            competency_id=competency_id,
            order_index=next_index,
            status=ModuleStatus.PENDING.value,
        )
        session.add(module)
        session.flush()
        return module

    def add_placeholder_lesson(
        self,
        session: Session,
        module: TrailModuleModel,
        *,
        title: str,
        lesson_type: str,
        order_index: int,
        descriptor_id: Optional[str] = None,
        duration_minutes: int = 15,
    ) -> LessonModel:
        lesson = LessonModel(
            module_id=module.id,
            title=title,
            lesson_type=lesson_type,
            order_index=order_index,
            descriptor_id=descriptor_id,
            duration_minutes=duration_minutes,
            is_placeholder=True,
            content={},
            time_spent_seconds=0,
        )
        session.add(lesson)
        session.flush()
        return lesson

    def find_ready_by_content_hash(self, session: Session, content_hash: str) -> Optional[TrailModel]:
        """Newest trail with ``content_hash`` whose modules are all READY, archived trails included."""
        modules = select(TrailModuleModel.id).where(TrailModuleModel.trail_id == TrailModel.id)
        unfinished = modules.where(TrailModuleModel.status != ModuleStatus.READY.value)
        stmt = (
            select(TrailModel)
            .where(
                TrailModel.content_hash == content_hash,
                modules.exists(),
                ~unfinished.exists(),
            )
            .options(selectinload(TrailModel.modules).selectinload(TrailModuleModel.lessons))
            .order_by(TrailModel.created_at.desc(), TrailModel.id.desc())
            .limit(1)
        )
        return session.execute(stmt).scalar_one_or_none()

    def clone_tree(self, session: Session, source: TrailModel, target: TrailModel) -> List[str]:
        """Copy modules and generated lessons of ``source`` onto ``target``; returns the referenced block ids."""
        block_ids: List[str] = []
        for source_module in source.modules:
            module = TrailModuleModel(
                trail_id=target.id,
                title=source_module.title,
                competency_id=source_module.competency_id,
                order_index=source_module.order_index,
                status=ModuleStatus.READY.value,
            )
            session.add(module)
            session.flush()
            for source_lesson in source_module.lessons:
                session.add(
                    LessonModel(
                        module_id=module.id,
                        descriptor_id=source_lesson.descriptor_id,
                        content_block_id=source_lesson.content_block_id,
                        title=source_lesson.title,
                        lesson_type=source_lesson.lesson_type,
                        order_index=source_lesson.order_index,
                        duration_minutes=source_lesson.duration_minutes,
                        is_placeholder=False,
                        content=dict(source_lesson.content or {}),
                        time_spent_seconds=0,
                    )
                )
                if source_lesson.content_block_id is not None:
                    block_ids.append(source_lesson.content_block_id)
        session.flush()
        return block_ids

    def ensure_progress(self, session: Session, trail: TrailModel) -> TrailProgressModel:
        progress = session.get(TrailProgressModel, trail.id)
        if progress is None:
            progress = TrailProgressModel(trail_id=trail.id)
            session.add(progress)
            session.flush()
        return progress

    def list_modules(self, session: Session, trail_id: str) -> List[TrailModuleModel]:
        stmt = (
            select(TrailModuleModel)
            .where(TrailModuleModel.trail_id == trail_id)
            .options(selectinload(TrailModuleModel.lessons))
            .order_by(TrailModuleModel.order_index.asc())
        )
        return list(session.execute(stmt).scalars())

    def get_module(self, session: Session, trail_id: str, module_id: str) -> Optional[TrailModuleModel]:
        stmt = (
            select(TrailModuleModel)
            .where(TrailModuleModel.id == module_id, TrailModuleModel.trail_id == trail_id)
            .options(selectinload(TrailModuleModel.lessons))
        )
        return session.execute(stmt).scalar_one_or_none()

    def get_lesson(self, session: Session, lesson_id: str) -> Optional[LessonModel]:
        return session.get(LessonModel, lesson_id)

    def list_pending_modules(self, session: Session, trail_id: str) -> List[TrailModuleModel]:
        stmt = (
            select(TrailModuleModel)
            .where(
                TrailModuleModel.trail_id == trail_id,
                TrailModuleModel.status == ModuleStatus.PENDING.value,
            )
            .order_by(TrailModuleModel.order_index.asc())
        )
        return list(session.execute(stmt).scalars())

    def list_placeholder_lesson_ids(self, session: Session, module_id: str) -> List[str]:
        stmt = (
            select(LessonModel.id)
            .where(LessonModel.module_id == module_id, LessonModel.is_placeholder.is_(True))
            .order_by(LessonModel.order_index.asc())
        )
        return list(session.execute(stmt).scalars())

    def next_lesson(self, session: Session, trail_id: str) -> Optional[LessonModel]:
        stmt = (
            select(LessonModel)
            .join(TrailModuleModel, LessonModel.module_id == TrailModuleModel.id)
            .where(
                TrailModuleModel.trail_id == trail_id,
                LessonModel.is_placeholder.is_(False),
                LessonModel.completed_at.is_(None),
            )
            .order_by(TrailModuleModel.order_index.asc(), LessonModel.order_index.asc())
            .limit(1)
        )
        return session.execute(stmt).scalar_one_or_none()

    def total_duration_minutes(self, session: Session, trail_id: str) -> int:
        stmt = (
            select(func.coalesce(func.sum(LessonModel.duration_minutes), 0))
            .join(TrailModuleModel, LessonModel.module_id == TrailModuleModel.id)
            .where(TrailModuleModel.trail_id == trail_id)
        )
        return int(session.execute(stmt).scalar_one())


trails = TrailRepository()


__all__ = ["TrailRepository", "trails"]
