"""REST endpoints for trail lookup, generation, refresh and lesson progress."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query, Response, status
from sqlalchemy.orm import Session

from .broker import MessagePublisher, TrailGenerationMessage, get_broker
from .db.models import LessonModel, TrailModel, TrailModuleModel, TrailProgressModel
from .db.session import get_session_dependency
from .job_queue import dispatch
from .trail_payloads import (
    GenerateTrailRequest,
    GenerationStatusPayload,
    LessonPayload,
    LessonProgressUpdate,
    ModulePayload,
    ProgressPayload,
    RefreshTrailRequest,
    TrailPayload,
)
from .trail_service import (
    RefreshChanges,
    archive_trail,
    estimated_duration_hours,
    generate_trail,
    get_lesson,
    get_module,
    get_or_create_trail,
    get_progress,
    get_trail,
    latest_job,
    list_active_trails,
    list_modules,
    next_lesson,
    refresh_trail,
    update_lesson_progress,
)
from .trail_state import ModuleStatus

router = APIRouter(prefix="/api/trails", tags=["trails"])


def get_publisher() -> MessagePublisher:
    return get_broker()


def _schedule_publish(
    background: BackgroundTasks,
    publisher: MessagePublisher,
    message: Optional[TrailGenerationMessage],
) -> None:
    if message is not None:
        background.add_task(dispatch, publisher, message)


def _progress_payload(progress: Optional[TrailProgressModel]) -> ProgressPayload:
    if progress is None:
        return ProgressPayload()
    return ProgressPayload(
        total_lessons=progress.total_lessons,
        lessons_completed=progress.lessons_completed,
        progress_percentage=float(progress.progress_percentage),
        average_score=float(progress.average_score) if progress.average_score is not None else None,
        time_spent_minutes=progress.time_spent_minutes,
        last_activity_at=progress.last_activity_at,
    )


def _lesson_payload(lesson: LessonModel) -> LessonPayload:
    return LessonPayload(
        id=lesson.id,
        module_id=lesson.module_id,
        title=lesson.title,
        lesson_type=lesson.lesson_type,
        order_index=lesson.order_index,
        duration_minutes=lesson.duration_minutes,
        is_placeholder=lesson.is_placeholder,
        descriptor_code=lesson.descriptor.code if lesson.descriptor else None,
        content_block_id=lesson.content_block_id,
        content=None if lesson.is_placeholder else dict(lesson.content or {}),
        completed=lesson.is_completed,
        completed_at=lesson.completed_at,
        score=float(lesson.score) if lesson.score is not None else None,
        time_spent_seconds=lesson.time_spent_seconds or 0,
    )


def _module_payload(module: TrailModuleModel, *, include_lessons: bool = False) -> ModulePayload:
    lessons = list(module.lessons)
    return ModulePayload(
        id=module.id,
        trail_id=module.trail_id,
        title=module.title,
        competency_code=module.competency.code if module.competency else None,
        order_index=module.order_index,
        status=module.status,
        total_lessons=len(lessons),
        lessons_completed=sum(1 for lesson in lessons if lesson.is_completed),
        lessons=[_lesson_payload(lesson) for lesson in lessons] if include_lessons else None,
    )


def _trail_payload(session: Session, trail: TrailModel) -> TrailPayload:
    modules = list(trail.modules)
    return TrailPayload(
        id=trail.id,
        student_id=trail.student_id,
        language_code=trail.language_code,
        level_code=trail.level.code if trail.level else None,
        status=trail.status,
        content_hash=trail.content_hash,
        curriculum_version=trail.curriculum_version,
        blueprint_id=trail.blueprint_id,
        previous_trail_id=trail.previous_trail_id,
        refresh_reason=trail.refresh_reason,
        archived_at=trail.archived_at,
        total_modules=len(modules),
        modules_ready=sum(1 for module in modules if module.status == ModuleStatus.READY.value),
        estimated_duration_hours=estimated_duration_hours(session, trail.id),
        progress=_progress_payload(session.get(TrailProgressModel, trail.id)),
        created_at=trail.created_at,
        updated_at=trail.updated_at,
    )


@router.get("", response_model=TrailPayload)
def get_or_create(
    response: Response,
    background: BackgroundTasks,
    lang: str = Query(..., min_length=2, max_length=10),
    student_id: str = Header(..., alias="X-Student-Id", min_length=1),
    session: Session = Depends(get_session_dependency),
    publisher: MessagePublisher = Depends(get_publisher),
) -> TrailPayload:
    outcome = get_or_create_trail(session, student_id, lang)
    payload = _trail_payload(session, outcome.trail)
    session.commit()
    _schedule_publish(background, publisher, outcome.message)
    response.status_code = status.HTTP_201_CREATED if outcome.created else status.HTTP_200_OK
    return payload


@router.get("/active", response_model=List[TrailPayload])
def active_trails(
    student_id: str = Header(..., alias="X-Student-Id", min_length=1),
    session: Session = Depends(get_session_dependency),
) -> List[TrailPayload]:
    return [_trail_payload(session, trail) for trail in list_active_trails(session, student_id)]


@router.post("/generate", response_model=TrailPayload, status_code=status.HTTP_202_ACCEPTED)
def generate(
    request: GenerateTrailRequest,
    background: BackgroundTasks,
    student_id: str = Header(..., alias="X-Student-Id", min_length=1),
    session: Session = Depends(get_session_dependency),
    publisher: MessagePublisher = Depends(get_publisher),
) -> TrailPayload:
    outcome = generate_trail(
        session,
        student_id,
        request.language_code,
        level_code=request.level_code,
        preferences=request.preferences,
        force_regenerate=request.force_regenerate,
    )
    payload = _trail_payload(session, outcome.trail)
    session.commit()
    _schedule_publish(background, publisher, outcome.message)
    return payload


@router.get("/lessons/{lesson_id}", response_model=LessonPayload)
def lesson_detail(lesson_id: str, session: Session = Depends(get_session_dependency)) -> LessonPayload:
    return _lesson_payload(get_lesson(session, lesson_id))


@router.patch("/lessons/{lesson_id}/progress", response_model=LessonPayload)
def lesson_progress(
    lesson_id: str,
    update: LessonProgressUpdate,
    session: Session = Depends(get_session_dependency),
) -> LessonPayload:
    lesson = update_lesson_progress(
        session,
        lesson_id,
        completed=update.completed,
        score=update.score,
        time_spent_seconds=update.time_spent_seconds,
    )
    return _lesson_payload(lesson)


@router.get("/{trail_id}", response_model=TrailPayload)
def trail_detail(trail_id: str, session: Session = Depends(get_session_dependency)) -> TrailPayload:
    return _trail_payload(session, get_trail(session, trail_id))


@router.post("/{trail_id}/refresh", response_model=TrailPayload, status_code=status.HTTP_202_ACCEPTED)
def refresh(
    trail_id: str,
    request: RefreshTrailRequest,
    background: BackgroundTasks,
    session: Session = Depends(get_session_dependency),
    publisher: MessagePublisher = Depends(get_publisher),
) -> TrailPayload:
    outcome = refresh_trail(
        session,
        trail_id,
        request.reason,
        RefreshChanges(
            new_level_code=request.new_level_code,
            preferences=request.preferences,
            notes=request.notes,
        ),
    )
    payload = _trail_payload(session, outcome.trail)
    session.commit()
    _schedule_publish(background, publisher, outcome.message)
    return payload


@router.delete("/{trail_id}", status_code=status.HTTP_204_NO_CONTENT)
def archive(trail_id: str, session: Session = Depends(get_session_dependency)) -> Response:
    archive_trail(session, trail_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{trail_id}/modules", response_model=List[ModulePayload])
def modules(trail_id: str, session: Session = Depends(get_session_dependency)) -> List[ModulePayload]:
    return [_module_payload(module) for module in list_modules(session, trail_id)]


@router.get("/{trail_id}/modules/{module_id}", response_model=ModulePayload)
def module_detail(
    trail_id: str,
    module_id: str,
    session: Session = Depends(get_session_dependency),
) -> ModulePayload:
    return _module_payload(get_module(session, trail_id, module_id), include_lessons=True)


@router.get("/{trail_id}/next-lesson", response_model=LessonPayload)
def next_lesson_for_trail(trail_id: str, session: Session = Depends(get_session_dependency)):
    lesson = next_lesson(session, trail_id)
    if lesson is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return _lesson_payload(lesson)


@router.get("/{trail_id}/progress", response_model=ProgressPayload)
def progress(trail_id: str, session: Session = Depends(get_session_dependency)) -> ProgressPayload:
    return _progress_payload(get_progress(session, trail_id))


@router.get("/{trail_id}/generation", response_model=GenerationStatusPayload)
def generation_status(trail_id: str, session: Session = Depends(get_session_dependency)) -> GenerationStatusPayload:
    job = latest_job(session, trail_id)
    if job is None:
        return GenerationStatusPayload(trail_id=trail_id)
    return GenerationStatusPayload(
        trail_id=trail_id,
        job_id=job.id,
        status=job.status,
        job_type=job.job_type,
        attempt_count=job.attempt_count,
        max_attempts=job.max_attempts,
        last_error=job.last_error,
        error_details=job.error_details,
        next_retry_at=job.next_retry_at,
        queued_at=job.queued_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        failed_at=job.failed_at,
    )


__all__ = ["get_publisher", "router"]
