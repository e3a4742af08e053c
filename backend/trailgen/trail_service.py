"""Trail lifecycle operations used by the HTTP layer.

Every function takes an open session and leaves committing to the caller. Any
generation message produced along the way is returned instead of published so
the caller can dispatch it once the transaction has committed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .broker import TrailGenerationMessage
from .config import Settings, get_settings
from .content_assembler import build_skeleton
from .db.base import utcnow
from .db.models import LessonModel, TrailGenerationJobModel, TrailModel, TrailModuleModel, TrailProgressModel
from .errors import (
    InvalidRefreshError,
    LessonNotFoundError,
    TrailLimitExceededError,
    TrailModuleNotFoundError,
    TrailNotFoundError,
    UnknownLevelError,
)
from .hashing import trail_hash
from .job_lifecycle import JobType
from .job_queue import job_queue
from .reconciliation import reconcile_trail, snapshot
from .repositories.blueprints import blueprints
from .repositories.content_blocks import content_blocks
from .repositories.curriculum import curriculum
from .repositories.jobs import jobs
from .repositories.trails import trails
from .telemetry import emit_event
from .trail_state import RefreshReason, TrailStatus, complete_lesson

logger = logging.getLogger(__name__)


@dataclass
class TrailOutcome:
    trail: TrailModel
    created: bool
    message: Optional[TrailGenerationMessage] = None


@dataclass
class RefreshChanges:
    new_level_code: Optional[str] = None
    preferences: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None


def _settings(settings: Optional[Settings]) -> Settings:
    return settings or get_settings()


def get_trail(session: Session, trail_id: str) -> TrailModel:
    trail = trails.get(session, trail_id)
    if trail is None:
        raise TrailNotFoundError(trail_id)
    return trail


def list_active_trails(session: Session, student_id: str) -> List[TrailModel]:
    return trails.list_active(session, student_id)


def _create_trail(
    session: Session,
    *,
    student_id: str,
    language_code: str,
    level_code: Optional[str],
    preferences: Optional[Mapping[str, Any]],
    settings: Settings,
    job_type: JobType,
    previous: Optional[TrailModel] = None,
    refresh_reason: Optional[str] = None,
    use_cache: bool = False,
) -> TrailOutcome:
    code = (level_code or settings.default_level_code).strip().upper()
    level = curriculum.get_level(session, code)
    if level is None:
        raise UnknownLevelError(code)

    prefs = dict(preferences or {})
    content_hash = trail_hash(student_id, language_code, level.code, prefs, settings.curriculum_version)
    if use_cache:
        cached = trails.find_ready_by_content_hash(session, content_hash)
        if cached is not None:
            return _clone_trail(session, cached, student_id=student_id, preferences=prefs)

    blueprint = blueprints.find_best_match(
        session,
        language_code=language_code,
        level_id=level.id,
        preferences=prefs,
    )

    trail = trails.create(
        session,
        student_id=student_id,
        language_code=language_code,
        level_id=level.id,
        content_hash=content_hash,
        curriculum_version=settings.curriculum_version,
        preferences=prefs,
        blueprint_id=blueprint.id if blueprint is not None else None,
        previous_trail_id=previous.id if previous is not None else None,
        refresh_reason=refresh_reason,
    )
    if blueprint is not None:
        blueprints.record_usage(session, blueprint.id)
    build_skeleton(session, trail, blueprint)
    reconcile_trail(session, trail.id)

    enqueued = job_queue.enqueue(session, trail, job_type)
    logger.info(
        "Created trail %s for student %s (%s/%s, blueprint=%s)",
        trail.id,
        student_id,
        trail.language_code,
        level.code,
        trail.blueprint_id,
    )
    return TrailOutcome(trail=trail, created=True, message=enqueued.message)


def _clone_trail(
    session: Session,
    source: TrailModel,
    *,
    student_id: str,
    preferences: Dict[str, Any],
) -> TrailOutcome:
    """Copy a fully generated trail with the same content hash; no job is enqueued."""
    trail = trails.create(
        session,
        student_id=student_id,
        language_code=source.language_code,
        level_id=source.level_id,
        content_hash=source.content_hash,
        curriculum_version=source.curriculum_version,
        preferences=preferences,
        blueprint_id=source.blueprint_id,
    )
    for block_id in trails.clone_tree(session, source, trail):
        content_blocks.increment_usage(session, block_id)
    reconcile_trail(session, trail.id)
    emit_event("trail_cloned", trail_id=trail.id, source_trail_id=source.id, student_id=student_id)
    logger.info("Reused trail %s for student %s by content hash", source.id, student_id)
    return TrailOutcome(trail=trail, created=True)


def _ensure_capacity(session: Session, student_id: str, settings: Settings) -> None:
    if trails.count_active(session, student_id) >= settings.max_active_trails:
        raise TrailLimitExceededError(student_id, settings.max_active_trails)


def generate_trail(
    session: Session,
    student_id: str,
    language_code: str,
    *,
    level_code: Optional[str] = None,
    preferences: Optional[Mapping[str, Any]] = None,
    force_regenerate: bool = False,
    settings: Optional[Settings] = None,
) -> TrailOutcome:
    """Return the active trail for the language, creating and enqueueing one if needed."""
    settings = _settings(settings)
    language = language_code.strip().lower()
    existing = trails.get_active(session, student_id, language)
    if existing is not None:
        if not force_regenerate:
            return TrailOutcome(trail=existing, created=False)
        archive_trail(session, existing.id)

    _ensure_capacity(session, student_id, settings)
    savepoint = session.begin_nested()
    try:
        outcome = _create_trail(
            session,
            student_id=student_id,
            language_code=language,
            level_code=level_code,
            preferences=preferences,
            settings=settings,
            job_type=JobType.FULL_GENERATION,
            use_cache=not force_regenerate,
        )
    except IntegrityError:
        savepoint.rollback()
        winner = trails.get_active(session, student_id, language)
        if winner is None:
            raise
        logger.info("Concurrent generate for %s/%s resolved to trail %s", student_id, language, winner.id)
        return TrailOutcome(trail=winner, created=False)
    savepoint.commit()
    return outcome


def get_or_create_trail(
    session: Session,
    student_id: str,
    language_code: str,
    *,
    settings: Optional[Settings] = None,
) -> TrailOutcome:
    return generate_trail(session, student_id, language_code, settings=settings)


def archive_trail(session: Session, trail_id: str) -> TrailModel:
    trail = get_trail(session, trail_id)
    trails.archive(session, trail)
    cancelled = job_queue.cancel(session, trail.id)
    emit_event("trail_archived", trail_id=trail.id, student_id=trail.student_id, jobs_cancelled=cancelled)
    return trail


def refresh_trail(
    session: Session,
    trail_id: str,
    reason: RefreshReason,
    changes: Optional[RefreshChanges] = None,
    *,
    settings: Optional[Settings] = None,
) -> TrailOutcome:
    """Archive ``trail_id`` and create its successor linked through ``previous_trail_id``."""
    settings = _settings(settings)
    changes = changes or RefreshChanges()
    old = get_trail(session, trail_id)
    if old.status == TrailStatus.ARCHIVED.value:
        raise InvalidRefreshError(f"Trail {trail_id} is archived and cannot be refreshed")

    old_level = curriculum.get_level_by_id(session, old.level_id)
    level_code = changes.new_level_code or (old_level.code if old_level else None)
    preferences = changes.preferences if changes.preferences is not None else dict(old.preferences or {})

    archive_trail(session, old.id)
    outcome = _create_trail(
        session,
        student_id=old.student_id,
        language_code=old.language_code,
        level_code=level_code,
        preferences=preferences,
        settings=settings,
        job_type=JobType.REFRESH,
        previous=old,
        refresh_reason=RefreshReason(reason).value,
    )
    logger.info(
        "Refreshed trail %s -> %s (reason=%s, notes=%s)",
        old.id,
        outcome.trail.id,
        outcome.trail.refresh_reason,
        changes.notes or "",
    )
    return outcome


def request_gap_fill(session: Session, trail_id: str, competency_codes: List[str]) -> Optional[TrailGenerationMessage]:
    trail = get_trail(session, trail_id)
    if trail.status == TrailStatus.ARCHIVED.value:
        raise InvalidRefreshError(f"Trail {trail_id} is archived")
    return job_queue.enqueue(session, trail, JobType.GAP_FILL, gaps=list(competency_codes)).message


def list_modules(session: Session, trail_id: str) -> List[TrailModuleModel]:
    get_trail(session, trail_id)
    return trails.list_modules(session, trail_id)


def get_module(session: Session, trail_id: str, module_id: str) -> TrailModuleModel:
    get_trail(session, trail_id)
    module = trails.get_module(session, trail_id, module_id)
    if module is None:
        raise TrailModuleNotFoundError(module_id)
    return module


def get_lesson(session: Session, lesson_id: str) -> LessonModel:
    lesson = trails.get_lesson(session, lesson_id)
    if lesson is None:
        raise LessonNotFoundError(lesson_id)
    return lesson


def next_lesson(session: Session, trail_id: str) -> Optional[LessonModel]:
    get_trail(session, trail_id)
    return trails.next_lesson(session, trail_id)


def update_lesson_progress(
    session: Session,
    lesson_id: str,
    *,
    completed: bool,
    score: Optional[Decimal] = None,
    time_spent_seconds: Optional[int] = None,
) -> LessonModel:
    lesson = get_lesson(session, lesson_id)
    now = utcnow()
    if completed:
        updated = complete_lesson(snapshot(lesson), at=now, score=score, time_spent_seconds=time_spent_seconds)
        lesson.completed_at = updated.completed_at
        lesson.score = updated.score
        lesson.time_spent_seconds = updated.time_spent_seconds
    else:
        if score is not None:
            lesson.score = score
        if time_spent_seconds is not None:
            lesson.time_spent_seconds = time_spent_seconds
    reconcile_trail(session, lesson.module.trail_id, activity_at=now)
    return lesson


def get_progress(session: Session, trail_id: str) -> TrailProgressModel:
    trail = get_trail(session, trail_id)
    progress = trails.ensure_progress(session, trail)
    return progress


def latest_job(session: Session, trail_id: str) -> Optional[TrailGenerationJobModel]:
    get_trail(session, trail_id)
    return jobs.latest_for_trail(session, trail_id)


def estimated_duration_hours(session: Session, trail_id: str) -> float:
    minutes = trails.total_duration_minutes(session, trail_id)
    return round(minutes / 60, 1)


__all__ = [
    "RefreshChanges",
    "TrailOutcome",
    "archive_trail",
    "estimated_duration_hours",
    "generate_trail",
    "get_lesson",
    "get_module",
    "get_or_create_trail",
    "get_progress",
    "get_trail",
    "latest_job",
    "list_active_trails",
    "list_modules",
    "next_lesson",
    "refresh_trail",
    "request_gap_fill",
    "update_lesson_progress",
]
