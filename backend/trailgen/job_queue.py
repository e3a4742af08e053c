"""Enqueue and cancel trail generation jobs.

``enqueue`` only writes the job row and returns the message to publish; the
caller publishes after its transaction commits so a worker never receives a
reference to an uncommitted job. A publish that fails leaves the job due for
the scheduler's reaper.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .broker import MessagePublisher, TrailGenerationMessage
from .config import Settings, get_settings
from .db.base import utcnow
from .db.models import TrailGenerationJobModel, TrailModel
from .db.session import session_scope
from .job_lifecycle import JobStatus, JobType
from .repositories.curriculum import curriculum
from .repositories.jobs import jobs
from .telemetry import emit_event

logger = logging.getLogger(__name__)


@dataclass
class EnqueueResult:
    job: TrailGenerationJobModel
    message: Optional[TrailGenerationMessage]
    created: bool


def build_message(session: Session, job: TrailGenerationJobModel, trail: TrailModel) -> TrailGenerationMessage:
    level = curriculum.get_level_by_id(session, trail.level_id)
    return TrailGenerationMessage(
        job_id=job.id,
        trail_id=trail.id,
        student_id=trail.student_id,
        job_type=job.job_type,
        language_code=trail.language_code,
        level_code=level.code if level else "",
        curriculum_version=trail.curriculum_version,
        priority=job.priority,
        blueprint_id=trail.blueprint_id,
        preferences=dict(trail.preferences or {}),
        gaps=job.gaps,
        attempt_number=job.attempt_count,
        max_attempts=job.max_attempts,
    )


class TrailJobQueue:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    def enqueue(
        self,
        session: Session,
        trail: TrailModel,
        job_type: JobType,
        *,
        priority: Optional[int] = None,
        gaps: Optional[List[Any]] = None,
    ) -> EnqueueResult:
        existing = jobs.find_active_by_trail(session, trail.id)
        if existing is not None:
            logger.info("Trail %s already has active job %s; ignoring enqueue", trail.id, existing.id)
            return EnqueueResult(job=existing, message=None, created=False)

        savepoint = session.begin_nested()
        try:
            job = jobs.create(
                session,
                trail_id=trail.id,
                student_id=trail.student_id,
                job_type=job_type,
                priority=priority if priority is not None else self.settings.job_default_priority,
                max_attempts=self.settings.job_max_attempts,
                gaps=gaps,
            )
        except IntegrityError:
            savepoint.rollback()
            existing = jobs.find_active_by_trail(session, trail.id)
            if existing is None:
                raise
            logger.info("Concurrent enqueue for trail %s lost to job %s", trail.id, existing.id)
            return EnqueueResult(job=existing, message=None, created=False)
        savepoint.commit()

        emit_event(
            "trail_job_enqueued",
            job_id=job.id,
            trail_id=trail.id,
            job_type=job.job_type,
            priority=job.priority,
        )
        return EnqueueResult(job=job, message=build_message(session, job, trail), created=True)

    def cancel(self, session: Session, trail_id: str) -> int:
        """Cancel the trail's non-terminal jobs; deliveries already in flight are not recalled."""
        cancelled = jobs.cancel_by_trail(session, trail_id)
        if cancelled:
            logger.info("Cancelled %d job(s) for trail %s", cancelled, trail_id)
        return cancelled


def mark_due_for_republish(job_id: str) -> None:
    with session_scope() as session:
        model = jobs.get(session, job_id)
        if model is not None and model.status == JobStatus.QUEUED.value and model.next_retry_at is None:
            model.next_retry_at = utcnow()


async def dispatch(publisher: MessagePublisher, message: TrailGenerationMessage) -> bool:
    """Publish ``message``; on failure leave the job for the reaper."""
    published = await publisher.publish_generation(message)
    if not published:
        logger.warning("Job %s was not published; scheduling reaper pickup", message.job_id)
        mark_due_for_republish(message.job_id)
    return published


job_queue = TrailJobQueue()


__all__ = [
    "EnqueueResult",
    "TrailJobQueue",
    "build_message",
    "dispatch",
    "job_queue",
    "mark_due_for_republish",
]
