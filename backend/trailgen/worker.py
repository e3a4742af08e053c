"""Queue consumer that turns placeholder lessons into generated content.

Each job is owned end to end by one worker. Progress is committed lesson by
lesson, so a crash leaves a consistent PARTIAL trail and the next attempt only
visits modules that are still PENDING. Every failure inside a claimed job is
recorded on the job row; nothing is raised back to the broker for it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from aio_pika.abc import AbstractIncomingMessage
from sqlalchemy.orm import Session

from .broker import (
    MessagePublisher,
    NotificationType,
    TrailGenerationMessage,
    TrailNotificationMessage,
)
from .config import Settings, get_settings
from .content_assembler import add_gap_modules, attach_generated_content, reuse_existing_content
from .content_provider import ContentProvider, GenerationRequest
from .db.base import utcnow
from .db.session import session_scope
from .errors import (
    InvalidJobTransitionError,
    JobCancelledError,
    StaleJobStateError,
    StructuralContentError,
    TrailError,
    TrailGenerationError,
)
from .job_lifecycle import Cancel, Complete, Fail, JobStatus, JobType
from .reconciliation import ReconcileResult, reconcile_trail
from .repositories.curriculum import curriculum
from .repositories.jobs import jobs
from .repositories.trails import trails
from .trail_state import TrailStatus

logger = logging.getLogger(__name__)


class JobOwnershipLostError(Exception):
    """The job left PROCESSING for this worker, e.g. after a stale-job sweep."""


@dataclass
class JobRun:
    job_id: str
    trail_id: str
    student_id: str
    language_code: str
    level_code: str
    job_type: str
    preferences: Dict[str, Any] = field(default_factory=dict)
    gaps: Optional[List[Any]] = None
    attempt: int = 0
    step: str = "load"
    tokens_used: int = 0


class TrailGenerationWorker:
    def __init__(
        self,
        provider: ContentProvider,
        publisher: MessagePublisher,
        *,
        worker_id: Optional[str] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.provider = provider
        self.publisher = publisher
        self.settings = settings or get_settings()
        self.worker_id = worker_id or self.settings.resolved_worker_id()

    async def handle_delivery(self, incoming: AbstractIncomingMessage) -> None:
        """Broker callback; undecodable bodies raise so the delivery is dead-lettered."""
        message = TrailGenerationMessage.from_json(incoming.body.decode("utf-8"))
        await self.process(message)

    async def process(self, message: TrailGenerationMessage) -> Optional[JobStatus]:
        with session_scope() as session:
            claimed = jobs.claim(session, message.job_id, self.worker_id)
        if claimed is None:
            return None

        logger.info(
            "Worker %s processing job %s for trail %s (attempt %d/%d)",
            self.worker_id,
            message.job_id,
            message.trail_id,
            claimed.attempt_count,
            claimed.max_attempts,
        )
        started = time.perf_counter()
        run: Optional[JobRun] = None
        try:
            run = self._load_run(message.job_id)
            await self._notify(NotificationType.GENERATION_STARTED, run, job_status=JobStatus.PROCESSING)

            if run.job_type == JobType.GAP_FILL.value and run.gaps:
                run.step = "gap_fill"
                with session_scope() as session:
                    self._ensure_owned(session, run)
                    trail = trails.get(session, run.trail_id)
                    add_gap_modules(session, trail, [str(code) for code in run.gaps])
                    reconcile_trail(session, run.trail_id)

            result = await self._generate_pending(run)

            run.step = "complete"
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            with session_scope() as session:
                self._ensure_owned(session, run)
                jobs.apply(
                    session,
                    run.job_id,
                    Complete(at=utcnow(), tokens_used=run.tokens_used, processing_time_ms=elapsed_ms),
                )
                if result is None:
                    result = reconcile_trail(session, run.trail_id)
            await self._notify(
                NotificationType.GENERATION_COMPLETED,
                run,
                result=result,
                job_status=JobStatus.COMPLETED,
            )
            logger.info("Job %s completed in %d ms (%d tokens)", run.job_id, elapsed_ms, run.tokens_used)
            return JobStatus.COMPLETED
        except (JobCancelledError, JobOwnershipLostError) as exc:
            logger.info("Job %s stopped: %s", message.job_id, exc)
            return JobStatus.CANCELLED
        except Exception as exc:  # noqa: BLE001
            logger.exception("Job %s failed at step %s", message.job_id, run.step if run else "load")
            self._record_failure(message, run, exc)
            if run is not None:
                await self._notify(
                    NotificationType.GENERATION_FAILED,
                    run,
                    job_status=JobStatus.FAILED,
                    error_message=str(exc),
                )
            return JobStatus.FAILED

    def _load_run(self, job_id: str) -> JobRun:
        with session_scope() as session:
            job = jobs.get(session, job_id)
            if job is None:
                raise JobOwnershipLostError(f"Job {job_id} disappeared")
            trail = trails.get(session, job.trail_id)
            if trail is None:
                raise TrailGenerationError(job.trail_id, "load", f"Trail {job.trail_id} no longer exists")
            level = curriculum.get_level_by_id(session, trail.level_id)
            return JobRun(
                job_id=job.id,
                trail_id=trail.id,
                student_id=trail.student_id,
                language_code=trail.language_code,
                level_code=level.code if level else "",
                job_type=job.job_type,
                preferences=dict(trail.preferences or {}),
                gaps=list(job.gaps) if job.gaps else None,
                attempt=job.attempt_count,
            )

    async def _generate_pending(self, run: JobRun) -> Optional[ReconcileResult]:
        with session_scope() as session:
            module_ids = [module.id for module in trails.list_pending_modules(session, run.trail_id)]

        result: Optional[ReconcileResult] = None
        for module_id in module_ids:
            with session_scope() as session:
                lesson_ids = trails.list_placeholder_lesson_ids(session, module_id)
            for lesson_id in lesson_ids:
                run.step = f"generate_lesson:{lesson_id}"
                lesson_result = await self._generate_lesson(run, lesson_id)
                if lesson_result is None:
                    continue
                result = lesson_result
                await self._notify(NotificationType.LESSON_GENERATED, run, result=result)
                if module_id in result.modules_ready:
                    await self._notify(NotificationType.MODULE_GENERATED, run, result=result)
        return result

    async def _generate_lesson(self, run: JobRun, lesson_id: str) -> Optional[ReconcileResult]:
        with session_scope() as session:
            self._ensure_owned(session, run)
            lesson = trails.get_lesson(session, lesson_id)
            if lesson is None or not lesson.is_placeholder:
                return None
            if reuse_existing_content(session, lesson, language_code=run.language_code) is not None:
                return reconcile_trail(session, run.trail_id)
            request = self._build_request(session, run, lesson_id)

        generated = await asyncio.to_thread(self.provider.generate, request)
        run.tokens_used += generated.tokens_used

        with session_scope() as session:
            self._ensure_owned(session, run)
            lesson = trails.get_lesson(session, lesson_id)
            if lesson is None or not lesson.is_placeholder:
                return None
            attach_generated_content(session, lesson, generated.payload, language_code=run.language_code)
            return reconcile_trail(session, run.trail_id)

    def _build_request(self, session: Session, run: JobRun, lesson_id: str) -> GenerationRequest:
        lesson = trails.get_lesson(session, lesson_id)
        assert lesson is not None
        module = lesson.module
        descriptor = lesson.descriptor
        return GenerationRequest(
            trail_id=run.trail_id,
            lesson_id=lesson.id,
            language_code=run.language_code,
            level_code=run.level_code,
            competency_code=module.competency.code if module.competency else None,
            lesson_type=lesson.lesson_type,
            title=lesson.title,
            descriptor_code=descriptor.code if descriptor else None,
            descriptor_text=descriptor.description if descriptor else None,
            preferences=run.preferences,
        )

    def _ensure_owned(self, session: Session, run: JobRun) -> None:
        """Abort when the job was cancelled, reclaimed or its trail archived."""
        job = jobs.get(session, run.job_id)
        if job is None:
            raise JobOwnershipLostError(f"Job {run.job_id} disappeared")
        if job.status == JobStatus.CANCELLED.value:
            raise JobCancelledError(run.job_id)
        if job.status != JobStatus.PROCESSING.value or job.worker_id != self.worker_id:
            raise JobOwnershipLostError(f"Job {run.job_id} is {job.status} for worker {job.worker_id}")
        trail = trails.get(session, run.trail_id)
        if trail is None or trail.status == TrailStatus.ARCHIVED.value:
            jobs.apply(session, run.job_id, Cancel(at=utcnow()))
            session.commit()
            raise JobCancelledError(run.job_id)

    def _record_failure(self, message: TrailGenerationMessage, run: Optional[JobRun], exc: Exception) -> None:
        if isinstance(exc, TrailError):
            error = exc.kind
            retryable = exc.retryable
        else:
            error = "unexpected_error"
            retryable = True
        details: Dict[str, Any] = {
            "step": run.step if run else "load",
            "trail_id": run.trail_id if run else message.trail_id,
            "worker_id": self.worker_id,
            "exception": type(exc).__name__,
            "message": str(exc),
            "retryable": retryable,
        }
        if isinstance(exc, TrailGenerationError):
            details["failed_step"] = exc.step
        if isinstance(exc, StructuralContentError):
            details["diagnostics"] = exc.diagnostics

        with session_scope() as session:
            try:
                jobs.apply(session, message.job_id, Fail(error=error, details=details, at=utcnow()))
            except (InvalidJobTransitionError, StaleJobStateError) as transition_error:
                logger.warning("Could not record failure for job %s: %s", message.job_id, transition_error)

    async def _notify(
        self,
        notification_type: str,
        run: JobRun,
        *,
        result: Optional[ReconcileResult] = None,
        job_status: Optional[JobStatus] = None,
        error_message: Optional[str] = None,
    ) -> None:
        notification = TrailNotificationMessage(
            type=notification_type,
            trail_id=run.trail_id,
            student_id=run.student_id,
            job_id=run.job_id,
            trail_status=result.status.value if result else None,
            job_status=job_status.value if job_status else None,
            progress_percentage=float(result.progress.progress_percentage) if result else None,
            modules_generated=result.ready_modules if result else 0,
            total_modules=result.total_modules if result else 0,
            error_message=error_message,
        )
        await self.publisher.publish_notification(notification)


__all__ = ["JobOwnershipLostError", "JobRun", "TrailGenerationWorker"]
