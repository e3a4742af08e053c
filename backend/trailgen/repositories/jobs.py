"""Persistence for trail generation jobs.

State changes go through :func:`trailgen.job_lifecycle.transition`; this
module only loads snapshots and writes them back with a conditional update on
the status the transition started from.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ..db.base import as_utc, utcnow
from ..db.models import TrailGenerationJobModel
from ..errors import StaleJobStateError
from ..job_lifecycle import (
    ACTIVE_STATUSES,
    Cancel,
    Claim,
    JobEvent,
    JobState,
    JobStatus,
    JobType,
    event_name,
    failure_is_retryable,
    is_terminal,
    transition,
)
from ..telemetry import emit_event

logger = logging.getLogger(__name__)

_ACTIVE_VALUES = [status.value for status in ACTIVE_STATUSES]


def state_of(model: TrailGenerationJobModel) -> JobState:
    return JobState(
        status=JobStatus(model.status),
        attempt_count=model.attempt_count,
        max_attempts=model.max_attempts,
        worker_id=model.worker_id,
        queued_at=as_utc(model.queued_at),
        started_at=as_utc(model.started_at),
        completed_at=as_utc(model.completed_at),
        failed_at=as_utc(model.failed_at),
        next_retry_at=as_utc(model.next_retry_at),
        last_error=model.last_error,
        error_details=model.error_details,
        tokens_used=model.tokens_used,
        processing_time_ms=model.processing_time_ms,
    )


def _values_of(state: JobState) -> Dict[str, Any]:
    return {
        "status": state.status.value,
        "attempt_count": state.attempt_count,
        "max_attempts": state.max_attempts,
        "worker_id": state.worker_id,
        "started_at": state.started_at,
        "completed_at": state.completed_at,
        "failed_at": state.failed_at,
        "next_retry_at": state.next_retry_at,
        "last_error": state.last_error,
        "error_details": state.error_details,
        "tokens_used": state.tokens_used,
        "processing_time_ms": state.processing_time_ms,
    }


class JobRepository:
    def get(self, session: Session, job_id: str) -> Optional[TrailGenerationJobModel]:
        stmt = (
            select(TrailGenerationJobModel)
            .where(TrailGenerationJobModel.id == job_id)
            .execution_options(populate_existing=True)
        )
        return session.execute(stmt).scalar_one_or_none()

    def create(
        self,
        session: Session,
        *,
        trail_id: str,
        student_id: str,
        job_type: JobType,
        priority: int,
        max_attempts: int,
        gaps: Optional[List[Any]] = None,
    ) -> TrailGenerationJobModel:
        model = TrailGenerationJobModel(
            trail_id=trail_id,
            student_id=student_id,
            job_type=JobType(job_type).value,
            status=JobStatus.QUEUED.value,
            priority=priority,
            attempt_count=0,
            max_attempts=max_attempts,
            gaps=gaps,
            queued_at=utcnow(),
        )
        session.add(model)
        session.flush()
        return model

    def find_active_by_trail(self, session: Session, trail_id: str) -> Optional[TrailGenerationJobModel]:
        stmt = (
            select(TrailGenerationJobModel)
            .where(
                TrailGenerationJobModel.trail_id == trail_id,
                TrailGenerationJobModel.status.in_(_ACTIVE_VALUES),
            )
            .order_by(TrailGenerationJobModel.queued_at.desc())
            .limit(1)
        )
        return session.execute(stmt).scalar_one_or_none()

    def exists_active(self, session: Session, trail_id: str) -> bool:
        return self.find_active_by_trail(session, trail_id) is not None

    def latest_for_trail(self, session: Session, trail_id: str) -> Optional[TrailGenerationJobModel]:
        stmt = (
            select(TrailGenerationJobModel)
            .where(TrailGenerationJobModel.trail_id == trail_id)
            .order_by(TrailGenerationJobModel.queued_at.desc(), TrailGenerationJobModel.id.desc())
            .limit(1)
        )
        return session.execute(stmt).scalar_one_or_none()

    def apply(self, session: Session, job_id: str, event: JobEvent) -> JobState:
        """Transition ``job_id`` with ``event`` and persist the result."""
        model = self.get(session, job_id)
        if model is None:
            raise StaleJobStateError(f"Job {job_id} no longer exists")
        trail_id = model.trail_id
        current = state_of(model)
        updated = transition(current, event)

        stmt = (
            update(TrailGenerationJobModel)
            .where(
                TrailGenerationJobModel.id == job_id,
                TrailGenerationJobModel.status == current.status.value,
                TrailGenerationJobModel.attempt_count == current.attempt_count,
            )
            .values(**_values_of(updated))
            .execution_options(synchronize_session=False)
        )
        result = session.execute(stmt)
        if result.rowcount == 0:
            raise StaleJobStateError(f"Job {job_id} changed while applying {event_name(event)}")
        session.expire(model)

        emit_event(
            "trail_job_transition",
            job_id=job_id,
            trail_id=trail_id,
            transition=event_name(event),
            from_status=current.status,
            to_status=updated.status,
            attempt_count=updated.attempt_count,
        )
        return updated

    def claim(
        self,
        session: Session,
        job_id: str,
        worker_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[JobState]:
        """Mark the job PROCESSING for ``worker_id``; ``None`` when it is not claimable."""
        now = now or utcnow()
        model = self.get(session, job_id)
        if model is None:
            logger.warning("Job %s not found; skipping delivery", job_id)
            return None
        state = state_of(model)
        if state.status != JobStatus.QUEUED:
            logger.info("Job %s is %s; skipping duplicate delivery", job_id, state.status.value)
            return None
        if state.next_retry_at is not None and state.next_retry_at > now:
            logger.info("Job %s is not eligible before %s", job_id, state.next_retry_at.isoformat())
            return None
        if state.attempt_count >= state.max_attempts:
            logger.warning("Job %s has exhausted its %s attempts", job_id, state.max_attempts)
            return None
        try:
            return self.apply(session, job_id, Claim(worker_id=worker_id, at=now))
        except StaleJobStateError:
            logger.info("Job %s was claimed by another worker", job_id)
            return None

    def cancel_by_trail(self, session: Session, trail_id: str, *, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        stmt = select(TrailGenerationJobModel).where(
            TrailGenerationJobModel.trail_id == trail_id,
            TrailGenerationJobModel.status.in_(_ACTIVE_VALUES + [JobStatus.FAILED.value]),
        )
        cancelled = 0
        for model in list(session.execute(stmt).scalars()):
            if is_terminal(state_of(model)):
                continue
            self.apply(session, model.id, Cancel(at=now))
            cancelled += 1
        return cancelled

    def find_ready_for_retry(
        self, session: Session, *, limit: int = 100
    ) -> List[TrailGenerationJobModel]:
        stmt = (
            select(TrailGenerationJobModel)
            .where(
                TrailGenerationJobModel.status == JobStatus.FAILED.value,
                TrailGenerationJobModel.attempt_count < TrailGenerationJobModel.max_attempts,
            )
            .order_by(TrailGenerationJobModel.priority.asc(), TrailGenerationJobModel.failed_at.asc())
            .limit(limit)
        )
        return [model for model in session.execute(stmt).scalars() if failure_is_retryable(state_of(model))]

    def find_due_queued(
        self, session: Session, *, now: datetime, limit: int = 100
    ) -> List[TrailGenerationJobModel]:
        stmt = (
            select(TrailGenerationJobModel)
            .where(
                TrailGenerationJobModel.status == JobStatus.QUEUED.value,
                TrailGenerationJobModel.next_retry_at.is_not(None),
                TrailGenerationJobModel.next_retry_at <= now,
            )
            .order_by(TrailGenerationJobModel.priority.asc(), TrailGenerationJobModel.next_retry_at.asc())
            .limit(limit)
        )
        return list(session.execute(stmt).scalars())

    def clear_retry_marker(self, session: Session, job_id: str) -> None:
        stmt = (
            update(TrailGenerationJobModel)
            .where(
                TrailGenerationJobModel.id == job_id,
                TrailGenerationJobModel.status == JobStatus.QUEUED.value,
            )
            .values(next_retry_at=None)
        )
        session.execute(stmt)

    def find_stale_processing(
        self, session: Session, *, cutoff: datetime, limit: int = 100
    ) -> List[TrailGenerationJobModel]:
        stmt = (
            select(TrailGenerationJobModel)
            .where(
                TrailGenerationJobModel.status == JobStatus.PROCESSING.value,
                TrailGenerationJobModel.started_at < cutoff,
            )
            .order_by(TrailGenerationJobModel.started_at.asc())
            .limit(limit)
        )
        return list(session.execute(stmt).scalars())

    def count_by_status(self, session: Session) -> Dict[str, int]:
        stmt = select(TrailGenerationJobModel.status, func.count()).group_by(TrailGenerationJobModel.status)
        counts = {status.value: 0 for status in JobStatus}
        for status, total in session.execute(stmt):
            counts[status] = total
        return counts

    def sum_tokens_used_by_student(self, session: Session, student_id: str) -> int:
        stmt = select(func.coalesce(func.sum(TrailGenerationJobModel.tokens_used), 0)).where(
            TrailGenerationJobModel.student_id == student_id,
            TrailGenerationJobModel.status == JobStatus.COMPLETED.value,
        )
        return int(session.execute(stmt).scalar_one())


jobs = JobRepository()


__all__ = ["JobRepository", "jobs", "state_of"]
