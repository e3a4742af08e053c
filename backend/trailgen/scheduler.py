"""Supervisory loop for retries and stale jobs.

Each tick runs three passes in order:

1. stale sweep: PROCESSING jobs whose start time is older than the heartbeat
   window go back to QUEUED, or to FAILED once their attempts are exhausted;
2. retry scheduling: retryable FAILED jobs are re-queued with an exponential
   ``next_retry_at``;
3. reaper: QUEUED jobs whose ``next_retry_at`` has passed are republished.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from .broker import MessagePublisher, TrailGenerationMessage
from .config import Settings, get_settings
from .db.base import utcnow
from .db.session import session_scope
from .errors import InvalidJobTransitionError, StaleJobStateError
from .job_queue import build_message
from .job_lifecycle import ReclaimStale, ScheduleRetry, retry_delay
from .repositories.jobs import jobs, state_of
from .repositories.trails import trails
from .telemetry import emit_event

logger = logging.getLogger(__name__)


@dataclass
class SchedulerTick:
    reclaimed: int = 0
    scheduled: int = 0
    republished: int = 0


class GenerationScheduler:
    def __init__(self, publisher: MessagePublisher, *, settings: Optional[Settings] = None) -> None:
        self.publisher = publisher
        self.settings = settings or get_settings()
        self._running = False

    def sweep_stale(self, now: datetime) -> int:
        cutoff = now - timedelta(seconds=self.settings.worker_heartbeat_timeout_seconds)
        reclaimed = 0
        with session_scope() as session:
            for model in jobs.find_stale_processing(session, cutoff=cutoff):
                previous_worker = model.worker_id
                try:
                    state = jobs.apply(session, model.id, ReclaimStale(at=now))
                except (InvalidJobTransitionError, StaleJobStateError) as exc:
                    logger.info("Skipping stale job %s: %s", model.id, exc)
                    continue
                reclaimed += 1
                emit_event(
                    "trail_job_reclaimed",
                    job_id=model.id,
                    worker_id=previous_worker,
                    status=state.status,
                    attempt_count=state.attempt_count,
                )
                logger.warning(
                    "Reclaimed stale job %s from worker %s -> %s",
                    model.id,
                    previous_worker,
                    state.status.value,
                )
        return reclaimed

    def schedule_retries(self, now: datetime) -> int:
        scheduled = 0
        with session_scope() as session:
            for model in jobs.find_ready_for_retry(session):
                attempts = state_of(model).attempt_count
                next_retry_at = now + retry_delay(
                    attempts,
                    base_seconds=self.settings.retry_base_delay_seconds,
                    max_seconds=self.settings.retry_max_delay_seconds,
                )
                if jobs.exists_active(session, model.trail_id):
                    logger.info("Skipping retry for job %s: trail %s already has an active job", model.id, model.trail_id)
                    continue
                savepoint = session.begin_nested()
                try:
                    jobs.apply(session, model.id, ScheduleRetry(next_retry_at=next_retry_at))
                except (InvalidJobTransitionError, StaleJobStateError) as exc:
                    savepoint.rollback()
                    logger.info("Skipping retry for job %s: %s", model.id, exc)
                    continue
                except IntegrityError as exc:
                    savepoint.rollback()
                    logger.warning("Retry for job %s lost a race for trail %s: %s", model.id, model.trail_id, exc.orig)
                    continue
                savepoint.commit()
                scheduled += 1
                emit_event(
                    "trail_job_retry_scheduled",
                    job_id=model.id,
                    attempt_count=attempts,
                    next_retry_at=next_retry_at,
                )
        return scheduled

    def collect_due(self, now: datetime) -> List[TrailGenerationMessage]:
        messages: List[TrailGenerationMessage] = []
        with session_scope() as session:
            for model in jobs.find_due_queued(session, now=now):
                trail = trails.get(session, model.trail_id)
                if trail is None:
                    continue
                messages.append(build_message(session, model, trail))
        return messages

    async def republish_due(self, now: datetime) -> int:
        republished = 0
        for message in self.collect_due(now):
            if not await self.publisher.publish_generation(message):
                continue
            with session_scope() as session:
                jobs.clear_retry_marker(session, message.job_id)
            republished += 1
        return republished

    async def run_once(self, now: Optional[datetime] = None) -> SchedulerTick:
        now = now or utcnow()
        tick = SchedulerTick(
            reclaimed=self.sweep_stale(now),
            scheduled=self.schedule_retries(now),
        )
        tick.republished = await self.republish_due(now)
        if tick.reclaimed or tick.scheduled or tick.republished:
            logger.info(
                "Scheduler tick: reclaimed=%d scheduled=%d republished=%d",
                tick.reclaimed,
                tick.scheduled,
                tick.republished,
            )
        return tick

    async def run_forever(self, interval: Optional[float] = None) -> None:
        interval = interval if interval is not None else self.settings.scheduler_interval_seconds
        self._running = True
        while self._running:
            try:
                await self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("Scheduler tick failed")
            await asyncio.sleep(interval)

    def stop(self) -> None:
        self._running = False


__all__ = ["GenerationScheduler", "SchedulerTick"]
