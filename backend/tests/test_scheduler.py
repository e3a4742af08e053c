from __future__ import annotations

import asyncio
from datetime import timedelta

from conftest import RecordingPublisher

from trailgen import trail_service
from trailgen.db.base import as_utc, utcnow
from trailgen.db.session import session_scope
from trailgen.job_lifecycle import Fail, JobStatus
from trailgen.job_queue import dispatch, mark_due_for_republish
from trailgen.repositories.jobs import jobs
from trailgen.scheduler import GenerationScheduler


def _enqueued_job() -> str:
    with session_scope() as session:
        outcome = trail_service.generate_trail(session, "student-1", "es", level_code="B1")
        return outcome.message.job_id


def _claim(job_id: str, worker_id: str = "worker-a") -> None:
    with session_scope() as session:
        assert jobs.claim(session, job_id, worker_id) is not None


def test_stale_processing_job_is_requeued_and_republished(seeded, publisher, events) -> None:
    job_id = _enqueued_job()
    _claim(job_id)
    scheduler = GenerationScheduler(publisher)
    later = utcnow() + timedelta(hours=2)

    assert scheduler.sweep_stale(utcnow()) == 0
    assert scheduler.sweep_stale(later) == 1

    with session_scope() as session:
        job = jobs.get(session, job_id)
        assert job.status == JobStatus.QUEUED.value
        assert job.last_error == "stale_processing"
        assert job.attempt_count == 1

    assert asyncio.run(scheduler.republish_due(later)) == 1
    assert [message.job_id for message in publisher.generation] == [job_id]
    assert "trail_job_reclaimed" in [event.name for event in events]

    with session_scope() as session:
        assert jobs.get(session, job_id).next_retry_at is None


def test_stale_job_with_spent_budget_fails_permanently(seeded, publisher) -> None:
    job_id = _enqueued_job()
    with session_scope() as session:
        jobs.get(session, job_id).max_attempts = 1
    _claim(job_id)

    scheduler = GenerationScheduler(publisher)
    assert scheduler.sweep_stale(utcnow() + timedelta(hours=2)) == 1

    with session_scope() as session:
        job = jobs.get(session, job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.error_details["worker_id"] == "worker-a"
        assert job.error_details["retryable"] is False

    assert scheduler.schedule_retries(utcnow()) == 0


def test_retry_backoff_doubles_per_attempt(seeded, publisher) -> None:
    job_id = _enqueued_job()
    scheduler = GenerationScheduler(publisher)
    base = scheduler.settings.retry_base_delay_seconds

    for attempt in (1, 2):
        _claim(job_id)
        with session_scope() as session:
            jobs.apply(session, job_id, Fail(error="timeout", at=utcnow(), details={"retryable": True}))
        now = utcnow()
        assert scheduler.schedule_retries(now) == 1
        with session_scope() as session:
            job = jobs.get(session, job_id)
            assert job.status == JobStatus.QUEUED.value
            assert as_utc(job.next_retry_at) == now + timedelta(seconds=base * 2 ** (attempt - 1))
            job.next_retry_at = None


def test_reaper_picks_up_jobs_whose_publish_failed(seeded) -> None:
    with session_scope() as session:
        message = trail_service.generate_trail(session, "student-1", "es", level_code="B1").message

    down = RecordingPublisher(fail_generation=True)
    assert asyncio.run(dispatch(down, message)) is False
    assert asyncio.run(GenerationScheduler(down).republish_due(utcnow() + timedelta(seconds=1))) == 0

    up = RecordingPublisher()
    tick = asyncio.run(GenerationScheduler(up).run_once(utcnow() + timedelta(seconds=1)))
    assert tick.republished == 1
    assert tick.reclaimed == 0 and tick.scheduled == 0
    assert [sent.job_id for sent in up.generation] == [message.job_id]


def test_failed_job_waits_while_gap_fill_holds_the_trail(seeded, publisher) -> None:
    with session_scope() as session:
        first = trail_service.generate_trail(session, "s1", "es", level_code="B1")
        trail_id, failed_id = first.trail.id, first.message.job_id
    _claim(failed_id)
    with session_scope() as session:
        jobs.apply(session, failed_id, Fail(error="timeout", at=utcnow(), details={"retryable": True}))
        gap_fill = trail_service.request_gap_fill(session, trail_id, ["grammar"])
        second = trail_service.generate_trail(session, "s2", "es", level_code="B1")
        due_id = second.message.job_id
    mark_due_for_republish(due_id)

    tick = asyncio.run(GenerationScheduler(publisher).run_once(utcnow() + timedelta(seconds=1)))

    assert tick.scheduled == 0
    assert tick.republished == 1
    assert [message.job_id for message in publisher.generation] == [due_id]
    with session_scope() as session:
        assert jobs.get(session, failed_id).status == JobStatus.FAILED.value
        assert jobs.get(session, gap_fill.job_id).status == JobStatus.QUEUED.value
