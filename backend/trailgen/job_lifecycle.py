"""Pure state machine for trail generation jobs.

``transition(state, event)`` returns a new :class:`JobState` and never touches
persistence; :mod:`trailgen.repositories.jobs` loads and stores the snapshots.

``attempt_count`` is incremented when a worker claims the job, so a job with
``max_attempts = 5`` can be processed five times and its fifth failure is
terminal.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional, Union

from .errors import InvalidJobTransitionError


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class JobType(str, Enum):
    FULL_GENERATION = "full_generation"
    GAP_FILL = "gap_fill"
    REFRESH = "refresh"


ACTIVE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.PROCESSING})
RETRYABLE_STATUSES = frozenset({JobStatus.FAILED, JobStatus.QUEUED})


@dataclass(frozen=True)
class JobState:
    status: JobStatus
    attempt_count: int = 0
    max_attempts: int = 5
    worker_id: Optional[str] = None
    queued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    error_details: Any = None
    tokens_used: Optional[int] = None
    processing_time_ms: Optional[int] = None


@dataclass(frozen=True)
class Claim:
    worker_id: str
    at: datetime


@dataclass(frozen=True)
class Complete:
    at: datetime
    tokens_used: int = 0
    processing_time_ms: int = 0


@dataclass(frozen=True)
class Fail:
    error: str
    at: datetime
    details: Any = None


@dataclass(frozen=True)
class ScheduleRetry:
    next_retry_at: datetime


@dataclass(frozen=True)
class Cancel:
    at: datetime


@dataclass(frozen=True)
class ReclaimStale:
    at: datetime
    error: str = "stale_processing"


JobEvent = Union[Claim, Complete, Fail, ScheduleRetry, Cancel, ReclaimStale]


def can_retry(state: JobState) -> bool:
    return state.attempt_count < state.max_attempts and state.status in RETRYABLE_STATUSES


def is_terminal(state: JobState) -> bool:
    if state.status in (JobStatus.COMPLETED, JobStatus.CANCELLED):
        return True
    return state.status == JobStatus.FAILED and not can_retry(state)


def is_active(state: JobState) -> bool:
    return state.status in ACTIVE_STATUSES


def event_name(event: JobEvent) -> str:
    return type(event).__name__


def transition(state: JobState, event: JobEvent) -> JobState:
    """Apply ``event`` to ``state`` and return the resulting snapshot."""
    if isinstance(event, Claim):
        _require(state, event, JobStatus.QUEUED)
        if state.attempt_count >= state.max_attempts:
            _reject(state, event, "attempt budget exhausted")
        return replace(
            state,
            status=JobStatus.PROCESSING,
            attempt_count=state.attempt_count + 1,
            worker_id=event.worker_id,
            started_at=event.at,
            next_retry_at=None,
        )

    if isinstance(event, Complete):
        _require(state, event, JobStatus.PROCESSING)
        return replace(
            state,
            status=JobStatus.COMPLETED,
            completed_at=event.at,
            tokens_used=event.tokens_used,
            processing_time_ms=event.processing_time_ms,
        )

    if isinstance(event, Fail):
        _require(state, event, JobStatus.QUEUED, JobStatus.PROCESSING)
        return replace(
            state,
            status=JobStatus.FAILED,
            failed_at=event.at,
            last_error=event.error,
            error_details=normalize_error_details(event.details),
        )

    if isinstance(event, ScheduleRetry):
        if not can_retry(state):
            _reject(state, event, "job cannot be retried")
        return replace(state, status=JobStatus.QUEUED, next_retry_at=event.next_retry_at)

    if isinstance(event, Cancel):
        if is_terminal(state):
            _reject(state, event, "job already terminal")
        return replace(state, status=JobStatus.CANCELLED, completed_at=event.at, next_retry_at=None)

    if isinstance(event, ReclaimStale):
        _require(state, event, JobStatus.PROCESSING)
        if state.attempt_count < state.max_attempts:
            return replace(
                state,
                status=JobStatus.QUEUED,
                next_retry_at=event.at,
                last_error=event.error,
            )
        return replace(
            state,
            status=JobStatus.FAILED,
            failed_at=event.at,
            last_error=event.error,
            error_details=normalize_error_details(
                {"worker_id": state.worker_id, "started_at": _iso(state.started_at), "retryable": False}
            ),
        )

    raise TypeError(f"Unsupported job event: {event!r}")


def normalize_error_details(value: Any) -> Any:
    """Return ``value`` as a JSON-compatible document, or ``None`` when blank.

    Structured payloads pass through; strings that already hold a JSON object or
    array are parsed; any other string is kept as a JSON string value.
    """
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return json.loads(json.dumps(value, default=str))
    text = str(value).strip()
    if not text:
        return None
    if text[0] in "{[":
        try:
            return json.loads(text)
        except ValueError:
            return text
    return text


def retry_delay(attempt_count: int, *, base_seconds: float, max_seconds: float) -> timedelta:
    """Exponential backoff: ``base * 2 ** (attempt_count - 1)`` capped at ``max_seconds``."""
    exponent = max(attempt_count - 1, 0)
    return timedelta(seconds=min(max_seconds, base_seconds * (2**exponent)))


def failure_is_retryable(state: JobState) -> bool:
    details = state.error_details
    if isinstance(details, dict) and details.get("retryable") is False:
        return False
    return True


def _require(state: JobState, event: JobEvent, *allowed: JobStatus) -> None:
    if state.status not in allowed:
        expected = ", ".join(status.value for status in allowed)
        _reject(state, event, f"expected status in {{{expected}}}")


def _reject(state: JobState, event: JobEvent, reason: str) -> None:
    raise InvalidJobTransitionError(
        f"Cannot apply {event_name(event)} to job in {state.status.value}: {reason}"
    )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


__all__ = [
    "ACTIVE_STATUSES",
    "Cancel",
    "Claim",
    "Complete",
    "Fail",
    "JobEvent",
    "JobState",
    "JobStatus",
    "JobType",
    "ReclaimStale",
    "ScheduleRetry",
    "can_retry",
    "event_name",
    "failure_is_retryable",
    "is_active",
    "is_terminal",
    "normalize_error_details",
    "retry_delay",
    "transition",
]
