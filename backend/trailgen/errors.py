"""Typed failures raised by the trail pipeline.

API-path errors carry the HTTP status the router maps them to. Generation
errors are captured into the job row by the worker and never reach a client.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class TrailError(Exception):
    """Base class for every pipeline failure."""

    status_code: int = 500
    retryable: bool = False
    kind: str = "trail_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TrailNotFoundError(TrailError):
    status_code = 404
    kind = "trail_not_found"

    def __init__(self, trail_id: str) -> None:
        super().__init__(f"Trail not found: {trail_id}")
        self.trail_id = trail_id


class TrailModuleNotFoundError(TrailError):
    status_code = 404
    kind = "module_not_found"

    def __init__(self, module_id: str) -> None:
        super().__init__(f"Module not found: {module_id}")
        self.module_id = module_id


class LessonNotFoundError(TrailError):
    status_code = 404
    kind = "lesson_not_found"

    def __init__(self, lesson_id: str) -> None:
        super().__init__(f"Lesson not found: {lesson_id}")
        self.lesson_id = lesson_id


class TrailLimitExceededError(TrailError):
    status_code = 409
    kind = "trail_limit_exceeded"

    def __init__(self, student_id: str, limit: int) -> None:
        super().__init__(
            f"Student {student_id} already has {limit} active trails. "
            "Archive a trail before generating a new one."
        )
        self.student_id = student_id
        self.limit = limit


class InvalidRefreshError(TrailError):
    status_code = 409
    kind = "invalid_refresh"


class UnknownLevelError(TrailError):
    status_code = 400
    kind = "unknown_level"

    def __init__(self, level_code: str) -> None:
        super().__init__(f"Unknown level code: {level_code}")
        self.level_code = level_code


class TrailGenerationError(TrailError):
    """Generation failure for one trail, retryable within the attempt budget."""

    retryable = True
    kind = "generation_error"

    def __init__(self, trail_id: Optional[str], step: str, message: str) -> None:
        super().__init__(message)
        self.trail_id = trail_id
        self.step = step


class ContentProviderError(TrailGenerationError):
    kind = "provider_error"


class ProviderTimeoutError(ContentProviderError):
    kind = "timeout"


class QuotaExhaustedError(ContentProviderError):
    kind = "quota_exhausted"


class StructuralContentError(TrailError):
    """Content that can never become valid by retrying."""

    kind = "structural_error"

    def __init__(self, message: str, diagnostics: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.diagnostics: Dict[str, Any] = dict(diagnostics or {})


class MalformedContentError(StructuralContentError):
    kind = "malformed_payload"


class ContentHashCollisionError(StructuralContentError):
    kind = "hash_collision"


class InvalidJobTransitionError(TrailError):
    status_code = 409
    kind = "invalid_job_transition"


class StaleJobStateError(TrailError):
    """Raised when a job row changed underneath a conditional update."""

    status_code = 409
    kind = "stale_job_state"


class JobCancelledError(TrailError):
    kind = "job_cancelled"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} was cancelled")
        self.job_id = job_id


__all__ = [
    "ContentHashCollisionError",
    "ContentProviderError",
    "InvalidJobTransitionError",
    "InvalidRefreshError",
    "JobCancelledError",
    "LessonNotFoundError",
    "MalformedContentError",
    "TrailModuleNotFoundError",
    "ProviderTimeoutError",
    "QuotaExhaustedError",
    "StaleJobStateError",
    "StructuralContentError",
    "TrailError",
    "TrailGenerationError",
    "TrailLimitExceededError",
    "TrailNotFoundError",
    "UnknownLevelError",
]
