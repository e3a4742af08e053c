"""Derived readiness for trails, modules and lessons.

Everything here is pure; :func:`trailgen.reconciliation.reconcile_trail`
applies these rules to persisted rows.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Iterable, Optional, Sequence


class TrailStatus(str, Enum):
    GENERATING = "GENERATING"
    PARTIAL = "PARTIAL"
    READY = "READY"
    ARCHIVED = "ARCHIVED"


class ModuleStatus(str, Enum):
    PENDING = "PENDING"
    READY = "READY"


class LessonType(str, Enum):
    INTERACTIVE = "interactive"
    VIDEO = "video"
    READING = "reading"
    EXERCISE = "exercise"
    CONVERSATION = "conversation"
    FLASHCARD = "flashcard"
    GAME = "game"


class RefreshReason(str, Enum):
    LEVEL_CHANGE = "level_change"
    PREFERENCES_UPDATE = "preferences_update"
    CURRICULUM_UPDATE = "curriculum_update"
    MANUAL_REQUEST = "manual_request"


LESSON_TYPE_BY_COMPETENCY = {
    "speaking": LessonType.CONVERSATION,
    "listening": LessonType.VIDEO,
    "reading": LessonType.READING,
    "writing": LessonType.EXERCISE,
    "vocabulary": LessonType.FLASHCARD,
    "grammar": LessonType.INTERACTIVE,
}

_TWO_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class LessonSnapshot:
    is_placeholder: bool
    completed_at: Optional[datetime] = None
    score: Optional[Decimal] = None
    time_spent_seconds: int = 0

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None


@dataclass(frozen=True)
class ProgressRollup:
    total_lessons: int
    lessons_completed: int
    progress_percentage: Decimal
    average_score: Optional[Decimal]
    time_spent_minutes: int


def lesson_type_for(competency_code: Optional[str]) -> LessonType:
    if not competency_code:
        return LessonType.INTERACTIVE
    return LESSON_TYPE_BY_COMPETENCY.get(competency_code.lower(), LessonType.INTERACTIVE)


def module_status(lessons: Sequence[LessonSnapshot]) -> ModuleStatus:
    if lessons and not any(lesson.is_placeholder for lesson in lessons):
        return ModuleStatus.READY
    return ModuleStatus.PENDING


def trail_status(module_statuses: Iterable[ModuleStatus], current: Optional[TrailStatus] = None) -> TrailStatus:
    """Derive the trail status; an archived trail stays archived."""
    if current == TrailStatus.ARCHIVED:
        return TrailStatus.ARCHIVED
    statuses = list(module_statuses)
    ready = sum(1 for status in statuses if status == ModuleStatus.READY)
    if ready == 0:
        return TrailStatus.GENERATING
    if ready == len(statuses):
        return TrailStatus.READY
    return TrailStatus.PARTIAL


def complete_lesson(
    lesson: LessonSnapshot,
    *,
    at: datetime,
    score: Optional[Decimal] = None,
    time_spent_seconds: Optional[int] = None,
) -> LessonSnapshot:
    """Last write wins: every call overwrites completion time, score and time spent."""
    return replace(
        lesson,
        completed_at=at,
        score=score,
        time_spent_seconds=time_spent_seconds if time_spent_seconds is not None else lesson.time_spent_seconds,
    )


def rollup(lessons: Sequence[LessonSnapshot]) -> ProgressRollup:
    total = len(lessons)
    completed = [lesson for lesson in lessons if lesson.is_completed]
    if total:
        percentage = (Decimal(len(completed)) * 100 / Decimal(total)).quantize(_TWO_PLACES, ROUND_HALF_UP)
    else:
        percentage = Decimal("0.00")

    scores = [Decimal(lesson.score) for lesson in completed if lesson.score is not None]
    average: Optional[Decimal] = None
    if scores:
        average = (sum(scores, Decimal(0)) / len(scores)).quantize(_TWO_PLACES, ROUND_HALF_UP)

    seconds = sum(lesson.time_spent_seconds or 0 for lesson in lessons)
    return ProgressRollup(
        total_lessons=total,
        lessons_completed=len(completed),
        progress_percentage=percentage,
        average_score=average,
        time_spent_minutes=seconds // 60,
    )


__all__ = [
    "LESSON_TYPE_BY_COMPETENCY",
    "LessonSnapshot",
    "LessonType",
    "ModuleStatus",
    "ProgressRollup",
    "RefreshReason",
    "TrailStatus",
    "complete_lesson",
    "lesson_type_for",
    "module_status",
    "rollup",
    "trail_status",
]
