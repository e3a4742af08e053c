from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from itertools import permutations

import pytest

from trailgen.trail_state import (
    LessonSnapshot,
    LessonType,
    ModuleStatus,
    TrailStatus,
    complete_lesson,
    lesson_type_for,
    module_status,
    rollup,
    trail_status,
)

AT = datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)


def _lesson(placeholder: bool = False, **kwargs) -> LessonSnapshot:
    return LessonSnapshot(is_placeholder=placeholder, **kwargs)


def test_module_ready_only_when_every_lesson_has_content() -> None:
    assert module_status([_lesson(), _lesson()]) == ModuleStatus.READY
    assert module_status([_lesson(), _lesson(placeholder=True)]) == ModuleStatus.PENDING
    assert module_status([]) == ModuleStatus.PENDING


def test_trail_status_follows_module_counts() -> None:
    pending, ready = ModuleStatus.PENDING, ModuleStatus.READY
    assert trail_status([pending, pending, pending]) == TrailStatus.GENERATING
    assert trail_status([ready, pending, pending]) == TrailStatus.PARTIAL
    assert trail_status([ready, ready, ready]) == TrailStatus.READY
    assert trail_status([]) == TrailStatus.GENERATING


@pytest.mark.parametrize("ready", [0, 1, 2, 3])
def test_trail_status_ignores_module_order(ready: int) -> None:
    statuses = [ModuleStatus.READY] * ready + [ModuleStatus.PENDING] * (3 - ready)
    derived = {trail_status(list(order), TrailStatus.GENERATING) for order in permutations(statuses)}
    expected = {0: TrailStatus.GENERATING, 3: TrailStatus.READY}.get(ready, TrailStatus.PARTIAL)
    assert derived == {expected}


def test_trail_status_reopens_when_a_module_goes_back_to_pending() -> None:
    assert trail_status([ModuleStatus.READY, ModuleStatus.PENDING], TrailStatus.READY) == TrailStatus.PARTIAL


def test_archived_trail_stays_archived() -> None:
    assert trail_status([ModuleStatus.READY], TrailStatus.ARCHIVED) == TrailStatus.ARCHIVED


def test_complete_lesson_is_last_write_wins() -> None:
    first = complete_lesson(_lesson(), at=AT, score=Decimal("90"), time_spent_seconds=300)
    later = datetime(2026, 10, 19, tzinfo=timezone.utc)
    second = complete_lesson(first, at=later, score=Decimal("40"))

    assert second.completed_at == later
    assert second.score == Decimal("40")
    assert second.time_spent_seconds == 300


def test_rollup_rounds_half_up_to_two_places() -> None:
    lessons = [
        _lesson(completed_at=AT, score=Decimal("80"), time_spent_seconds=125),
        _lesson(completed_at=AT, score=Decimal("85.01"), time_spent_seconds=60),
        _lesson(time_spent_seconds=10),
    ]
    result = rollup(lessons)

    assert result.total_lessons == 3
    assert result.lessons_completed == 2
    assert result.progress_percentage == Decimal("66.67")
    assert result.average_score == Decimal("82.51")
    assert result.time_spent_minutes == 3


def test_rollup_of_empty_trail() -> None:
    result = rollup([])
    assert result.progress_percentage == Decimal("0.00")
    assert result.average_score is None


def test_lesson_type_mapping_defaults_to_interactive() -> None:
    assert lesson_type_for("Speaking") == LessonType.CONVERSATION
    assert lesson_type_for("vocabulary") == LessonType.FLASHCARD
    assert lesson_type_for("pronunciation") == LessonType.INTERACTIVE
    assert lesson_type_for(None) == LessonType.INTERACTIVE
