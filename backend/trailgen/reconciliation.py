"""Single entry point that re-derives module, trail and progress state.

Called after every lesson generation, lesson progress update and skeleton
build. Module statuses are recomputed from lessons first and the trail status
from the full set of module statuses afterwards, so the outcome does not depend
on which event triggered the run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from .db.base import utcnow
from .db.models import LessonModel
from .errors import TrailNotFoundError
from .repositories.trails import trails
from .telemetry import emit_event
from .trail_state import (
    LessonSnapshot,
    ModuleStatus,
    ProgressRollup,
    TrailStatus,
    module_status,
    rollup,
    trail_status,
)

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    trail_id: str
    previous_status: TrailStatus
    status: TrailStatus
    progress: ProgressRollup
    total_modules: int = 0
    ready_modules: int = 0
    modules_ready: List[str] = field(default_factory=list)
    modules_reopened: List[str] = field(default_factory=list)

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.status


def snapshot(lesson: LessonModel) -> LessonSnapshot:
    return LessonSnapshot(
        is_placeholder=lesson.is_placeholder,
        completed_at=lesson.completed_at,
        score=lesson.score,
        time_spent_seconds=lesson.time_spent_seconds or 0,
    )


def reconcile_trail(
    session: Session,
    trail_id: str,
    *,
    activity_at: Optional[datetime] = None,
) -> ReconcileResult:
    session.flush()
    trail = trails.get_with_tree(session, trail_id)
    if trail is None:
        raise TrailNotFoundError(trail_id)

    previous = TrailStatus(trail.status)
    result_ready: List[str] = []
    result_reopened: List[str] = []
    lessons: List[LessonSnapshot] = []
    module_statuses: List[ModuleStatus] = []

    for module in trail.modules:
        module_lessons = [snapshot(lesson) for lesson in module.lessons]
        lessons.extend(module_lessons)
        derived = module_status(module_lessons)
        if derived.value != module.status:
            if derived == ModuleStatus.READY:
                result_ready.append(module.id)
            else:
                result_reopened.append(module.id)
            module.status = derived.value
        module_statuses.append(derived)

    derived_trail = trail_status(module_statuses, previous)
    trail.status = derived_trail.value

    progress_values = rollup(lessons)
    progress = trails.ensure_progress(session, trail)
    progress.total_lessons = progress_values.total_lessons
    progress.lessons_completed = progress_values.lessons_completed
    progress.progress_percentage = progress_values.progress_percentage
    progress.average_score = progress_values.average_score
    progress.time_spent_minutes = progress_values.time_spent_minutes
    if activity_at is not None:
        progress.last_activity_at = activity_at
    progress.updated_at = utcnow()
    session.flush()

    result = ReconcileResult(
        trail_id=trail_id,
        previous_status=previous,
        status=derived_trail,
        progress=progress_values,
        total_modules=len(module_statuses),
        ready_modules=sum(1 for status in module_statuses if status == ModuleStatus.READY),
        modules_ready=result_ready,
        modules_reopened=result_reopened,
    )
    if result.status_changed or result_ready or result_reopened:
        emit_event(
            "trail_reconciled",
            trail_id=trail_id,
            from_status=previous,
            to_status=derived_trail,
            modules_ready=len(result_ready),
            progress_percentage=str(progress_values.progress_percentage),
        )
    logger.debug("Reconciled trail %s: %s -> %s", trail_id, previous.value, derived_trail.value)
    return result


__all__ = ["ReconcileResult", "reconcile_trail", "snapshot"]
