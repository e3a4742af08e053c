from __future__ import annotations

from itertools import permutations

import pytest

from trailgen import trail_service
from trailgen.content_assembler import attach_generated_content
from trailgen.db.session import session_scope
from trailgen.reconciliation import reconcile_trail
from trailgen.repositories.trails import trails
from trailgen.trail_state import ModuleStatus, TrailStatus


@pytest.mark.parametrize("order", list(permutations(range(3))))
def test_modules_finishing_in_any_order_reach_the_same_state(seeded, order) -> None:
    with session_scope() as session:
        trail_id = trail_service.generate_trail(session, "student-1", "es", level_code="B1").trail.id

    observed = []
    for index in order:
        with session_scope() as session:
            module = trails.list_modules(session, trail_id)[index]
            for lesson in module.lessons:
                attach_generated_content(session, lesson, {"text": f"{module.title} {lesson.id}"}, language_code="es")
            result = reconcile_trail(session, trail_id)
            observed.append((result.status, result.ready_modules))
            assert result.modules_ready == [module.id]

    assert observed == [(TrailStatus.PARTIAL, 1), (TrailStatus.PARTIAL, 2), (TrailStatus.READY, 3)]

    with session_scope() as session:
        assert trail_service.get_trail(session, trail_id).status == TrailStatus.READY.value
        modules = trails.list_modules(session, trail_id)
        assert [module.status for module in modules] == [ModuleStatus.READY.value] * 3
        progress = trail_service.get_progress(session, trail_id)
        assert progress.total_lessons == 3
        assert progress.lessons_completed == 0


def test_reconcile_is_idempotent(seeded, events) -> None:
    with session_scope() as session:
        trail_id = trail_service.generate_trail(session, "student-1", "es", level_code="B1").trail.id

    with session_scope() as session:
        again = reconcile_trail(session, trail_id)
        assert again.status == TrailStatus.GENERATING
        assert again.status_changed is False
        assert again.modules_ready == [] and again.modules_reopened == []
    assert "trail_reconciled" not in [event.name for event in events]
