from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from trailgen import trail_service
from trailgen.blueprint_matcher import BlueprintCandidate, is_structural_subset, select_blueprint
from trailgen.db.session import session_scope
from trailgen.errors import StructuralContentError
from trailgen.repositories.blueprints import blueprints
from trailgen.repositories.curriculum import curriculum
from trailgen.repositories.trails import trails

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _candidate(identifier: str, **overrides) -> BlueprintCandidate:
    values = dict(
        id=identifier,
        language_code="es",
        level_id="level-a1",
        preferences_pattern={},
        is_approved=True,
        usage_count=0,
        avg_completion_rate=None,
        created_at=T0,
    )
    values.update(overrides)
    return BlueprintCandidate(**values)


def _select(candidates, preferences=None):
    return select_blueprint(candidates, language_code="es", level_id="level-a1", preferences=preferences)


def test_structural_subset_handles_nested_objects_and_arrays() -> None:
    value = {"focus": ["travel", "business"], "pace": {"minutes": 20, "days": 3}}
    assert is_structural_subset({}, value)
    assert is_structural_subset({"focus": ["travel"]}, value)
    assert is_structural_subset({"pace": {"minutes": 20}}, value)
    assert not is_structural_subset({"focus": ["music"]}, value)
    assert not is_structural_subset({"pace": {"minutes": 30}}, value)
    assert not is_structural_subset({"missing": 1}, value)
    assert not is_structural_subset({"flag": True}, {"flag": 1})


def test_highest_usage_wins() -> None:
    chosen = _select([_candidate("a", usage_count=3), _candidate("b", usage_count=9)])
    assert chosen is not None and chosen.id == "b"


def test_completion_rate_breaks_usage_ties_with_nulls_last() -> None:
    chosen = _select(
        [
            _candidate("no-rate", usage_count=5),
            _candidate("low", usage_count=5, avg_completion_rate=Decimal("40.00")),
            _candidate("high", usage_count=5, avg_completion_rate=Decimal("75.50")),
        ]
    )
    assert chosen is not None and chosen.id == "high"


def test_oldest_then_id_break_remaining_ties() -> None:
    chosen = _select(
        [
            _candidate("zz", created_at=T0),
            _candidate("aa", created_at=T0),
            _candidate("newer", created_at=T0 + timedelta(days=1)),
        ]
    )
    assert chosen is not None and chosen.id == "aa"


def test_unapproved_other_language_and_non_matching_patterns_are_ignored() -> None:
    candidates = [
        _candidate("draft", is_approved=False, usage_count=100),
        _candidate("french", language_code="fr", usage_count=100),
        _candidate("business", preferences_pattern={"focus": ["business"]}, usage_count=50),
        _candidate("generic", usage_count=1),
    ]
    assert _select(candidates, {"focus": ["travel"]}).id == "generic"
    assert _select(candidates, {"focus": ["business", "travel"]}).id == "business"
    assert _select([_candidate("draft", is_approved=False)]) is None


def test_repository_match_and_approval_lock(seeded) -> None:
    with session_scope() as session:
        level = curriculum.get_level(session, "a1")
        structure = {"modules": [{"competency": "speaking", "lessons": [{"descriptor": "A1-SPK-01"}]}]}
        draft = blueprints.create(session, language_code="ES", level=level, structure=structure)
        assert blueprints.find_best_match(session, language_code="es", level_id=level.id, preferences={}) is None

        blueprints.approve(session, draft.id)
        match = blueprints.find_best_match(session, language_code="es", level_id=level.id, preferences={"x": 1})
        assert match is not None and match.id == draft.id

        with pytest.raises(ValueError):
            blueprints.update_template(session, draft.id, structure={"modules": []})


def test_trail_built_from_approved_blueprint(seeded) -> None:
    structure = {
        "modules": [
            {
                "competency": "speaking",
                "title": "Travel talk",
                "lessons": [{"descriptor": "A1-SPK-02", "duration_minutes": 20}, {"type": "game"}],
            }
        ]
    }
    with session_scope() as session:
        level = curriculum.get_level(session, "A1")
        blueprint = blueprints.create(
            session,
            language_code="es",
            level=level,
            structure=structure,
            preferences_pattern={"focus": ["travel"]},
            is_approved=True,
        )

        generic = trail_service.generate_trail(session, "student-1", "es")
        assert generic.trail.blueprint_id is None

        outcome = trail_service.generate_trail(session, "student-2", "es", preferences={"focus": ["travel", "food"]})
        assert outcome.trail.blueprint_id == blueprint.id

        modules = trails.list_modules(session, outcome.trail.id)
        assert [module.title for module in modules] == ["Travel talk"]
        lessons = modules[0].lessons
        assert [lesson.lesson_type for lesson in lessons] == ["conversation", "game"]
        assert lessons[0].duration_minutes == 20
        assert lessons[1].title == "Speaking lesson 2"

        session.expire_all()
        assert blueprints.get(session, blueprint.id).usage_count == 1


def test_broken_blueprint_is_a_structural_error(seeded) -> None:
    with session_scope() as session:
        level = curriculum.get_level(session, "A1")
        blueprints.create(
            session,
            language_code="es",
            level=level,
            structure={"modules": [{"competency": "juggling"}]},
            is_approved=True,
        )
        with pytest.raises(StructuralContentError) as excinfo:
            trail_service.generate_trail(session, "student-1", "es")
        assert excinfo.value.diagnostics["competency"] == "juggling"
