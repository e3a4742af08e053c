from __future__ import annotations

from decimal import Decimal

import pytest

from trailgen import trail_service
from trailgen.content_assembler import attach_generated_content, reuse_existing_content
from trailgen.db.session import session_scope
from trailgen.errors import ContentHashCollisionError, MalformedContentError
from trailgen.hashing import content_hash, trail_hash
from trailgen.repositories.content_blocks import content_blocks
from trailgen.repositories.trails import trails

PAYLOAD = {"objective": "Write a short postcard", "steps": [{"title": "Plan", "body": "List three ideas."}]}


def _first_lesson(session, student_id: str):
    outcome = trail_service.generate_trail(session, student_id, "es", level_code="B1")
    module = trails.list_modules(session, outcome.trail.id)[0]
    return module.lessons[0]


def test_hashes_ignore_key_order_and_language_case() -> None:
    reordered = {"steps": PAYLOAD["steps"], "objective": PAYLOAD["objective"]}
    assert content_hash("d-1", "ES", "WRITING", PAYLOAD) == content_hash("d-1", "es", "WRITING", reordered)
    assert content_hash("d-1", "es", "WRITING", PAYLOAD) != content_hash("d-2", "es", "WRITING", PAYLOAD)
    assert trail_hash("s", "ES", "A1", {"b": 1, "a": 2}, "1.0.0") == trail_hash("s", "es", "A1", {"a": 2, "b": 1}, "1.0.0")


def test_identical_content_is_stored_once(seeded, events) -> None:
    with session_scope() as session:
        first = _first_lesson(session, "student-1")
        second = _first_lesson(session, "student-2")

        block_a, created_a = attach_generated_content(session, first, PAYLOAD, language_code="es")
        block_b, created_b = attach_generated_content(session, second, PAYLOAD, language_code="es")

        assert created_a is True and created_b is False
        assert block_a.id == block_b.id
        assert first.content_block_id == second.content_block_id == block_a.id
        assert not first.is_placeholder and second.content == PAYLOAD

        session.expire_all()
        assert content_blocks.get(session, block_a.id).usage_count == 2

    attached = [event for event in events if event.name == "content_block_attached"]
    assert [event.payload["created"] for event in attached] == [True, False]


def test_losing_an_insert_race_attaches_to_the_winner(seeded, monkeypatch) -> None:
    with session_scope() as session:
        first = _first_lesson(session, "student-1")
        second = _first_lesson(session, "student-2")
        winner, _ = attach_generated_content(session, first, PAYLOAD, language_code="es")

        original = content_blocks.find_by_hash
        calls = {"count": 0}

        def racing_find(session_, digest):
            calls["count"] += 1
            if calls["count"] == 1:
                return None
            return original(session_, digest)

        monkeypatch.setattr(content_blocks, "find_by_hash", racing_find)
        block, created = attach_generated_content(session, second, PAYLOAD, language_code="es")

        assert created is False
        assert block.id == winner.id
        assert second.content_block_id == winner.id


def test_hash_collision_with_different_payload_is_structural(seeded) -> None:
    with session_scope() as session:
        lesson = _first_lesson(session, "student-1")
        digest = content_hash(lesson.descriptor_id, "es", lesson.lesson_type, PAYLOAD)
        content_blocks.get_or_create(
            session,
            content_hash=digest,
            descriptor_id=lesson.descriptor_id,
            language_code="es",
            lesson_type=lesson.lesson_type,
            payload={"objective": "something else"},
        )

        with pytest.raises(ContentHashCollisionError) as excinfo:
            attach_generated_content(session, lesson, PAYLOAD, language_code="es")

        assert excinfo.value.retryable is False
        assert excinfo.value.diagnostics["content_hash"] == digest
        assert lesson.is_placeholder


@pytest.mark.parametrize("payload", [None, {}, ["not", "an", "object"], "text"])
def test_malformed_payload_is_rejected(seeded, payload) -> None:
    with session_scope() as session:
        lesson = _first_lesson(session, "student-1")
        with pytest.raises(MalformedContentError):
            attach_generated_content(session, lesson, payload, language_code="es")


def test_approved_block_is_reused_for_the_same_descriptor(seeded) -> None:
    with session_scope() as session:
        first = _first_lesson(session, "student-1")
        second = _first_lesson(session, "student-2")
        assert reuse_existing_content(session, first, language_code="es") is None

        block, _ = attach_generated_content(session, first, PAYLOAD, language_code="es")
        content_blocks.approve(session, block.id, quality_score=Decimal("4.50"))

        reused = reuse_existing_content(session, second, language_code="es")
        assert reused is not None and reused.id == block.id
        assert second.content == PAYLOAD
