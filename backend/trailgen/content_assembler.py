"""Builds the Trail -> Module -> Lesson tree and attaches lesson content."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from .db.models import (
    BlueprintModel,
    CompetencyModel,
    ContentBlockModel,
    LessonModel,
    TrailModel,
    TrailModuleModel,
)
from .errors import MalformedContentError, StructuralContentError
from .hashing import content_hash
from .repositories.content_blocks import content_blocks
from .repositories.curriculum import curriculum
from .repositories.trails import trails
from .telemetry import emit_event
from .trail_state import LessonType, lesson_type_for

logger = logging.getLogger(__name__)

DEFAULT_LESSON_MINUTES = 15
GENERIC_LESSONS_PER_MODULE = 3
_TITLE_LIMIT = 255


def _title(text: str) -> str:
    cleaned = " ".join(text.split())
    return cleaned if len(cleaned) <= _TITLE_LIMIT else cleaned[: _TITLE_LIMIT - 3] + "..."


def build_skeleton(
    session: Session,
    trail: TrailModel,
    blueprint: Optional[BlueprintModel] = None,
) -> List[TrailModuleModel]:
    """Create PENDING modules full of placeholder lessons for ``trail``."""
    if blueprint is not None:
        modules = _modules_from_blueprint(session, trail, blueprint)
    else:
        modules = _modules_from_curriculum(session, trail)
    trails.ensure_progress(session, trail)
    logger.info(
        "Built skeleton for trail %s: %d modules (%s)",
        trail.id,
        len(modules),
        f"blueprint {blueprint.id}" if blueprint is not None else "curriculum",
    )
    return modules


def add_gap_modules(session: Session, trail: TrailModel, competency_codes: Iterable[str]) -> List[TrailModuleModel]:
    """Append a module for every listed competency the trail does not cover yet."""
    covered = {module.competency_id for module in trails.list_modules(session, trail.id)}
    modules: List[TrailModuleModel] = []
    for code in competency_codes:
        competency = curriculum.get_competency(session, code)
        if competency is None:
            raise StructuralContentError(
                f"Unknown competency in gap list: {code}",
                diagnostics={"trail_id": trail.id, "competency": code},
            )
        if competency.id in covered:
            continue
        covered.add(competency.id)
        modules.append(_curriculum_module(session, trail, competency))
    return modules


def _modules_from_curriculum(session: Session, trail: TrailModel) -> List[TrailModuleModel]:
    return [
        _curriculum_module(session, trail, link.competency)
        for link in curriculum.list_level_competencies(session, trail.level_id)
    ]


def _curriculum_module(session: Session, trail: TrailModel, competency: CompetencyModel) -> TrailModuleModel:
    module = trails.add_module(session, trail, title=competency.name, competency_id=competency.id)
    lesson_type = lesson_type_for(competency.code).value
    descriptors = curriculum.list_descriptors(
        session,
        level_id=trail.level_id,
        competency_id=competency.id,
        language_code=trail.language_code,
    )
    if descriptors:
        for index, descriptor in enumerate(descriptors):
            trails.add_placeholder_lesson(
                session,
                module,
                title=_title(descriptor.description),
                lesson_type=lesson_type,
                order_index=index,
                descriptor_id=descriptor.id,
                duration_minutes=DEFAULT_LESSON_MINUTES,
            )
    else:
        for index in range(GENERIC_LESSONS_PER_MODULE):
            trails.add_placeholder_lesson(
                session,
                module,
                title=f"{competency.name} practice {index + 1}",
                lesson_type=lesson_type,
                order_index=index,
                duration_minutes=DEFAULT_LESSON_MINUTES,
            )
    return module


def _modules_from_blueprint(
    session: Session,
    trail: TrailModel,
    blueprint: BlueprintModel,
) -> List[TrailModuleModel]:
    structure = blueprint.structure or {}
    entries = structure.get("modules")
    if not isinstance(entries, list) or not entries:
        raise StructuralContentError(
            f"Blueprint {blueprint.id} has no modules",
            diagnostics={"blueprint_id": blueprint.id},
        )

    modules: List[TrailModuleModel] = []
    for position, entry in enumerate(entries):
        if not isinstance(entry, Mapping):
            raise StructuralContentError(
                f"Blueprint {blueprint.id} module {position} is not an object",
                diagnostics={"blueprint_id": blueprint.id, "position": position},
            )
        competency = _require_competency(session, blueprint, entry.get("competency"))
        module = trails.add_module(
            session,
            trail,
            title=str(entry.get("title") or competency.name),
            competency_id=competency.id,
        )
        for index, lesson_entry in enumerate(entry.get("lessons") or []):
            lesson_type, descriptor_id, title = _blueprint_lesson(session, blueprint, competency, lesson_entry, index)
            trails.add_placeholder_lesson(
                session,
                module,
                title=title,
                lesson_type=lesson_type,
                order_index=index,
                descriptor_id=descriptor_id,
                duration_minutes=int(lesson_entry.get("duration_minutes") or DEFAULT_LESSON_MINUTES),
            )
        modules.append(module)
    return modules


def _require_competency(session: Session, blueprint: BlueprintModel, code: Any) -> CompetencyModel:
    competency = curriculum.get_competency(session, str(code)) if code else None
    if competency is None:
        raise StructuralContentError(
            f"Blueprint {blueprint.id} references unknown competency {code!r}",
            diagnostics={"blueprint_id": blueprint.id, "competency": code},
        )
    return competency


def _blueprint_lesson(
    session: Session,
    blueprint: BlueprintModel,
    competency: CompetencyModel,
    entry: Mapping[str, Any],
    index: int,
) -> Tuple[str, Optional[str], str]:
    raw_type = entry.get("type") or lesson_type_for(competency.code).value
    try:
        lesson_type = LessonType(raw_type).value
    except ValueError as exc:
        raise StructuralContentError(
            f"Blueprint {blueprint.id} uses unknown lesson type {raw_type!r}",
            diagnostics={"blueprint_id": blueprint.id, "lesson_type": raw_type},
        ) from exc

    descriptor_id: Optional[str] = None
    title = entry.get("title")
    descriptor_code = entry.get("descriptor")
    if descriptor_code:
        descriptor = curriculum.get_descriptor(session, str(descriptor_code))
        if descriptor is None:
            raise StructuralContentError(
                f"Blueprint {blueprint.id} references unknown descriptor {descriptor_code!r}",
                diagnostics={"blueprint_id": blueprint.id, "descriptor": descriptor_code},
            )
        descriptor_id = descriptor.id
        title = title or descriptor.description
    return lesson_type, descriptor_id, _title(str(title or f"{competency.name} lesson {index + 1}"))


def validate_payload(payload: Any, *, lesson: LessonModel) -> Dict[str, Any]:
    if not isinstance(payload, dict) or not payload:
        raise MalformedContentError(
            f"Generated content for lesson {lesson.id} is not a non-empty JSON object",
            diagnostics={"lesson_id": lesson.id, "payload_type": type(payload).__name__},
        )
    return payload


def attach_block(session: Session, lesson: LessonModel, block: ContentBlockModel, *, created: bool) -> None:
    """Point ``lesson`` at ``block`` and count the reuse."""
    content_blocks.increment_usage(session, block.id)
    lesson.content = dict(block.payload)
    lesson.content_block_id = block.id
    lesson.is_placeholder = False
    session.flush()
    emit_event(
        "content_block_attached",
        lesson_id=lesson.id,
        content_block_id=block.id,
        created=created,
    )


def attach_generated_content(
    session: Session,
    lesson: LessonModel,
    payload: Any,
    *,
    language_code: str,
) -> Tuple[ContentBlockModel, bool]:
    document = validate_payload(payload, lesson=lesson)
    digest = content_hash(lesson.descriptor_id, language_code, lesson.lesson_type, document)
    block, created = content_blocks.get_or_create(
        session,
        content_hash=digest,
        descriptor_id=lesson.descriptor_id,
        language_code=language_code,
        lesson_type=lesson.lesson_type,
        payload=document,
    )
    attach_block(session, lesson, block, created=created)
    return block, created


def reuse_existing_content(
    session: Session,
    lesson: LessonModel,
    *,
    language_code: str,
) -> Optional[ContentBlockModel]:
    """Attach an approved block for the same descriptor, language and type, if any."""
    if lesson.descriptor_id is None:
        return None
    block = content_blocks.find_reusable(
        session,
        descriptor_id=lesson.descriptor_id,
        language_code=language_code,
        lesson_type=lesson.lesson_type,
    )
    if block is None:
        return None
    attach_block(session, lesson, block, created=False)
    return block


__all__ = [
    "DEFAULT_LESSON_MINUTES",
    "GENERIC_LESSONS_PER_MODULE",
    "add_gap_modules",
    "attach_block",
    "attach_generated_content",
    "build_skeleton",
    "reuse_existing_content",
    "validate_payload",
]
