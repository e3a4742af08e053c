"""Content addressing for trails, content blocks and blueprints."""

from __future__ import annotations

import hashlib
import json
from typing import Any, Mapping, Optional


def canonical_json(value: Any) -> str:
    """Serialize ``value`` with sorted keys and compact separators."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def _sha1(*parts: str) -> str:
    return hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()


def content_hash(
    descriptor_id: Optional[str],
    language_code: str,
    lesson_type: str,
    payload: Mapping[str, Any],
) -> str:
    return _sha1(descriptor_id or "", language_code.lower(), lesson_type, canonical_json(payload))


def trail_hash(
    student_id: str,
    language_code: str,
    level_code: str,
    preferences: Optional[Mapping[str, Any]],
    curriculum_version: str,
) -> str:
    return _sha1(
        student_id,
        language_code.lower(),
        level_code,
        canonical_json(preferences or {}),
        curriculum_version,
    )


def blueprint_hash(language_code: str, level_code: str, structure: Mapping[str, Any]) -> str:
    return _sha1(language_code.lower(), level_code, canonical_json(structure))


__all__ = ["blueprint_hash", "canonical_json", "content_hash", "trail_hash"]
