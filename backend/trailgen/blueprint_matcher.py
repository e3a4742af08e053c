"""Deterministic selection of reusable trail blueprints."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional, Sequence


@dataclass(frozen=True)
class BlueprintCandidate:
    id: str
    language_code: str
    level_id: str
    preferences_pattern: Mapping[str, Any]
    is_approved: bool
    usage_count: int
    avg_completion_rate: Optional[Decimal]
    created_at: datetime


def is_structural_subset(pattern: Any, value: Any) -> bool:
    """Return True when ``pattern`` is contained in ``value``.

    Objects match when every key of ``pattern`` exists in ``value`` with a
    contained value, arrays match when every pattern element is contained in
    some element of ``value``, and scalars compare by equality.
    """
    if isinstance(pattern, Mapping):
        if not isinstance(value, Mapping):
            return False
        return all(key in value and is_structural_subset(item, value[key]) for key, item in pattern.items())
    if isinstance(pattern, (list, tuple)):
        if not isinstance(value, (list, tuple)):
            return False
        return all(any(is_structural_subset(item, candidate) for candidate in value) for item in pattern)
    if isinstance(pattern, bool) or isinstance(value, bool):
        return type(pattern) is type(value) and pattern == value
    return pattern == value


def ranking_key(candidate: BlueprintCandidate) -> tuple:
    rate = candidate.avg_completion_rate
    return (
        -candidate.usage_count,
        rate is None,
        -(Decimal(rate) if rate is not None else Decimal(0)),
        candidate.created_at,
        candidate.id,
    )


def select_blueprint(
    candidates: Iterable[BlueprintCandidate],
    *,
    language_code: str,
    level_id: str,
    preferences: Optional[Mapping[str, Any]],
) -> Optional[BlueprintCandidate]:
    prefs = preferences or {}
    language = language_code.lower()
    eligible: Sequence[BlueprintCandidate] = [
        candidate
        for candidate in candidates
        if candidate.is_approved
        and candidate.language_code.lower() == language
        and candidate.level_id == level_id
        and is_structural_subset(candidate.preferences_pattern or {}, prefs)
    ]
    if not eligible:
        return None
    return min(eligible, key=ranking_key)


__all__ = ["BlueprintCandidate", "is_structural_subset", "ranking_key", "select_blueprint"]
