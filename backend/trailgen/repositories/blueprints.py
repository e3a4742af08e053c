"""Blueprint persistence and matching."""

from __future__ import annotations

from typing import Any, List, Mapping, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..blueprint_matcher import BlueprintCandidate, select_blueprint
from ..db.base import as_utc
from ..db.models import BlueprintModel, LevelModel
from ..hashing import blueprint_hash


class BlueprintRepository:
    def get(self, session: Session, blueprint_id: str) -> Optional[BlueprintModel]:
        return session.get(BlueprintModel, blueprint_id)

    def create(
        self,
        session: Session,
        *,
        language_code: str,
        level: LevelModel,
        structure: Mapping[str, Any],
        preferences_pattern: Optional[Mapping[str, Any]] = None,
        is_approved: bool = False,
    ) -> BlueprintModel:
        model = BlueprintModel(
            language_code=language_code.lower(),
            level_id=level.id,
            blueprint_hash=blueprint_hash(language_code, level.code, structure),
            structure=dict(structure),
            preferences_pattern=dict(preferences_pattern or {}),
            is_approved=is_approved,
            usage_count=0,
        )
        session.add(model)
        session.flush()
        return model

    def update_template(
        self,
        session: Session,
        blueprint_id: str,
        *,
        structure: Optional[Mapping[str, Any]] = None,
        preferences_pattern: Optional[Mapping[str, Any]] = None,
    ) -> BlueprintModel:
        model = self.get(session, blueprint_id)
        if model is None:
            raise ValueError(f"Unknown blueprint: {blueprint_id}")
        if model.is_approved:
            raise ValueError(f"Blueprint {blueprint_id} is approved and can no longer change.")
        if structure is not None:
            level = session.get(LevelModel, model.level_id)
            model.structure = dict(structure)
            model.blueprint_hash = blueprint_hash(model.language_code, level.code if level else "", structure)
        if preferences_pattern is not None:
            model.preferences_pattern = dict(preferences_pattern)
        session.flush()
        return model

    def approve(self, session: Session, blueprint_id: str) -> None:
        session.execute(update(BlueprintModel).where(BlueprintModel.id == blueprint_id).values(is_approved=True))

    def list_candidates(self, session: Session, *, language_code: str, level_id: str) -> List[BlueprintCandidate]:
        stmt = select(BlueprintModel).where(
            BlueprintModel.language_code == language_code.lower(),
            BlueprintModel.level_id == level_id,
            BlueprintModel.is_approved.is_(True),
        )
        return [
            BlueprintCandidate(
                id=model.id,
                language_code=model.language_code,
                level_id=model.level_id,
                preferences_pattern=model.preferences_pattern or {},
                is_approved=model.is_approved,
                usage_count=model.usage_count,
                avg_completion_rate=model.avg_completion_rate,
                created_at=as_utc(model.created_at),
            )
            for model in session.execute(stmt).scalars()
        ]

    def find_best_match(
        self,
        session: Session,
        *,
        language_code: str,
        level_id: str,
        preferences: Optional[Mapping[str, Any]],
    ) -> Optional[BlueprintModel]:
        candidates = self.list_candidates(session, language_code=language_code, level_id=level_id)
        chosen = select_blueprint(
            candidates,
            language_code=language_code,
            level_id=level_id,
            preferences=preferences,
        )
        if chosen is None:
            return None
        return self.get(session, chosen.id)

    def record_usage(self, session: Session, blueprint_id: str) -> None:
        stmt = (
            update(BlueprintModel)
            .where(BlueprintModel.id == blueprint_id)
            .values(usage_count=BlueprintModel.usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        session.execute(stmt)


blueprints = BlueprintRepository()


__all__ = ["BlueprintRepository", "blueprints"]
