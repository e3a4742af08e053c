"""Read-mostly access to the curriculum library."""

from __future__ import annotations

from typing import List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ..db.models import (
    CompetencyModel,
    DescriptorModel,
    LevelCompetencyModel,
    LevelModel,
)


class CurriculumRepository:
    """Levels, competencies and can-do descriptors."""

    def get_level(self, session: Session, code: str) -> Optional[LevelModel]:
        stmt = select(LevelModel).where(LevelModel.code == code.strip().upper())
        return session.execute(stmt).scalar_one_or_none()

    def get_level_by_id(self, session: Session, level_id: str) -> Optional[LevelModel]:
        return session.get(LevelModel, level_id)

    def get_competency(self, session: Session, code: str) -> Optional[CompetencyModel]:
        stmt = select(CompetencyModel).where(CompetencyModel.code == code.strip().lower())
        return session.execute(stmt).scalar_one_or_none()

    def get_descriptor(self, session: Session, code: str) -> Optional[DescriptorModel]:
        stmt = select(DescriptorModel).where(DescriptorModel.code == code)
        return session.execute(stmt).scalar_one_or_none()

    def list_level_competencies(self, session: Session, level_id: str) -> List[LevelCompetencyModel]:
        stmt = (
            select(LevelCompetencyModel)
            .join(CompetencyModel, LevelCompetencyModel.competency_id == CompetencyModel.id)
            .where(LevelCompetencyModel.level_id == level_id)
            .order_by(
                LevelCompetencyModel.weight.desc(),
                CompetencyModel.order_index.asc(),
                CompetencyModel.code.asc(),
            )
        )
        return list(session.execute(stmt).scalars())

    def list_descriptors(
        self,
        session: Session,
        *,
        level_id: str,
        competency_id: str,
        language_code: str,
        core_only: bool = True,
    ) -> List[DescriptorModel]:
        """Descriptors without a language apply to every language."""
        stmt = select(DescriptorModel).where(
            DescriptorModel.level_id == level_id,
            DescriptorModel.competency_id == competency_id,
            or_(
                DescriptorModel.language_code.is_(None),
                DescriptorModel.language_code == language_code.lower(),
            ),
        )
        if core_only:
            stmt = stmt.where(DescriptorModel.is_core.is_(True))
        stmt = stmt.order_by(DescriptorModel.order_index.asc(), DescriptorModel.code.asc())
        return list(session.execute(stmt).scalars())

    def upsert_level(self, session: Session, *, code: str, name: str, order_index: int = 0) -> LevelModel:
        model = self.get_level(session, code)
        if model is None:
            model = LevelModel(code=code.strip().upper())
            session.add(model)
        model.name = name
        model.order_index = order_index
        session.flush()
        return model

    def upsert_competency(
        self, session: Session, *, code: str, name: str, order_index: int = 0
    ) -> CompetencyModel:
        model = self.get_competency(session, code)
        if model is None:
            model = CompetencyModel(code=code.strip().lower())
            session.add(model)
        model.name = name
        model.order_index = order_index
        session.flush()
        return model

    def link_level_competency(
        self, session: Session, level: LevelModel, competency: CompetencyModel, *, weight: int = 1
    ) -> LevelCompetencyModel:
        stmt = select(LevelCompetencyModel).where(
            LevelCompetencyModel.level_id == level.id,
            LevelCompetencyModel.competency_id == competency.id,
        )
        model = session.execute(stmt).scalar_one_or_none()
        if model is None:
            model = LevelCompetencyModel(level_id=level.id, competency_id=competency.id)
            session.add(model)
        model.weight = weight
        session.flush()
        return model

    def upsert_descriptor(
        self,
        session: Session,
        *,
        code: str,
        level: LevelModel,
        competency: CompetencyModel,
        description: str,
        language_code: Optional[str] = None,
        is_core: bool = True,
        order_index: int = 0,
    ) -> DescriptorModel:
        model = self.get_descriptor(session, code)
        if model is None:
            model = DescriptorModel(code=code)
            session.add(model)
        model.level_id = level.id
        model.competency_id = competency.id
        model.description = description
        model.language_code = language_code.lower() if language_code else None
        model.is_core = is_core
        model.order_index = order_index
        session.flush()
        return model


curriculum = CurriculumRepository()


__all__ = ["CurriculumRepository", "curriculum"]
