"""Content-addressable store for generated lesson content.

Rows are shared by every trail. Creation is find-or-create guarded by the
unique ``content_hash`` index: losing an insert race is treated as success and
the caller attaches to the winner's row.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Mapping, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db.models import ContentBlockModel
from ..errors import ContentHashCollisionError
from ..hashing import canonical_json

logger = logging.getLogger(__name__)


class ContentBlockRepository:
    def get(self, session: Session, block_id: str) -> Optional[ContentBlockModel]:
        return session.get(ContentBlockModel, block_id)

    def find_by_hash(self, session: Session, content_hash: str) -> Optional[ContentBlockModel]:
        stmt = select(ContentBlockModel).where(ContentBlockModel.content_hash == content_hash)
        return session.execute(stmt).scalar_one_or_none()

    def get_or_create(
        self,
        session: Session,
        *,
        content_hash: str,
        descriptor_id: Optional[str],
        language_code: str,
        lesson_type: str,
        payload: Mapping[str, Any],
    ) -> Tuple[ContentBlockModel, bool]:
        """Return ``(block, created)`` for ``content_hash``."""
        existing = self.find_by_hash(session, content_hash)
        if existing is not None:
            self._verify_payload(existing, content_hash, payload)
            return existing, False

        model = ContentBlockModel(
            content_hash=content_hash,
            descriptor_id=descriptor_id,
            language_code=language_code.lower(),
            lesson_type=lesson_type,
            payload=dict(payload),
            usage_count=0,
        )
        savepoint = session.begin_nested()
        try:
            session.add(model)
            session.flush()
        except IntegrityError:
            savepoint.rollback()
            logger.info("Content block %s inserted concurrently; attaching to existing row", content_hash)
            winner = self.find_by_hash(session, content_hash)
            if winner is None:
                raise
            self._verify_payload(winner, content_hash, payload)
            return winner, False
        savepoint.commit()
        return model, True

    def increment_usage(self, session: Session, block_id: str) -> None:
        stmt = (
            update(ContentBlockModel)
            .where(ContentBlockModel.id == block_id)
            .values(usage_count=ContentBlockModel.usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        session.execute(stmt)

    def find_reusable(
        self,
        session: Session,
        *,
        descriptor_id: str,
        language_code: str,
        lesson_type: str,
    ) -> Optional[ContentBlockModel]:
        stmt = (
            select(ContentBlockModel)
            .where(
                ContentBlockModel.descriptor_id == descriptor_id,
                ContentBlockModel.language_code == language_code.lower(),
                ContentBlockModel.lesson_type == lesson_type,
                ContentBlockModel.is_approved.is_(True),
            )
            .order_by(
                ContentBlockModel.quality_score.is_(None),
                ContentBlockModel.quality_score.desc(),
                ContentBlockModel.usage_count.desc(),
                ContentBlockModel.created_at.asc(),
                ContentBlockModel.id.asc(),
            )
            .limit(1)
        )
        return session.execute(stmt).scalar_one_or_none()

    def approve(self, session: Session, block_id: str, *, quality_score: Optional[Decimal] = None) -> None:
        values: dict[str, Any] = {"is_approved": True}
        if quality_score is not None:
            values["quality_score"] = quality_score
        session.execute(update(ContentBlockModel).where(ContentBlockModel.id == block_id).values(**values))

    @staticmethod
    def _verify_payload(block: ContentBlockModel, content_hash: str, payload: Mapping[str, Any]) -> None:
        if canonical_json(block.payload) != canonical_json(dict(payload)):
            raise ContentHashCollisionError(
                f"Content hash {content_hash} already stores a different payload",
                diagnostics={
                    "content_hash": content_hash,
                    "content_block_id": block.id,
                    "descriptor_id": block.descriptor_id,
                },
            )


content_blocks = ContentBlockRepository()


__all__ = ["ContentBlockRepository", "content_blocks"]
