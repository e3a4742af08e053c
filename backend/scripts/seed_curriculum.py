"""Load curriculum levels, competencies and descriptors from a JSON document.

Running the loader twice with the same file is a no-op apart from updated
names, weights and descriptions.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.orm import Session

from trailgen.db.session import session_scope
from trailgen.repositories.curriculum import curriculum

LOGGER = logging.getLogger("trailgen.seed_curriculum")
DEFAULT_SEED = Path(__file__).resolve().parent.parent / "trailgen" / "data" / "curriculum_seed.json"


def load_document(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def seed_curriculum(session: Session, document: Mapping[str, Any]) -> Dict[str, int]:
    counts = {"levels": 0, "competencies": 0, "level_competencies": 0, "descriptors": 0}

    levels = {}
    for entry in document.get("levels", []):
        level = curriculum.upsert_level(
            session,
            code=entry["code"],
            name=entry["name"],
            order_index=int(entry.get("order_index", 0)),
        )
        levels[level.code] = level
        counts["levels"] += 1

    competencies = {}
    for entry in document.get("competencies", []):
        competency = curriculum.upsert_competency(
            session,
            code=entry["code"],
            name=entry["name"],
            order_index=int(entry.get("order_index", 0)),
        )
        competencies[competency.code] = competency
        counts["competencies"] += 1

    def level_for(code: str):
        level = levels.get(code.upper()) or curriculum.get_level(session, code)
        if level is None:
            raise ValueError(f"Unknown level in seed document: {code}")
        return level

    def competency_for(code: str):
        competency = competencies.get(code.lower()) or curriculum.get_competency(session, code)
        if competency is None:
            raise ValueError(f"Unknown competency in seed document: {code}")
        return competency

    for entry in document.get("level_competencies", []):
        curriculum.link_level_competency(
            session,
            level_for(entry["level"]),
            competency_for(entry["competency"]),
            weight=int(entry.get("weight", 1)),
        )
        counts["level_competencies"] += 1

    for entry in document.get("descriptors", []):
        curriculum.upsert_descriptor(
            session,
            code=entry["code"],
            level=level_for(entry["level"]),
            competency=competency_for(entry["competency"]),
            description=entry["description"],
            language_code=entry.get("language_code"),
            is_core=bool(entry.get("is_core", True)),
            order_index=int(entry.get("order_index", 0)),
        )
        counts["descriptors"] += 1

    return counts


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    parser = argparse.ArgumentParser(description="Seed the curriculum library.")
    parser.add_argument("path", nargs="?", default=str(DEFAULT_SEED), help="Seed JSON document.")
    args = parser.parse_args(argv)
    try:
        document = load_document(Path(args.path))
        with session_scope() as session:
            counts = seed_curriculum(session, document)
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Curriculum seed failed: %s", exc)
        return 1
    LOGGER.info("Seeded curriculum from %s: %s", args.path, counts)
    return 0


if __name__ == "__main__":
    sys.exit(main())
