"""Bring the trail generation schema up to date before the API and workers start.

``--check`` reports pending revisions without touching the schema and
``--seed`` loads the bundled curriculum once the upgrade has finished.
Run from ``backend/`` as ``python -m scripts.run_migrations``.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from pathlib import Path
from typing import List, Optional

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from scripts.seed_curriculum import DEFAULT_SEED, load_document, seed_curriculum
from trailgen.db.session import session_scope
from trailgen.logging_config import configure_logging

LOGGER = logging.getLogger("trailgen.migrations")
BACKEND_ROOT = Path(__file__).resolve().parent.parent
URL_PLACEHOLDER = "%(TRAILGEN_DATABASE_URL)s"


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Apply trail generation schema migrations.")
    parser.add_argument("--revision", default=os.getenv("TRAILGEN_DB_MIGRATION_REVISION", "head"))
    parser.add_argument(
        "--timeout",
        type=int,
        default=int(os.getenv("TRAILGEN_DB_MIGRATION_TIMEOUT", "60")),
        help="Seconds to wait for the database to accept connections.",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=float(os.getenv("TRAILGEN_DB_MIGRATION_POLL_INTERVAL", "3")),
    )
    parser.add_argument("--config", default=str(BACKEND_ROOT / "alembic.ini"), help="Path to alembic.ini.")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--check", action="store_true", help="Exit 1 when revisions are pending.")
    mode.add_argument("--seed", action="store_true", help="Load the bundled curriculum after upgrading.")
    return parser.parse_args(argv)


def get_alembic_config(config_path: str) -> Config:
    config = Config(config_path)
    config.set_main_option("script_location", str(BACKEND_ROOT / "alembic"))
    return config


def resolve_database_url(config: Config) -> str:
    url = config.get_main_option("sqlalchemy.url")
    if url and url != URL_PLACEHOLDER:
        return url
    env_url = os.getenv("TRAILGEN_DATABASE_URL")
    if not env_url:
        raise RuntimeError("TRAILGEN_DATABASE_URL must be set before running migrations.")
    config.set_main_option("sqlalchemy.url", env_url)
    return env_url


def wait_for_database(database_url: str, *, timeout: int, poll_interval: float) -> None:
    """Run ``SELECT 1`` until it answers; ``RuntimeError`` after ``timeout`` seconds."""
    engine = create_engine(database_url, pool_pre_ping=True)
    deadline = time.monotonic() + timeout
    last_error: Optional[Exception] = None
    try:
        while time.monotonic() < deadline:
            try:
                with engine.connect() as connection:
                    connection.execute(text("SELECT 1"))
                LOGGER.info("Database is reachable.")
                return
            except OperationalError as exc:
                last_error = exc
                LOGGER.warning("Database not ready yet: %s", exc)
            except SQLAlchemyError as exc:
                last_error = exc
                LOGGER.error("Database rejected the readiness check: %s", exc)
                break
            time.sleep(poll_interval)
    finally:
        engine.dispose()
    raise RuntimeError("Database did not become ready in time.") from last_error


def pending_revisions(config: Config, database_url: str) -> List[str]:
    """Revisions between the database's current heads and the script heads, newest first."""
    script = ScriptDirectory.from_config(config)
    engine = create_engine(database_url)
    try:
        with engine.connect() as connection:
            applied = set(MigrationContext.configure(connection).get_current_heads())
    finally:
        engine.dispose()

    pending: List[str] = []
    for head in script.get_heads():
        for revision in script.iterate_revisions(head, "base"):
            if revision.revision in applied:
                break
            pending.append(revision.revision)
    return pending


def run_migrations(
    revision: str,
    *,
    timeout: int,
    poll_interval: float,
    config: Optional[Config] = None,
) -> None:
    config = config or get_alembic_config(str(BACKEND_ROOT / "alembic.ini"))
    database_url = resolve_database_url(config)
    wait_for_database(database_url, timeout=timeout, poll_interval=poll_interval)
    LOGGER.info("Upgrading trail generation schema to %s", revision)
    command.upgrade(config, revision)
    LOGGER.info("Migrations complete.")


def seed_bundled_curriculum() -> None:
    with session_scope() as session:
        counts = seed_curriculum(session, load_document(DEFAULT_SEED))
    LOGGER.info("Seeded curriculum: %s", counts)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging("migrations", level=os.getenv("TRAILGEN_DB_MIGRATION_LOG_LEVEL"))
    try:
        config = get_alembic_config(args.config)
        if args.check:
            database_url = resolve_database_url(config)
            wait_for_database(database_url, timeout=args.timeout, poll_interval=args.poll_interval)
            pending = pending_revisions(config, database_url)
            if pending:
                LOGGER.warning("Pending migrations: %s", ", ".join(pending))
                return 1
            LOGGER.info("Schema is up to date.")
            return 0

        run_migrations(args.revision, timeout=args.timeout, poll_interval=args.poll_interval, config=config)
        if args.seed:
            seed_bundled_curriculum()
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Migration run failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
