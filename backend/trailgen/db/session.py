"""Engine and session helpers shared by the API, the worker and the scheduler."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Generator, Optional

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from ..config import Settings, get_settings
from .monitoring import forget_engine, instrument_engine

logger = logging.getLogger(__name__)


@dataclass
class _Database:
    engine: Engine
    sessions: sessionmaker[Session]


_database: Optional[_Database] = None


def _open_database(settings: Settings) -> _Database:
    url = settings.database_url
    if not url:
        raise RuntimeError("TRAILGEN_DATABASE_URL must be configured before using the database.")

    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=settings.database_echo,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False},
        )
        _enable_sqlite_savepoints(engine)
    else:
        engine = create_engine(
            url,
            echo=settings.database_echo,
            pool_pre_ping=True,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )

    instrument_engine(engine, interval=settings.db_telemetry_interval_seconds)
    logger.info("Opened %s engine for trail generation", engine.dialect.name)
    return _Database(
        engine=engine,
        sessions=sessionmaker(bind=engine, autoflush=False, expire_on_commit=False),
    )


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """Hand BEGIN to SQLAlchemy so ``begin_nested`` works on pysqlite."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(connection) -> None:  # type: ignore[no-untyped-def]
        connection.exec_driver_sql("BEGIN")


def _current() -> _Database:
    global _database
    if _database is None:
        _database = _open_database(get_settings())
    return _database


def get_engine() -> Engine:
    return _current().engine


def get_session_factory() -> sessionmaker[Session]:
    return _current().sessions


@contextmanager
def session_scope(*, commit: bool = True) -> Generator[Session, None, None]:
    """Yield a session; commit on success when ``commit`` is set, roll back on error."""
    session = get_session_factory()()
    try:
        yield session
        if commit:
            session.commit()
    except Exception:  # noqa: BLE001
        session.rollback()
        raise
    finally:
        session.close()


def get_session_dependency() -> Generator[Session, None, None]:
    with session_scope() as session:
        yield session


def dispose_engine() -> None:
    global _database
    if _database is not None:
        forget_engine(_database.engine)
        _database.engine.dispose()
    _database = None


__all__ = [
    "dispose_engine",
    "get_engine",
    "get_session_dependency",
    "get_session_factory",
    "session_scope",
]
