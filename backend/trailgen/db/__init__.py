"""Persistence for trails, curriculum reference data and generation jobs."""

from .base import Base, as_utc, utcnow
from .session import dispose_engine, get_engine, session_scope

__all__ = [
    "Base",
    "as_utc",
    "dispose_engine",
    "get_engine",
    "session_scope",
    "utcnow",
]
