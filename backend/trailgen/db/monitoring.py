"""Connection pool counters for the persistence layer.

The worker, the scheduler and the API share one engine per process. Each
instrumented engine keeps a small set of counters which are emitted as a
``db_pool_status`` telemetry event at most once per interval and can be read
back on demand by ``/healthz/database`` and ``scripts/queue_metrics.py``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool

from ..telemetry import emit_event


@dataclass
class PoolCounters:
    interval: float
    connects: int = 0
    checkouts: int = 0
    checkins: int = 0
    last_emit: Optional[float] = field(default=None, repr=False)

    def record(self, kind: str) -> None:
        setattr(self, kind, getattr(self, kind) + 1)

    def due(self, now: float) -> bool:
        if self.interval <= 0 or self.last_emit is None:
            return True
        return (now - self.last_emit) >= self.interval


_counters: Dict[Engine, PoolCounters] = {}


def instrument_engine(engine: Engine, *, interval: float = 30.0) -> PoolCounters:
    """Attach pool listeners to ``engine``; repeated calls return the same counters."""
    existing = _counters.get(engine)
    if existing is not None:
        return existing

    counters = PoolCounters(interval=interval)
    _counters[engine] = counters

    def observe(kind: str, pool_event: str) -> None:
        counters.record(kind)
        now = time.monotonic()
        if not counters.due(now):
            return
        counters.last_emit = now
        emit_event("db_pool_status", event=pool_event, **get_pool_snapshot(engine))

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:  # type: ignore[no-untyped-def]
        observe("connects", "connect")

    @event.listens_for(engine, "checkout")
    def _on_checkout(dbapi_connection, connection_record, connection_proxy) -> None:  # type: ignore[no-untyped-def]
        observe("checkouts", "checkout")

    @event.listens_for(engine, "checkin")
    def _on_checkin(dbapi_connection, connection_record) -> None:  # type: ignore[no-untyped-def]
        observe("checkins", "checkin")

    return counters


def forget_engine(engine: Engine) -> None:
    """Drop the counters kept for a disposed engine."""
    _counters.pop(engine, None)


def get_pool_snapshot(engine: Engine) -> Dict[str, object]:
    counters = _counters.get(engine)
    pool = engine.pool
    snapshot: Dict[str, object] = {
        "pool_class": type(pool).__name__,
        "status": pool.status(),
        "connects": counters.connects if counters else 0,
        "checkouts": counters.checkouts if counters else 0,
        "checkins": counters.checkins if counters else 0,
    }
    # Only QueuePool tracks size and overflow; sqlite engines use SingletonThreadPool or NullPool.
    if isinstance(pool, QueuePool):
        snapshot["size"] = pool.size()
        snapshot["checked_out"] = pool.checkedout()
        snapshot["overflow"] = pool.overflow()
    return snapshot


__all__ = [
    "PoolCounters",
    "forget_engine",
    "get_pool_snapshot",
    "instrument_engine",
]
