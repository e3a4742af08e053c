from __future__ import annotations

from sqlalchemy import create_engine, text

from trailgen.db import monitoring


def test_instrumented_engine_emits_pool_status(monkeypatch) -> None:
    emitted: list[tuple[str, dict[str, object]]] = []

    def record(event_name: str, **payload: object) -> None:
        emitted.append((event_name, payload))

    monkeypatch.setattr(monitoring, "emit_event", record)

    engine = create_engine("sqlite:///:memory:")
    try:
        counters = monitoring.instrument_engine(engine, interval=0)
        assert monitoring.instrument_engine(engine) is counters

        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))

        event_name, payload = emitted[0]
        assert event_name == "db_pool_status"
        assert payload["event"] == "connect"
        assert payload["connects"] == 1

        snapshot = monitoring.get_pool_snapshot(engine)
        assert snapshot["checkouts"] >= 1
        assert snapshot["checkins"] >= 1
    finally:
        monitoring.forget_engine(engine)
        engine.dispose()


def test_interval_throttles_emission(monkeypatch) -> None:
    emitted: list[str] = []
    monkeypatch.setattr(monitoring, "emit_event", lambda name, **payload: emitted.append(payload["event"]))

    engine = create_engine("sqlite:///:memory:")
    try:
        monitoring.instrument_engine(engine, interval=3600)
        for _ in range(3):
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))

        assert emitted == ["connect"]
        assert monitoring.get_pool_snapshot(engine)["checkouts"] == 3
    finally:
        monitoring.forget_engine(engine)
        engine.dispose()


def test_snapshot_for_file_database_reports_queue_pool(tmp_path) -> None:
    engine = create_engine(f"sqlite:///{tmp_path / 'pool.sqlite'}")
    try:
        snapshot = monitoring.get_pool_snapshot(engine)
        assert snapshot["connects"] == 0
        assert isinstance(snapshot["status"], str)
        if snapshot["pool_class"] == "QueuePool":
            assert snapshot["checked_out"] == 0
    finally:
        engine.dispose()
