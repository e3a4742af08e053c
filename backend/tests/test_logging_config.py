from __future__ import annotations

import logging

from trailgen.logging_config import QUIET_LOGGERS, ProcessRoleFilter, configure_logging


def test_role_filter_stamps_records() -> None:
    record = logging.LogRecord("trailgen.worker", logging.INFO, __file__, 1, "claimed", None, None)
    assert ProcessRoleFilter("worker").filter(record) is True
    assert record.process_role == "worker"


def test_configure_logging_quiets_client_libraries(monkeypatch) -> None:
    monkeypatch.delenv("TRAILGEN_DEBUG_HTTP", raising=False)
    root = logging.getLogger()
    previous_handlers, previous_level = list(root.handlers), root.level
    try:
        configure_logging("scheduler", level="debug")
        assert root.level == logging.DEBUG
        assert all(logging.getLogger(name).level == logging.WARNING for name in QUIET_LOGGERS)
    finally:
        root.handlers[:] = previous_handlers
        root.setLevel(previous_level)
