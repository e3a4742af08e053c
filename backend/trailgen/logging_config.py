import logging
import os
from logging.config import dictConfig
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(process_role)s [%(name)s] %(message)s"

# Broker and HTTP client libraries log every frame/request at INFO.
QUIET_LOGGERS = ("aio_pika", "aiormq", "httpx", "httpcore", "openai")


class ProcessRoleFilter(logging.Filter):
    """Stamp each record with the role of the process (api, worker, scheduler)."""

    def __init__(self, role: str) -> None:
        super().__init__()
        self.role = role

    def filter(self, record: logging.LogRecord) -> bool:
        record.process_role = self.role
        return True


def configure_logging(role: str = "api", level: Optional[str] = None) -> None:
    """Configure process-wide logging; ``level`` overrides ``TRAILGEN_LOG_LEVEL``."""
    root_level = (level or os.getenv("TRAILGEN_LOG_LEVEL", "INFO")).upper()
    debug_http = os.getenv("TRAILGEN_DEBUG_HTTP", "0") == "1"

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "role": {"()": ProcessRoleFilter, "role": role},
            },
            "formatters": {
                "default": {"format": LOG_FORMAT},
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "filters": ["role"],
                },
            },
            "root": {
                "handlers": ["default"],
                "level": root_level,
            },
            "loggers": {
                name: {"level": "DEBUG" if debug_http and name.startswith("http") else "WARNING"}
                for name in QUIET_LOGGERS
            },
        }
    )
