"""
Logging setup. Modules log through ``logging.getLogger(__name__)``; this only
wires handlers and formatters for the running service.
"""

import logging
import logging.config
from typing import Any

from pythonjsonlogger.json import JsonFormatter


class CrewCallJsonFormatter(JsonFormatter):
    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        for attr in ("request_id", "device_id", "crew_member_id"):
            if hasattr(record, attr):
                log_record[attr] = getattr(record, attr)


def build_logging_config(level: str = "INFO", json: bool = False) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
            },
            "json": {
                "()": CrewCallJsonFormatter,
                "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "json" if json else "standard",
            },
        },
        "loggers": {
            "crewcall": {
                "handlers": ["console"],
                "level": level.upper(),
                "propagate": False,
            },
        },
    }


def configure_logging(level: str = "INFO", json: bool = False) -> None:
    logging.config.dictConfig(build_logging_config(level, json))
