"""Structured logging helpers."""

from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .config import Config

ROOT_LOGGER = "yeelight"

# Attributes every LogRecord carries; anything else came in through ``extra``.
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime"}

# Subsystem loggers and the config field that overrides their level.
_SUBSYSTEM_LEVELS = {
    "yeelight.discovery": "discovery_log_level",
    "yeelight.session": "session_log_level",
    "yeelight.manager": "session_log_level",
    "yeelight.poller": "session_log_level",
    "yeelight.scenes": "scene_log_level",
}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, including any ``extra=`` context."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack"] = self.formatStack(record.stack_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def _level(value: Optional[str], fallback: str) -> str:
    return (value or fallback).upper()


def configure_logging(config: Config) -> None:
    """Install a console handler on the ``yeelight`` logger tree.

    Subsystem loggers only carry a level and propagate to ``yeelight``, so
    each record is emitted once whatever its origin.
    """

    level = _level(config.log_level, "INFO")
    if config.log_format == "json":
        formatter: Dict[str, Any] = {"()": f"{__name__}.JsonFormatter"}
    else:
        formatter = {
            "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            "datefmt": "%Y-%m-%dT%H:%M:%S%z",
        }
    loggers: Dict[str, Dict[str, Any]] = {
        ROOT_LOGGER: {"level": level, "handlers": ["console"], "propagate": False},
    }
    for name, field_name in _SUBSYSTEM_LEVELS.items():
        loggers[name] = {"level": _level(getattr(config, field_name), level)}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": formatter},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": "DEBUG",
                }
            },
            "loggers": loggers,
        }
    )


def get_logger(name: str) -> logging.Logger:
    """Return a namespaced logger for the requested subsystem."""

    return logging.getLogger(name)
