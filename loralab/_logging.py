"""Structured logging helpers for training runs.

Every line is one JSON object: ``level``, ``name``, ``message`` (the event
name), ``ts`` (epoch seconds) and the event's fields. Levels come from
``LORALAB_LOG_LEVEL`` unless a logger is created with an explicit level.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any

_DEFAULT_LEVEL = "INFO"
_LEVEL_ENV = "LORALAB_LOG_LEVEL"


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
            "ts": round(record.created, 3),
        }
        fields = record.__dict__.get("fields")
        if isinstance(fields, dict):
            payload.update(fields)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, sort_keys=True, default=str)


def get_logger(name: str = "loralab", level: str | None = None) -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel((level or os.environ.get(_LEVEL_ENV, _DEFAULT_LEVEL)).upper())

    handler = logging.StreamHandler()
    handler.setFormatter(_JsonFormatter())
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: str, **fields: Any) -> None:
    """Emit a structured log line with stable key ordering."""
    logger.info(event, extra={"fields": fields})


def log_warning(logger: logging.Logger, event: str, **fields: Any) -> None:
    logger.warning(event, extra={"fields": fields})


__all__ = ["get_logger", "log_event", "log_warning"]
