"""Logging setup for the SAML backend driven by LOG_LEVEL and LOG_FORMAT."""

from __future__ import annotations
import json
import logging
import os
import sys
from datetime import UTC, datetime
from typing import Any


_LOGGER_NAMES = (
    "uvicorn",
    "uvicorn.access",
    "uvicorn.error",
    "fastapi",
    "dhportal_saml",
    "dhportal_saml_backend",
)

_RESERVED_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}

_TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class JsonFormatter(logging.Formatter):
    """Render records as single-line JSON including ``extra`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        """Serialize the record and any structured extras."""
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key in _RESERVED_ATTRIBUTES or key.startswith("_"):
                continue
            payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _resolve_level(raw: str | None) -> int:
    if not raw:
        return logging.INFO
    level = logging.getLevelName(raw.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging() -> None:
    """Attach a stderr handler with the configured level and format."""
    level = _resolve_level(os.getenv("LOG_LEVEL"))
    use_json = os.getenv("LOG_FORMAT", "text").strip().lower() == "json"
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter() if use_json else logging.Formatter(_TEXT_FORMAT))
    for name in _LOGGER_NAMES:
        logger = logging.getLogger(name)
        logger.handlers = [handler]
        logger.setLevel(level)
        logger.propagate = False


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a logger, defaulting to the backend application logger."""
    return logging.getLogger(name or "dhportal_saml_backend.app")


configure_logging()


__all__ = ["JsonFormatter", "configure_logging", "get_logger"]
