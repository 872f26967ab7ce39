from __future__ import annotations

import json
import logging
import logging.config
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from catalog_backend.core.settings import Settings

# Correlation ids passed through ``extra=`` by the sync monitor and webhook handler.
CONTEXT_FIELDS = ("sync_id", "webhook_id")

_configured = False


class JsonFormatter(logging.Formatter):
    """One JSON object per record, tagged with the service and environment."""

    def __init__(self, *, environment: str = "development", service: str = "service-catalog", **kwargs: Any):
        super().__init__(**kwargs)
        self.static_fields = {"service": service, "environment": environment}

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **self.static_fields,
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(settings: Optional["Settings"] = None) -> None:
    """Install console and rotating-file handlers once per process.

    The file handler always writes JSON; the console switches to JSON with
    ``LOG_JSON``. SQLAlchemy engine logging follows ``SQL_ECHO`` and the
    aiohttp access log is kept at WARNING.
    """

    global _configured
    if _configured:
        return

    if settings is None:
        from catalog_backend.core.settings import get_settings

        settings = get_settings()

    Path(settings.log_file).parent.mkdir(parents=True, exist_ok=True)
    json_formatter = {"()": JsonFormatter, "environment": settings.environment}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {"format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s"},
                "json": json_formatter,
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "json" if settings.log_json else "standard",
                },
                "file": {
                    "class": "logging.handlers.RotatingFileHandler",
                    "formatter": "json",
                    "filename": settings.log_file,
                    "maxBytes": 5 * 1024 * 1024,
                    "backupCount": 5,
                    "encoding": "utf-8",
                },
            },
            "loggers": {
                "sqlalchemy.engine": {"level": "INFO" if settings.sql_echo else "WARNING"},
                "aiohttp.access": {"level": "WARNING"},
            },
            "root": {"level": settings.log_level, "handlers": ["console", "file"]},
        }
    )
    logging.captureWarnings(True)
    _configured = True


__all__ = ["CONTEXT_FIELDS", "JsonFormatter", "configure_logging"]
