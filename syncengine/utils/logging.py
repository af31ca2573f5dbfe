"""Logging configuration."""

import logging
import json
import sys
from datetime import datetime
from typing import Any, Dict

from syncengine.core.config import get_settings

_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

# Extras whose name contains one of these are masked
SENSITIVE_KEYS = ("secret", "token", "password", "api_key", "authorization")


def mask_sensitive(extra: Dict[str, Any]) -> Dict[str, Any]:
    """Replace credential values in log extras."""
    masked = {}
    for key, value in extra.items():
        if any(marker in key.lower() for marker in SENSITIVE_KEYS):
            masked[key] = "***"
        elif isinstance(value, dict):
            masked[key] = mask_sensitive(value)
        else:
            masked[key] = value
    return masked


class JSONFormatter(logging.Formatter):
    """One JSON object per log line, carrying ``extra=`` fields."""

    def __init__(self, service_name: str, environment: str):
        super().__init__()
        self.service_name = service_name
        self.environment = environment

    def format(self, record: logging.LogRecord) -> str:
        extra = {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS}
        log_data: Dict[str, Any] = {
            "timestamp": datetime.utcfromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
            **mask_sensitive(extra),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging():
    """Configure the root logger from settings. Called once at start-up."""
    settings = get_settings()

    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format == "json":
        handler.setFormatter(JSONFormatter(settings.service_name, settings.environment))
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
        )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level.upper())

    logging.getLogger("uvicorn").setLevel(settings.log_level.upper())

    # Reduce noise from external libraries
    for name in ("httpx", "httpcore", "motor", "pymongo"):
        logging.getLogger(name).setLevel(logging.WARNING)
