"""
Tracker Core Logging Setup.

Production log output:
- One JSON object per record (python-json-logger)
- Every record stamped with the service name and current organization id
- Modules log through ``logging.getLogger(__name__)`` and never configure handlers
"""
from __future__ import annotations
from contextvars import ContextVar
from typing import Optional
import logging

from pythonjsonlogger.json import JsonFormatter

VALID_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})
DEFAULT_SERVICE_NAME = "tracker-core"

LOG_FIELDS = ("asctime", "levelname", "name", "message", "service", "organization_id")
FIELD_RENAME_MAP = {"levelname": "level", "name": "logger", "asctime": "timestamp"}

# Set per request by the API middleware.
current_organization_id: ContextVar[Optional[str]] = ContextVar("organization_id", default=None)


class OrganizationFilter(logging.Filter):
    """Adds ``service`` and ``organization_id`` to every record."""

    def __init__(self, service_name: str = DEFAULT_SERVICE_NAME):
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self.service_name
        record.organization_id = current_organization_id.get()
        return True


def create_json_formatter() -> JsonFormatter:
    return JsonFormatter(
        " ".join(f"%({name})s" for name in LOG_FIELDS),
        rename_fields=FIELD_RENAME_MAP,
    )


def configure_logging(
    level: str = "INFO",
    service_name: str = DEFAULT_SERVICE_NAME,
    stream=None,
) -> logging.Handler:
    """
    Install a JSON handler on the root logger, replacing existing handlers.

    Call once at service start-up. Raises ValueError for unknown levels.
    """
    level_upper = level.upper()
    if level_upper not in VALID_LOG_LEVELS:
        raise ValueError(
            f"Invalid log level: {level}. Valid: {', '.join(sorted(VALID_LOG_LEVELS))}"
        )

    handler = logging.StreamHandler(stream)
    handler.setLevel(level_upper)
    handler.setFormatter(create_json_formatter())
    handler.addFilter(OrganizationFilter(service_name))

    root = logging.getLogger()
    root.setLevel(level_upper)
    root.handlers = [handler]
    return handler
