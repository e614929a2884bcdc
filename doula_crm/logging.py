"""Structured JSON logging.

Each record is rendered as one JSON object on stdout. Request-scoped values
(correlation id, organization) are attached from context variables, and only
whitelisted ``extra`` keys reach the ``fields`` object so payloads such as
contact details never leak into logs.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from doula_crm.context import get_correlation_id, get_organization_id
from doula_crm.core.config import get_settings

_STANDARD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}
_ALLOWED_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "organization_id",
        "lead_id",
        "account_id",
        "contact_id",
        "opportunity_id",
        "account_option",
        "error_code",
        "event_name",
        "error",
    }
)
_MAX_ERROR_LENGTH = 500

_default_record_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    # Only the correlation id is stamped here: ``organization_id`` is a legal
    # ``extra`` key and makeRecord refuses to overwrite existing attributes.
    record = _default_record_factory(*args, **kwargs)
    record.correlation_id = get_correlation_id()
    return record


class RequestScopeFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "correlation_id", None) is None:
            record.correlation_id = get_correlation_id()
        if getattr(record, "organization_id", None) is None:
            record.organization_id = get_organization_id()
        return True


class JsonLogFormatter(logging.Formatter):
    def __init__(self, service: str | None = None) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }
        if self.service:
            payload["service"] = self.service

        fields = {
            key: value
            for key, value in record.__dict__.items()
            if key in _ALLOWED_FIELDS and key not in _STANDARD_ATTRS and value is not None
        }
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:_MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload["fields"] = fields
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_doula_crm_configured", False):
        return

    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter(service=settings.otel_service_name))
    handler.addFilter(RequestScopeFilter())

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)
    logging.setLogRecordFactory(_record_factory)
    root_logger._doula_crm_configured = True  # type: ignore[attr-defined]
