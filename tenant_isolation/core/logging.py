# Structured JSON logging for tenancy events.
# Every record is stamped with the tenant active in the emitting
# execution unit so isolation decisions can be traced per request/job.

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from tenant_isolation.core.config import settings


_STANDARD_ATTRS = {
    "args",
    "asctime",
    "created",
    "exc_info",
    "exc_text",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "msg",
    "name",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "taskName",
    "thread",
    "threadName",
}

_ALWAYS_FIELDS = {
    "tenant_id",
    "tenant_suppressed",
    "model",
    "field",
}


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _STANDARD_ATTRS:
                continue
            if value is None and key not in _ALWAYS_FIELDS:
                continue
            payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, default=str)


class TenantContextFilter(logging.Filter):
    """Adds tenant_id / tenant_suppressed from the current execution unit."""

    def filter(self, record: logging.LogRecord) -> bool:
        # Local import: tenancy.context logs through this module.
        from tenant_isolation.tenancy.context import current_tenant_id, is_suppressed

        if not hasattr(record, "tenant_id"):
            record.tenant_id = current_tenant_id()
        if not hasattr(record, "tenant_suppressed"):
            record.tenant_suppressed = is_suppressed()
        return True


def get_structured_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    handler = logging.StreamHandler()
    if settings.LOG_JSON:
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    handler.addFilter(TenantContextFilter())
    logger.addHandler(handler)
    logger.setLevel(settings.LOG_LEVEL)
    logger.propagate = False
    return logger


logger = get_structured_logger("tenant_isolation")
