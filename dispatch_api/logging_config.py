"""JSON logging for the dispatch service.

Every record is one JSON line. Dispatch identifiers found in a record's
context (tenant, campaign, run, outbox entry) are also written as top-level
fields so a run can be traced across services without parsing `context`.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

PROMOTED_CONTEXT_KEYS = ("client_id", "campaign_id", "run_id", "outbox_id")

QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            for key in PROMOTED_CONTEXT_KEYS:
                if context.get(key) is not None:
                    log_data[key] = context[key]
            log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # datetimes and enums in context are stringified
        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: Optional[str] = None) -> None:
    """Route the root logger to stdout as JSON. Level defaults to `LOG_LEVEL`."""
    if level is None:
        from dispatch_api.config import get_settings

        level = get_settings().log_level

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"dispatch.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Merges the adapter's bound context with a per-call `context=` kwarg."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        if context or self.extra:
            combined_context = {**self.extra, **(context or {})}
            kwargs["extra"] = {"context": combined_context}
        return msg, kwargs


def bind_logger(logger: logging.Logger, **context: Any) -> LoggerAdapter:
    """Adapter carrying `context` on every record; None values are dropped."""
    return LoggerAdapter(logger, {key: value for key, value in context.items() if value is not None})
