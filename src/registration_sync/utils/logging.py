"""Logging setup: one JSON or text handler on the root logger, stamped with service context."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..config.settings import LoggingConfig


CONTEXT_ATTR = "context"

# Correlation keys surfaced at the top level of JSON lines and in text lines
CORRELATION_KEYS = ("event_id", "record_id", "buffer_id", "operation")

_NOISY_LOGGERS = ("aiohttp.access", "redis")


def _record_time(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


def _record_context(record: logging.LogRecord) -> Dict[str, Any]:
    context = getattr(record, CONTEXT_ATTR, None)
    return context if isinstance(context, dict) else {}


class JSONFormatter(logging.Formatter):
    """One JSON object per line; correlation keys are lifted out of the context."""

    def format(self, record: logging.LogRecord) -> str:
        context = dict(_record_context(record))
        entry = {
            "timestamp": _record_time(record).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", None),
            "environment": getattr(record, "environment", None),
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in CORRELATION_KEYS:
            if key in context:
                entry[key] = context.pop(key)

        if context:
            entry["context"] = context

        if record.levelno >= logging.WARNING:
            entry["location"] = f"{record.module}.{record.funcName}:{record.lineno}"

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines for local runs, colored when attached to a terminal."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, stream=None):
        super().__init__()
        stream = stream or sys.stdout
        self.colorize = hasattr(stream, "isatty") and stream.isatty()

    def format(self, record: logging.LogRecord) -> str:
        level = record.levelname
        if self.colorize and record.levelno in self.LEVEL_COLORS:
            level = f"{self.LEVEL_COLORS[record.levelno]}{level}{self.RESET}"

        line = f"{_record_time(record):%Y-%m-%d %H:%M:%S} {level:<8} {record.name}: {record.getMessage()}"

        context = _record_context(record)
        if context:
            line += " [" + " ".join(f"{k}={v}" for k, v in context.items()) + "]"

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)

        return line


class ServiceContextFilter(logging.Filter):
    def __init__(self, service_name: str, environment: Optional[str] = None):
        super().__init__()
        self.service_name = service_name
        self.environment = environment

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self.service_name
        record.environment = self.environment
        return True


def _build_handler(output: str) -> logging.Handler:
    target = output.lower()
    if target == "stdout":
        return logging.StreamHandler(sys.stdout)
    if target == "stderr":
        return logging.StreamHandler(sys.stderr)
    return logging.FileHandler(output)


def setup_logging(
    config: LoggingConfig,
    service_name: str = "registration-sync",
    environment: Optional[str] = None
) -> None:
    """
    Replace the root logger's handlers with a single configured handler.

    Args:
        config: Logging section of the service settings
        service_name: Stamped on every record as ``service``
        environment: Stamped on every record as ``environment``
    """
    handler = _build_handler(config.output)
    if config.format.lower() == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(TextFormatter(getattr(handler, "stream", None)))
    handler.addFilter(ServiceContextFilter(service_name, environment))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, config.level.upper()))
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        f"Logging configured for {service_name}: level={config.level}, "
        f"format={config.format}, output={config.output}"
    )


def log_with_context(logger: logging.Logger, level: int, message: str, **context):
    """Log ``message`` with structured context (event_id, record_id, ...)."""
    logger.log(level, message, extra={CONTEXT_ATTR: context})


def log_performance(logger: logging.Logger, operation: str, duration_ms: float, **context):
    log_with_context(
        logger,
        logging.INFO,
        f"{operation} took {duration_ms:.2f}ms",
        operation=operation,
        duration_ms=round(duration_ms, 2),
        **context
    )
