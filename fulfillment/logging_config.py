"""
Structured logging for the fulfillment engine.

Every module logs through structlog with keyword fields. Records from the
standard library (werkzeug, sqlalchemy, apscheduler) go through the same
formatter, so one handler setup covers both.
"""
import logging
import logging.config
import os
import sys
import time
import uuid
from typing import Optional

import structlog

_configured = False

# Applied to stdlib records before rendering, so they carry the same fields
_PRE_CHAIN = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
]

NOISY_LOGGERS = ("apscheduler", "urllib3", "werkzeug")


def _formatter(renderer):
    return {
        "()": structlog.stdlib.ProcessorFormatter,
        "processors": [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        "foreign_pre_chain": _PRE_CHAIN,
    }


def configure_logging(log_level: str = "INFO", log_file: Optional[str] = None, json_logs: bool = True):
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path for a rotating JSON log file
        json_logs: Render console output as JSON; False gives coloured
            key=value output for local development
    """
    global _configured

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_PRE_CHAIN,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    console_renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "console",
            "stream": sys.stdout,
        }
    }
    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "json",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
        }

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": _formatter(console_renderer),
            "json": _formatter(structlog.processors.JSONRenderer()),
        },
        "handlers": handlers,
        "root": {"level": log_level, "handlers": list(handlers)},
        "loggers": {name: {"level": "WARNING"} for name in NOISY_LOGGERS},
    })
    _configured = True

    logger = structlog.get_logger("fulfillment")
    logger.info("Logging configured", level=log_level, file=log_file, json=json_logs)
    return logger


def is_configured() -> bool:
    return _configured


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


class OperationContext:
    """
    Log one unit of engine work (a materialization, a retry attempt).

    A correlation id is bound for the duration of the block, so every log line
    written inside it, executors included, can be grouped together.
    """

    def __init__(self, operation_type: str, correlation_id: Optional[str] = None, **context):
        self.operation_type = operation_type
        self.correlation_id = correlation_id or uuid.uuid4().hex[:12]
        self.context = context
        self.logger = get_logger("fulfillment.operations")
        self._bound = None
        self._started = None

    def __enter__(self):
        self._bound = structlog.contextvars.bind_contextvars(
            correlation_id=self.correlation_id,
            operation_type=self.operation_type,
        )
        self._started = time.monotonic()
        self.logger.debug("Operation started", **self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = round((time.monotonic() - self._started) * 1000, 1)
        try:
            if exc_type is None:
                self.logger.info("Operation finished", duration_ms=duration_ms, **self.context)
            else:
                self.logger.error(
                    "Operation raised",
                    duration_ms=duration_ms,
                    error_type=exc_type.__name__,
                    error=str(exc_val),
                    **self.context,
                )
        finally:
            structlog.contextvars.reset_contextvars(**self._bound)
        return False
