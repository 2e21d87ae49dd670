import logging
import sys
from datetime import datetime, timezone
from typing import Any

import structlog


def _add_timestamp(logger: Any, method_name: str, event_dict: dict) -> dict:
    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """
    Configure structlog for the whole process. Safe to call more than once.

    Modules log an event name plus key/value fields:
        logger = get_logger(__name__)
        logger.info("slot_committed", slot=123, transactions=42)
    """
    level_value = getattr(logging, level.upper(), logging.INFO)
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _add_timestamp,
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    # Stays a lazy proxy, so loggers created at import time pick up
    # configure_logging() called later at startup. "logger" is a reserved
    # keyword of structlog.get_logger, hence logger_name.
    return structlog.get_logger(name, logger_name=name)
