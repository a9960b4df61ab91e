"""Structured logging configuration for Zenna services"""

import os
import sys
import logging
import structlog
from typing import Optional

TURN_CONTEXT_KEYS = ("request_id", "user_id")


def configure_logging(service_name: str, level: Optional[str] = None):
    """Configure structured logging for a service

    Args:
        service_name: Name of the service (e.g., "zenna")
        level: Log level (default: INFO, from LOG_LEVEL env var)

    Stdlib loggers (configuration warnings, third-party clients) write plain
    lines to the same stream at the same level.
    """
    log_level = getattr(logging, (level or os.getenv("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    console = os.getenv("LOG_FORMAT", "json").lower() == "console"

    logging.basicConfig(format="%(levelname)s %(name)s: %(message)s", stream=sys.stdout, level=log_level)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer() if console else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(service=service_name)

    return structlog.get_logger()


def bind_turn_context(request_id: str, user_id: Optional[str] = None) -> None:
    """Attach turn identifiers to every log line emitted by the current task."""
    structlog.contextvars.bind_contextvars(request_id=request_id)
    if user_id:
        structlog.contextvars.bind_contextvars(user_id=user_id)


def clear_turn_context() -> None:
    structlog.contextvars.unbind_contextvars(*TURN_CONTEXT_KEYS)
