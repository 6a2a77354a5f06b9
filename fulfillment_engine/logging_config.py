"""Logging configuration for the fulfillment engine.

Engine modules log through ``structlog.get_logger(__name__)``; call
``configure_logging`` once at process start (the CLI does).
"""

import logging
import os
import sys
from typing import Optional

import structlog


def get_log_level() -> str:
    """Get log level based on environment."""
    env = (os.getenv("ENV") or os.getenv("ENVIRONMENT") or "development").lower()

    level_map = {
        "production": "INFO",
        "staging": "INFO",
        "development": "INFO",
        "test": "WARNING",
    }

    return os.getenv("LOG_LEVEL", level_map.get(env, "INFO")).upper()


def setup_stdlib_logging(level: Optional[str] = None) -> None:
    """Route standard library logging to stderr so CLI output stays clean."""
    log_level = level or get_log_level()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = []

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)


def setup_structlog(json_output: Optional[bool] = None) -> None:
    """Configure structlog for structured logging."""
    if json_output is None:
        env = os.getenv("ENVIRONMENT", "development").lower()
        json_output = env in ["production", "staging"]

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """Configure all logging for the engine."""
    setup_stdlib_logging(level)
    setup_structlog(json_output)


def actor_context(user_id: str):
    """Attach the acting user to every log line emitted inside the block.

    Keys bound by the caller are restored on exit.
    """
    return structlog.contextvars.bound_contextvars(actor=user_id)
