"""Shared structlog configuration for the API process and one-off scripts."""

from __future__ import annotations

import logging

import structlog

from app.config import settings

_LOG_LEVEL_MAP: dict[str, int] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Chatty third-party loggers that only matter when debugging
_QUIET_LOGGERS = ("httpx", "httpcore", "botocore", "stripe", "sqlalchemy.engine")


def configure_logging() -> None:
    """Configure structlog with console renderer in dev, JSON in prod.

    Stdlib logging (uvicorn, SQLAlchemy, httpx) is routed to the same
    level so both streams filter consistently.
    """
    level = _LOG_LEVEL_MAP.get(settings.log_level.upper(), logging.INFO)
    is_dev = settings.environment == "development"

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if is_dev:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.extend(
            [
                structlog.processors.dict_tracebacks,
                structlog.processors.JSONRenderer(),
            ]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
