"""Logging setup — structlog on top of the stdlib logging module.

Learn: Application code only ever calls structlog.get_logger() and logs
events as short dotted names with key/value context
(logger.info("bus.subscribed", subscription_id=...)). This module decides
how those events are rendered: readable console lines in development,
one JSON object per line when LOG_JSON=true.

Request-scoped values bound with structlog.contextvars (request_id) are
merged into every entry.
"""

import logging

import structlog

from profilecast.config import Settings


def configure_logging(settings: Settings) -> None:
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_json
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
